"""Docker and Docker Compose provider for the ASF container."""
from __future__ import annotations

import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .process import run_command

MIN_COMPOSE_VERSION = Version("2.0.0")


class DockerError(RuntimeError):
    """Raised when docker operations fail."""


@dataclass(slots=True)
class DockerComposeProvider:
    """Drive the compose project in *project_dir* and inspect its container."""

    project_dir: Path
    container_name: str = "asf"
    docker_bin: str = "docker"

    def up(self) -> subprocess.CompletedProcess[str]:
        """Create and start the project in the background."""
        return self._compose("up", "-d")

    def down(self) -> subprocess.CompletedProcess[str]:
        """Stop and remove the project containers."""
        return self._compose("down")

    def restart(self) -> None:
        """Recreate the container (``down`` followed by ``up -d``)."""
        self.down()
        self.up()

    def is_running(self) -> bool:
        """Return True when the container exists and is running."""
        result = run_command(
            [self.docker_bin, "inspect", "--format", "{{.State.Running}}", self.container_name],
            error=DockerError,
            check=False,
        )
        return result.returncode == 0 and result.stdout.strip() == "true"

    def docker_available(self) -> bool:
        """Return True when the docker CLI responds."""
        try:
            result = run_command([self.docker_bin, "--version"], error=DockerError, check=False)
        except DockerError:
            return False
        return result.returncode == 0

    def compose_version(self) -> Version | None:
        """Return the compose plugin version, or ``None`` when it is missing."""
        try:
            result = run_command(
                [self.docker_bin, "compose", "version", "--short"],
                error=DockerError,
                check=False,
            )
        except DockerError:
            return None
        if result.returncode != 0:
            return None
        raw = result.stdout.strip().lstrip("v")
        try:
            return Version(raw)
        except InvalidVersion:
            return None

    def compose_available(self) -> bool:
        """Return True when a Compose v2 plugin is installed."""
        version = self.compose_version()
        return version is not None and version >= MIN_COMPOSE_VERSION

    def follow_logs(self) -> Iterator[str]:
        """Yield container output line by line until the stream ends."""
        command = [self.docker_bin, "logs", "--follow", self.container_name]
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise DockerError(f"{self.docker_bin} not found: {exc}") from exc
        if process.stdout is None:
            process.kill()
            raise DockerError(f"No output stream from {' '.join(command)}.")
        try:
            for line in process.stdout:
                yield line.rstrip("\n")
        finally:
            if process.poll() is None:
                process.terminate()
            process.wait()

    # ------------------------------------------------------------------
    def _compose(self, *args: str) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.docker_bin, "compose", *args],
            error=DockerError,
            cwd=str(self.project_dir),
        )


__all__ = ["DockerComposeProvider", "DockerError", "MIN_COMPOSE_VERSION"]

"""Subprocess helper shared by the providers."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence


def run_command(
    args: Sequence[str],
    *,
    error: type[RuntimeError],
    check: bool = True,
    input_data: bytes | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* capturing text output, raising *error* on failure.

    A missing executable always raises *error*; a non-zero exit code raises
    only when *check* is set.
    """
    command = list(args)
    try:
        if input_data is not None:
            raw = subprocess.run(  # noqa: S603
                command,
                input=input_data,
                capture_output=True,
                check=False,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
            result = subprocess.CompletedProcess(
                command,
                raw.returncode,
                stdout=raw.stdout.decode("utf-8", "replace"),
                stderr=raw.stderr.decode("utf-8", "replace"),
            )
        else:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
    except FileNotFoundError as exc:
        raise error(f"{command[0]} not found: {exc}") from exc
    if check and result.returncode != 0:
        message = (result.stderr or result.stdout or "no output").strip()
        raise error(f"{' '.join(command)} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["run_command"]

"""Converge an ASF installation to the state described by its configuration.

The reconciler walks a fixed sequence of states::

    INIT -> CONFIG_LOADED -> STATE_DETECTED -> [BACKUP_COMPLETE] -> RENDERED
         -> APPLIED -> DONE

and drops to ``FAILED`` on the first error. Every artifact is rendered before
anything is written, an existing installation is backed up before it is
overwritten, and per-bot credential files are carried forward so rerunning
with an unchanged configuration is safe.

Only one reconciliation may run against a given install root at a time; the
reconciler takes no lock, so serialising runs is the caller's job.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .backups import BackupError, BackupSet, create_backup_set, restore_bot_files
from .config import (
    ConfigError,
    EnvConfig,
    InstallerSettings,
    load_or_init,
    update_env_value,
    validate,
)
from .discovery import InstallationState, detect, vhost_path
from .logging import OperationScope, StructuredLogger
from .prompts import Prompter
from .providers.gateway import CONTAINER_SERVICE, ApplyError, ProcessGateway
from .render import RenderedArtifact, RenderError, check_web_server, render
from .templates import TemplateEngine, TemplateError
from .tls import TLSValidationReport, validate_tls
from .webserver import WebServerPlan, plan_web_server

CRASH_FILE = "ASF.crash"

RECONCILE_ERRORS = (ConfigError, RenderError, TemplateError, BackupError, ApplyError)


class ReconcileState(Enum):
    """States of a reconciliation run."""

    INIT = "init"
    CONFIG_LOADED = "config-loaded"
    STATE_DETECTED = "state-detected"
    BACKUP_COMPLETE = "backup-complete"
    RENDERED = "rendered"
    APPLIED = "applied"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class ReconcileResult:
    """Everything a run produced, successful or not."""

    state: ReconcileState = ReconcileState.INIT
    history: list[ReconcileState] = field(default_factory=lambda: [ReconcileState.INIT])
    config: EnvConfig | None = None
    installation: InstallationState | None = None
    web_server: str | None = None
    web_server_plan: WebServerPlan | None = None
    backup: BackupSet | None = None
    artifacts: list[RenderedArtifact] = field(default_factory=list)
    changed: list[Path] = field(default_factory=list)
    restored: list[Path] = field(default_factory=list)
    tls: TLSValidationReport | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Return True when the run reached ``DONE``."""
        return self.state is ReconcileState.DONE

    @property
    def failed_after(self) -> ReconcileState | None:
        """Return the last state reached before ``FAILED``."""
        if self.state is not ReconcileState.FAILED or len(self.history) < 2:
            return None
        return self.history[-2]


def write_artifact(artifact: RenderedArtifact) -> bool:
    """Atomically write *artifact*, returning True when the content changed."""
    path = artifact.path
    if path.is_file() and path.read_bytes() == artifact.content:
        os.chmod(path, artifact.mode)
        _chown(path, artifact.owner)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(artifact.content)
        os.chmod(tmp_path, artifact.mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    _chown(path, artifact.owner)
    return True


def _chown(path: Path, owner: tuple[int, int] | None) -> None:
    # Ownership can only be handed over when running as root.
    if owner is None or os.geteuid() != 0:
        return
    os.chown(path, *owner)


def hand_over_tree(root: Path, owner: tuple[int, int]) -> None:
    """Give *root* and everything below it to *owner* (root only)."""
    if os.geteuid() != 0 or not root.exists():
        return
    os.chown(root, *owner)
    for current, dirs, files in os.walk(root):
        for name in (*dirs, *files):
            os.chown(Path(current) / name, *owner, follow_symlinks=False)


class Reconciler:
    """Drive configuration, detection, backup, rendering and apply."""

    def __init__(
        self,
        settings: InstallerSettings,
        gateway: ProcessGateway,
        *,
        prompter: Prompter | None = None,
        logger: StructuredLogger | None = None,
        templates: TemplateEngine | None = None,
        interactive: bool = False,
        check_tls: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Bind the reconciler to *settings* and its collaborators."""
        self.settings = settings
        self.gateway = gateway
        self.prompter = prompter
        self.logger = logger
        self.templates = templates or TemplateEngine.with_overrides(settings.templates_dir)
        self.interactive = interactive
        self.check_tls = check_tls
        self.clock = clock or (lambda: datetime.now(tz=UTC))

    def run(self, op: OperationScope | None = None) -> ReconcileResult:
        """Reconcile once and return the result; errors end in ``FAILED``.

        Transitions are recorded as steps of *op* when given; otherwise the
        reconciler's own logger (if any) receives a ``reconcile`` record.
        """
        result = ReconcileResult()
        if op is not None or self.logger is None:
            self._run(result, op)
            return result
        with self.logger.operation(
            "reconcile",
            args={"root": self.settings.root, "interactive": self.interactive},
            target={"kind": "installation", "root": self.settings.root},
        ) as op:
            self._run(result, op)
            if result.ok:
                op.success(
                    "Reconciliation complete.",
                    changed=len(result.changed),
                    backups=[str(result.backup.path)] if result.backup else [],
                    context={"web_server": result.web_server},
                )
            else:
                op.error(
                    str(result.error),
                    context={"failed_after": result.failed_after.value
                             if result.failed_after else None},
                )
        return result

    # ------------------------------------------------------------------
    def _run(self, result: ReconcileResult, op: OperationScope | None) -> None:
        def advance(state: ReconcileState, detail: str | None = None) -> None:
            result.state = state
            result.history.append(state)
            if op is not None:
                op.add_step(f"reconcile.{state.value}", status="success", detail=detail)

        try:
            config = load_or_init(self.settings.env_path, self.prompter)
            validate(config)
            check_web_server(config)
            result.config = config
            advance(ReconcileState.CONFIG_LOADED, str(self.settings.env_path))

            installation = detect(self.settings.root, self.settings, domain=config.domain)
            config, result.web_server_plan = self._resolve_web_server(config)
            result.config = config
            result.installation = installation
            result.web_server = config.web_server
            advance(ReconcileState.STATE_DETECTED, installation.state.value)

            if installation.present:
                result.backup = self._backup(config, installation)
                advance(ReconcileState.BACKUP_COMPLETE, str(result.backup.path))

            result.artifacts = render(
                config,
                installation,
                self.settings,
                templates=self.templates,
            )
            if self.check_tls:
                result.tls = validate_tls(
                    self.settings.certificate,
                    self.settings.certificate_key,
                    domain=config.domain,
                )
            advance(ReconcileState.RENDERED, f"{len(result.artifacts)} artifacts")

            self._apply(config, installation, result)
            advance(ReconcileState.APPLIED, f"{len(result.changed)} changed")
            advance(ReconcileState.DONE)
        except RECONCILE_ERRORS as exc:
            result.error = exc
            result.state = ReconcileState.FAILED
            result.history.append(ReconcileState.FAILED)
            if op is not None:
                op.add_step("reconcile.failed", status="error", detail=str(exc))

    def _resolve_web_server(self, config: EnvConfig) -> tuple[EnvConfig, WebServerPlan]:
        installed = self.gateway.installed_web_servers()
        plan = plan_web_server(installed, config.web_server)
        if not (plan.operator_may_choose and self.interactive and self.prompter is not None):
            return config, plan
        choice = self.prompter.choose(
            "No web server detected. Which web server would you like to install?",
            ("apache2", "nginx"),
            default=plan.server,
        )
        if choice == plan.server:
            return config, plan
        update_env_value(self.settings.env_path, "WEB_SERVER", choice)
        return config.with_value("WEB_SERVER", choice), plan_web_server(installed, choice)

    def _backup(self, config: EnvConfig, installation: InstallationState) -> BackupSet:
        candidates = [
            installation.daemon_config,
            installation.compose_manifest,
            vhost_path(self.settings, config.web_server, config.domain),
        ]
        return create_backup_set(
            installation.root,
            [path for path in candidates if path is not None],
            installation.bot_files,
            now=self.clock(),
        )

    def _apply(
        self,
        config: EnvConfig,
        installation: InstallationState,
        result: ReconcileResult,
    ) -> None:
        gateway = self.gateway
        server = config.web_server
        plan = result.web_server_plan
        runtimes = ["docker", "compose"]
        if plan is None or plan.install:
            runtimes.append(server)
        for runtime in runtimes:
            gateway.ensure_installed(runtime)

        if installation.present:
            gateway.stop(CONTAINER_SERVICE)
        gateway.stop(server)

        config_dir = self.settings.config_dir
        try:
            (config_dir / CRASH_FILE).unlink(missing_ok=True)
            config_dir.mkdir(parents=True, exist_ok=True)
            self.settings.plugins_dir.mkdir(parents=True, exist_ok=True)
            for artifact in result.artifacts:
                if write_artifact(artifact):
                    result.changed.append(artifact.path)
        except OSError as exc:
            raise ApplyError(f"Failed to write artifacts under {installation.root}: {exc}") from exc

        site = vhost_path(self.settings, server, config.domain)
        gateway.enable_site(server, site)

        if result.backup is not None:
            result.restored = restore_bot_files(result.backup, config_dir)

        owner = (self.settings.container_uid, self.settings.container_gid)
        try:
            hand_over_tree(config_dir, owner)
            hand_over_tree(self.settings.plugins_dir, owner)
        except OSError as exc:
            raise ApplyError(f"Failed to hand {config_dir} to uid/gid {owner}: {exc}") from exc

        gateway.start(CONTAINER_SERVICE)
        gateway.start(server)
        for service in (CONTAINER_SERVICE, server):
            if not gateway.status(service):
                raise ApplyError(f"{service} is not running after start.")


__all__ = [
    "CRASH_FILE",
    "RECONCILE_ERRORS",
    "ReconcileResult",
    "ReconcileState",
    "Reconciler",
    "hand_over_tree",
    "write_artifact",
]

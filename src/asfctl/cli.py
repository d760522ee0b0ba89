"""Typer command line for ``asfctl``.

``asfctl install`` (also available as ``asfctl reconcile``) converges the
installation under the install root to the ``.env`` configuration. The
remaining commands inspect an installation or help the operator with bot
authentication.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError, list_backup_sets
from .config import (
    ConfigError,
    EnvConfig,
    InstallerSettings,
    load_env,
    load_settings,
    validate,
)
from .discovery import detect
from .exit_codes import ExitCode
from .helpers.auth_watch import guidance, scan
from .helpers.mafile import (
    MaFileError,
    build_bot_config,
    import_mafile,
    write_bot_config,
)
from .logging import OperationScope, StructuredLogger
from .prompts import ConsolePrompter, NonInteractivePrompter, Prompter
from .providers import (
    CONTAINER_SERVICE,
    ApplyError,
    DockerComposeProvider,
    DockerError,
    ProcessGateway,
    SystemGateway,
)
from .reconcile import Reconciler, ReconcileResult
from .render import RenderError, render
from .templates import TemplateEngine, TemplateError
from .tls import TLSValidationReport, TLSValidationSeverity, validate_tls

console = Console()

WIKI_URL = "https://github.com/JustArchiNET/ArchiSteamFarm/wiki/Configuration"

ROOT_OPTION = typer.Option(
    None,
    "--root",
    dir_okay=True,
    file_okay=False,
    help="Override the install root (defaults to /opt/asf).",
)
ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    dir_okay=False,
    help="Override the path of the .env file (defaults to <root>/.env).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "--non-interactive",
    "-y",
    help="Never prompt; use configured values and defaults.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    help="Domain shown in instructions (defaults to the configured ASF domain).",
)

_ERROR_EXIT_CODES: tuple[tuple[type[Exception], ExitCode], ...] = (
    (ConfigError, ExitCode.VALIDATION),
    (RenderError, ExitCode.VALIDATION),
    (TemplateError, ExitCode.VALIDATION),
    (BackupError, ExitCode.ENVIRONMENT),
    (ApplyError, ExitCode.PROVIDER),
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        ArchiSteamFarm installer and reconciler.

        Installs ASF as a Docker container behind an Apache or Nginx HTTPS
        reverse proxy, driven by the .env file in the install root.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    settings: InstallerSettings
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(
    ctx: typer.Context,
    root: Path | None,
    env_file: Path | None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        settings = load_settings(overrides={"root": root, "env_file": env_file})
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(
        settings=settings,
        logger=StructuredLogger(settings.logs_dir),
        templates=TemplateEngine.with_overrides(settings.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _build_gateway(settings: InstallerSettings) -> ProcessGateway:
    return SystemGateway.from_settings(settings)


def _docker_provider(settings: InstallerSettings) -> DockerComposeProvider:
    return DockerComposeProvider(project_dir=settings.root, container_name=settings.container_name)


def _is_root() -> bool:
    return os.geteuid() == 0


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the asfctl version and exit.",
    ),
    root: Path | None = ROOT_OPTION,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"asfctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, root, env_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _require_root(op: OperationScope) -> None:
    if not _is_root():
        _command_error(op, "This command must be run as root.", rc=ExitCode.PRECONDITION)


def _exit_code_for(error: Exception | None) -> ExitCode:
    for kind, code in _ERROR_EXIT_CODES:
        if isinstance(error, kind):
            return code
    return ExitCode.PROVIDER


def _load_config(
    op: OperationScope,
    settings: InstallerSettings,
    *,
    invalid_rc: ExitCode = ExitCode.VALIDATION,
) -> EnvConfig:
    """Read and validate the env file without ever creating it."""
    path = settings.env_path
    if not path.exists():
        _command_error(
            op,
            f"No configuration found at {path}; run 'asfctl install' first.",
            rc=ExitCode.PRECONDITION,
        )
    try:
        config = load_env(path)
        validate(config)
    except ConfigError as exc:
        _command_error(op, str(exc), rc=invalid_rc)
    return config


def _format_tls_status(severity: TLSValidationSeverity) -> str:
    if severity is TLSValidationSeverity.OK:
        return "[green]OK[/green]"
    if severity is TLSValidationSeverity.WARNING:
        return "[yellow]WARN[/yellow]"
    return "[red]ERROR[/red]"


def _render_tls_report(report: TLSValidationReport, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
        return

    console.print(f"[bold]TLS validation ({report.domain or 'no domain'})[/bold]")
    status_table = Table("Scope", "Check", "Status", "Details")
    for finding in report.findings:
        status_table.add_row(
            finding.scope,
            finding.check,
            _format_tls_status(finding.severity),
            finding.message,
        )
    console.print(status_table)
    console.print(f"Certificate: {report.certificate}\nKey: {report.key}")
    if report.not_valid_after is not None:
        console.print(f"Not valid after: {report.not_valid_after.isoformat()}")


def _print_summary(result: ReconcileResult, settings: InstallerSettings) -> None:
    config = result.config
    if config is None:
        return
    updated = result.installation is not None and result.installation.present
    headline = "ASF update completed successfully!" if updated else (
        "ASF installation completed successfully!"
    )
    root = settings.root
    console.print(f"[green]{headline}[/green]")
    console.print(f"You can access ASF securely at: [yellow]{config.url}[/yellow]")
    if result.backup is not None:
        console.print(f"Previous files backed up to {result.backup.path}")
    if result.restored:
        console.print(f"Restored {len(result.restored)} bot configuration file(s).")
    console.print("")
    console.print("[yellow]IMPORTANT:[/yellow] Security credentials:")
    console.print(f"1. Web interface password: {config.ipc_password}", markup=False)
    console.print(f"2. ASF encryption key: {config.crypt_key}", markup=False)
    console.print("")
    console.print("[blue]Steam Guard Authentication:[/blue]")
    console.print("Use '2fa <bot> <code>' or 'input <bot> <code>' in the IPC command tab.")
    console.print("To watch for authentication requests, run:")
    console.print(f"  [yellow]sudo sh {root / 'asf-auth-helper.sh'}[/yellow]")
    console.print("To import a .maFile from Steam Desktop Authenticator, run:")
    console.print(f"  [yellow]sudo sh {root / 'asf-import-mafile.sh'}[/yellow]")
    console.print("")
    console.print(f"For more information about ASF configuration, visit: {WIKI_URL}")
    if result.tls is not None and result.tls.status is not TLSValidationSeverity.OK:
        console.print("")
        console.print("[yellow]TLS preflight reported problems:[/yellow]")
        for problem in result.tls.problems():
            console.print(f"  - {problem}")


def _reconcile(ctx: typer.Context, *, command: str, yes: bool) -> None:
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        command,
        args={"yes": yes},
        target={"kind": "installation", "root": settings.root},
    ) as op:
        _require_root(op)
        prompter: Prompter = NonInteractivePrompter(console) if yes else ConsolePrompter(console)
        reconciler = Reconciler(
            settings,
            _build_gateway(settings),
            prompter=prompter,
            templates=runtime.templates,
            interactive=not yes,
        )
        result = reconciler.run(op)
        if not result.ok:
            stage = result.failed_after.value if result.failed_after else "init"
            _command_error(
                op,
                f"Reconciliation failed after {stage}: {result.error}",
                rc=_exit_code_for(result.error),
            )
        _print_summary(result, settings)
        op.success(
            "Installation reconciled.",
            changed=len(result.changed),
            backups=[str(result.backup.path)] if result.backup else [],
            context={"url": result.config.url if result.config else None},
        )


@app.command()
def install(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Install or update ASF and its reverse proxy."""
    _reconcile(ctx, command="install", yes=yes)


@app.command()
def reconcile(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Converge the installation to the .env configuration."""
    _reconcile(ctx, command="reconcile", yes=yes)


@app.command("render")
def render_command(
    ctx: typer.Context,
    show_content: bool = typer.Option(
        False,
        "--content",
        help="Print every artifact's content as well.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the files an install would write without touching anything."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        "render",
        args={"content": show_content, "json": json_output},
        target={"kind": "installation", "root": settings.root},
    ) as op:
        config = _load_config(op, settings)
        state = detect(settings.root, settings, domain=config.domain)
        try:
            artifacts = render(config, state, settings, templates=runtime.templates)
        except (RenderError, TemplateError) as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if json_output:
            console.print_json(
                data={
                    "state": state.state.value,
                    "artifacts": [
                        {
                            "name": artifact.name,
                            "path": str(artifact.path),
                            "mode": f"{artifact.mode:04o}",
                            **({"content": artifact.text} if show_content else {}),
                        }
                        for artifact in artifacts
                    ],
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Artifact", style="bold")
            table.add_column("Path")
            table.add_column("Mode")
            for artifact in artifacts:
                table.add_row(artifact.name, str(artifact.path), f"{artifact.mode:04o}")
            console.print(table)
            if show_content:
                for artifact in artifacts:
                    console.rule(str(artifact.path))
                    console.print(artifact.text, markup=False, highlight=False)
        op.success("Rendered artifacts.", changed=0, context={"count": len(artifacts)})


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report the installation state and whether its services run."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "installation", "root": settings.root},
    ) as op:
        config: EnvConfig | None = None
        if settings.env_path.exists():
            try:
                config = load_env(settings.env_path)
            except ConfigError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        domain = config.domain if config is not None else None
        state = detect(settings.root, settings, domain=domain)
        services: dict[str, bool] = {}
        if state.present:
            gateway = _build_gateway(settings)
            services[CONTAINER_SERVICE] = gateway.status(CONTAINER_SERVICE)
            if config is not None:
                services[config.web_server] = gateway.status(config.web_server)

        payload: dict[str, object] = {
            **state.to_dict(),
            "domain": domain,
            "web_server": config.web_server if config is not None else None,
            "services": services,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Item", style="bold")
            table.add_column("Value")
            table.add_row("Install root", str(settings.root))
            table.add_row("State", state.state.value)
            table.add_row("Domain", domain or "(not configured)")
            table.add_row("Bot configs", str(len(state.bot_files)))
            for service, running in services.items():
                table.add_row(
                    f"Service {service}",
                    "[green]running[/green]" if running else "[red]stopped[/red]",
                )
            console.print(table)
        op.success("Reported installation status.", changed=0, context=payload)


@app.command()
def backups(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backup sets taken before updates."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        "backups",
        args={"json": json_output},
        target={"kind": "backups", "root": settings.root},
    ) as op:
        try:
            entries = list_backup_sets(settings.root)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(
                data={
                    "backups": [
                        {"name": entry.name, "path": str(entry.path), **entry.to_dict()}
                        for entry in entries
                    ]
                }
            )
            op.success("Reported backup sets as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Backup", style="bold")
        table.add_column("Created")
        table.add_column("Files")
        table.add_column("Bot configs")
        if not entries:
            table.add_row("(none)", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    entry.name,
                    entry.created_at or "-",
                    str(len(entry.files)),
                    ", ".join(entry.bot_files) or "-",
                )
        console.print(table)
        op.success("Reported backup sets.", changed=0)


@app.command("tls-check")
def tls_check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Validate the certificate and key the reverse proxy is configured with."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        "tls-check",
        args={"json": json_output},
        target={"kind": "tls", "certificate": settings.certificate},
    ) as op:
        domain: str | None = None
        if settings.env_path.exists():
            try:
                domain = load_env(settings.env_path).domain
            except ConfigError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        report = validate_tls(settings.certificate, settings.certificate_key, domain=domain)
        _render_tls_report(report, json_output=json_output)
        if report.has_errors:
            _command_error(
                op,
                "TLS validation failed.",
                rc=ExitCode.VALIDATION,
                errors=report.problems(),
            )
        if report.has_warnings:
            op.warning("TLS validation reported warnings.", warnings=report.problems())
            return
        op.success("TLS validation passed.", changed=0)


def _resolve_domain(op: OperationScope, settings: InstallerSettings, domain: str | None) -> str:
    if domain:
        return domain
    return _load_config(op, settings, invalid_rc=ExitCode.PRECONDITION).domain


@app.command("auth-watch")
def auth_watch(ctx: typer.Context, domain: str | None = DOMAIN_OPTION) -> None:
    """Follow the container log and explain authentication requests."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        "auth-watch",
        args={"domain": domain},
        target={"kind": "container", "name": settings.container_name},
    ) as op:
        _require_root(op)
        domain = _resolve_domain(op, settings, domain)
        docker = _docker_provider(settings)
        if not docker.docker_available():
            _command_error(op, "Docker is not available.", rc=ExitCode.PRECONDITION)

        console.print("[bold blue]ASF Authentication Helper[/bold blue]")
        console.print("Watching the ASF log for authentication requests.")
        console.print("[green]Press Ctrl+C to exit[/green]")
        seen = 0
        try:
            for prompt in scan(docker.follow_logs()):
                seen += 1
                console.rule(style="red")
                for line in guidance(prompt, domain):
                    console.print(line, markup=False, highlight=False)
                console.rule(style="red")
        except DockerError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        except KeyboardInterrupt:
            console.print("Stopped watching.")
        op.success("Log stream ended.", changed=0, context={"prompts": seen})


@app.command("import-mafile")
def import_mafile_command(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    mafile: Path | None = typer.Option(
        None,
        "--mafile",
        dir_okay=False,
        help="Path of the .maFile to import (prompted when omitted).",
    ),
    bot: str | None = typer.Option(
        None,
        "--bot",
        help="Bot name the authenticator belongs to (prompted when omitted).",
    ),
) -> None:
    """Import a Steam Desktop Authenticator .maFile for a bot."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    prompter = ConsolePrompter(console)
    with runtime.logger.operation(
        "import-mafile",
        args={"mafile": mafile, "bot": bot},
        target={"kind": "bot", "name": bot},
    ) as op:
        _require_root(op)
        domain = _resolve_domain(op, settings, domain)
        if mafile is None:
            mafile = Path(prompter.ask("Please enter the full path to your .maFile"))
        if bot is None:
            bot = prompter.ask("Please enter the name for your bot (e.g., MyBot)")
        try:
            imported = import_mafile(mafile.expanduser(), bot, settings.config_dir)
        except MaFileError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        op.add_step("mafile.copy", status="success", detail=str(imported.path))
        console.print(f"[green]Copied {imported.source} to {imported.path}.[/green]")

        console.print("")
        console.print("[blue]Method 1: Import via Web Interface[/blue]")
        console.print(f"1. Access the ASF web interface at: https://{domain}")
        console.print("2. Go to the 'Command' tab and run:")
        console.print(f"   {imported.import_command}", markup=False)
        console.print("")
        console.print("[blue]Method 2: Manual Bot Configuration[/blue]")
        console.print(f"Create {settings.config_dir / (imported.bot + '.json')} with:")
        console.print(
            json.dumps(build_bot_config(imported.authenticator), indent=2),
            markup=False,
            highlight=False,
        )
        console.print("")

        if not prompter.confirm(
            "Would you like to automatically create this bot configuration file?",
            default=False,
        ):
            console.print("No problem! You can create the configuration file manually.")
            op.success("Imported .maFile.", changed=1)
            return

        login = prompter.ask("Please enter your Steam username")
        password = prompter.ask_secret("Please enter your Steam password")
        try:
            path = write_bot_config(
                settings.config_dir,
                imported.bot,
                build_bot_config(imported.authenticator, login=login, password=password),
                owner=(settings.container_uid, settings.container_gid),
            )
        except MaFileError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        op.add_step("mafile.bot_config", status="success", detail=str(path))
        console.print(f"[green]Bot configuration file created at {path}[/green]")

        if prompter.confirm("Would you like to restart ASF now?", default=False):
            gateway = _build_gateway(settings)
            try:
                gateway.stop(CONTAINER_SERVICE)
                gateway.start(CONTAINER_SERVICE)
            except ApplyError as exc:
                _command_error(op, str(exc), rc=ExitCode.PROVIDER)
            op.add_step("container.restart", status="success")
            console.print(f"[green]ASF restarted. Your bot is available at https://{domain}[/green]")
        op.success("Imported .maFile and wrote bot configuration.", changed=2)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]

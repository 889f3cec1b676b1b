"""Command Line Interface for MedVault.

Operational commands around the encrypted record store: configuration
overview, data key initialization and inspection, and audit reporting.

Security Impact:
    - Key commands print key metadata only, never key material
    - Audit commands act as an explicit principal and are themselves audited
    - Failures exit non-zero with the error kind, never a stack trace unless --verbose
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from medvault import __version__
from medvault.domain.access_models import Principal
from medvault.domain.encryption_schema import DEFAULT_SCHEMA
from medvault.domain.enums import Role
from medvault.domain.ports import MedVaultError
from medvault.infrastructure.config_manager import ConfigManager
from medvault.infrastructure.logging_config import setup_logging
from medvault.infrastructure.settings import settings
from medvault.main import MedVaultApplication, build_application

app = typer.Typer(
    name="medvault",
    help="MedVault: field-level encrypted, role-filtered medical record store",
    add_completion=False
)
console = Console()


def build_application_cli() -> MedVaultApplication:
    """Wire the application from the environment (CLI wrapper)."""
    try:
        return build_application(ConfigManager.from_environment())
    except (MedVaultError, ValueError, RuntimeError) as e:
        console.print(f"[red]✗[/red] Failed to initialize MedVault: {str(e)}")
        raise typer.Exit(code=1)


def _principal(actor: str, roles: List[Role]) -> Principal:
    return Principal(actor_id=actor, roles=frozenset(roles))


@app.command()
def info() -> None:
    """Display configuration and the field encryption schema."""
    config = ConfigManager.from_environment()
    db_config = config.get_database_config()
    encryption_config = config.get_encryption_config()

    console.print("[bold blue]System Information[/bold blue]\n")
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", __version__)
    info_table.add_row("Database Type:", db_config.db_type)
    if db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", db_config.get_connection_string())
    info_table.add_row("Data Key Alt-Name:", encryption_config.key_alt_name)
    info_table.add_row("Master Key ID:", encryption_config.master_key_id)
    info_table.add_row("Operation Timeout:", f"{settings.operation_timeout:.1f}s")
    console.print(info_table)

    schema_table = Table(title="Encrypted Fields")
    schema_table.add_column("Field")
    schema_table.add_column("Class")
    for field in DEFAULT_SCHEMA.qualified_fields():
        schema_table.add_row(field, DEFAULT_SCHEMA.classification_of(field).value)
    console.print(schema_table)


@app.command("init-keys")
def init_keys(
    actor: str = typer.Option("cli", "--actor", "-a", help="Identity recorded if a key is created"),
    key_alt_name: Optional[str] = typer.Option(None, "--key-alt-name", "-k", help="Data key alt-name"),
) -> None:
    """Create the data encryption key if it does not exist yet."""
    application = build_application_cli()
    alt_name = key_alt_name or application.engine.schema.key_alt_name
    try:
        handle = application.key_vault.get_or_create_data_key(alt_name, actor_id=actor)
        console.print(f"[green]✓[/green] Data key '{handle.key_alt_name}' ready (key_id={handle.key_id})")
    except MedVaultError as e:
        console.print(f"[red]✗[/red] {e.kind}: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        application.close()


@app.command()
def keys() -> None:
    """List stored data keys (metadata only)."""
    application = build_application_cli()
    try:
        stored = application.key_vault.list_keys()
    except MedVaultError as e:
        console.print(f"[red]✗[/red] {e.kind}: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        application.close()

    if not stored:
        console.print("[yellow]⚠[/yellow] No data keys stored")
        return

    table = Table(title="Data Keys")
    table.add_column("Alt-Name")
    table.add_column("Key ID")
    table.add_column("Master Key")
    table.add_column("Created (UTC)")
    for key in stored:
        table.add_row(key["key_alt_name"], key["key_id"], key["master_key_id"], key["created_at"].isoformat())
    console.print(table)


@app.command("audit-report")
def audit_report(
    actor: str = typer.Option(..., "--actor", "-a", help="Actor requesting the report"),
    roles: List[Role] = typer.Option(..., "--role", "-r", help="Role held by the actor (repeatable)"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent entries to show"),
) -> None:
    """Show audit trail counts and the most recent entries."""
    principal = _principal(actor, roles)
    application = build_application_cli()
    try:
        summary_result = application.audit_reports.get_summary(principal)
        if not summary_result.is_success():
            console.print(f"[red]✗[/red] {summary_result.error_type}: {summary_result.error}")
            raise typer.Exit(code=1)

        logs_result = application.audit_reports.get_audit_logs(principal, limit=limit)
        if not logs_result.is_success():
            console.print(f"[red]✗[/red] {logs_result.error_type}: {logs_result.error}")
            raise typer.Exit(code=1)
    except MedVaultError as e:
        console.print(f"[red]✗[/red] {e.kind}: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        application.close()

    summary = summary_result.value
    console.print("[bold]Audit Summary:[/bold]")
    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Total entries:", f"[bold]{summary.total:,}[/bold]")
    summary_table.add_row("Last 24h:", f"{summary.last_24h:,}")
    for decision, count in sorted(summary.by_decision.items()):
        summary_table.add_row(f"Decision {decision}:", f"{count:,}")
    console.print(summary_table)

    logs_table = Table(title="Recent Entries")
    for column in ("Timestamp", "Actor", "Event", "Action", "Entity", "Decision"):
        logs_table.add_column(column)
    for entry in logs_result.value.logs:
        logs_table.add_row(
            entry.timestamp.isoformat(),
            entry.actor_id,
            entry.event_type,
            entry.action,
            f"{entry.entity_type or '-'} {entry.entity_id or ''}".strip(),
            entry.decision,
        )
    console.print(logs_table)


@app.command("export-audit")
def export_audit(
    actor: str = typer.Option(..., "--actor", "-a", help="Actor requesting the export"),
    roles: List[Role] = typer.Option(..., "--role", "-r", help="Role held by the actor (repeatable)"),
    fmt: str = typer.Option("csv", "--format", "-f", help="Export format (csv or json)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (stdout if omitted)"),
) -> None:
    """Export the audit trail as CSV or JSON."""
    principal = _principal(actor, roles)
    application = build_application_cli()
    try:
        result = application.audit_reports.export_audit_logs(
            principal, fmt=fmt, output_path=str(output) if output else None
        )
    except MedVaultError as e:
        console.print(f"[red]✗[/red] {e.kind}: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        application.close()

    if not result.is_success():
        console.print(f"[red]✗[/red] {result.error_type}: {result.error}")
        raise typer.Exit(code=1)

    if output:
        console.print(f"[green]✓[/green] Audit log exported: {output}")
    else:
        typer.echo(result.value)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """MedVault: field-level encrypted, role-filtered medical record store."""
    if version:
        console.print(f"MedVault v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)
    if verbose:
        logging.getLogger(__name__).debug("Verbose logging enabled")


if __name__ == "__main__":
    app()

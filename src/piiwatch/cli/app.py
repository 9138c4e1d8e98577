"""
Root Typer application for the piiwatch CLI.

Commands:
    run             start the pipeline workers (or one beat with ``--once``)
    check-config    validate settings and the encryption key reference
    emit            append log lines to the buffer
    generate-key    print a fresh base64 master key
    failures        list / resolve exhausted alert deliveries
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
import threading

import typer
from rich.console import Console
from rich.table import Table

from piiwatch.core.errors import ConfigError
from piiwatch.core.logging import configure_logging
from piiwatch.core.settings import PiiWatchSettings, load_settings

app = typer.Typer(
    name="piiwatch",
    help="piiwatch: scan function logs for sensitive data and alert on findings.",
    no_args_is_help=True,
)
failures_app = typer.Typer(no_args_is_help=True, help="Exhausted alert deliveries.")
app.add_typer(failures_app, name="failures")

console = Console()
err_console = Console(stderr=True)


def _settings_or_exit() -> PiiWatchSettings:
    try:
        return load_settings()
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc.message}")
        raise typer.Exit(code=2) from exc


@app.callback()
def main() -> None:
    """piiwatch CLI."""


@app.command("check-config")
def check_config(json_out: bool = typer.Option(False, "--json", help="Print settings as JSON.")) -> None:
    """Validate configuration and resolve the encryption key."""
    from piiwatch.core.secrets import MissingSecretError, SecretsResolver
    from piiwatch.sink.codec import EnvelopeCipher

    settings = _settings_or_exit()
    try:
        EnvelopeCipher(settings.encryption_key_ref, SecretsResolver()).check()
    except (ConfigError, MissingSecretError) as exc:
        err_console.print(f"[red]Encryption key error:[/red] {exc.message}")
        raise typer.Exit(code=2) from exc

    summary = {
        "stage": settings.stage,
        "bucket": settings.bucket_name,
        "job_name": settings.job_name,
        "cadence": settings.classification_cadence.value,
        "initial_run": settings.initial_run,
        "overlap_policy": settings.overlap_policy,
        "retention_profile": settings.retention_profile,
        "webhook_format": settings.webhook_format,
    }
    if json_out:
        typer.echo(json.dumps(summary, indent=2))
        return
    table = Table(title="piiwatch configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in summary.items():
        table.add_row(key, str(value))
    console.print(table)
    console.print("[green]Configuration OK[/green]")


@app.command()
def run(once: bool = typer.Option(False, "--once", help="Run one scheduler beat and flush, then exit.")) -> None:
    """Run the pipeline until interrupted."""
    from piiwatch.pipeline import Pipeline

    settings = _settings_or_exit()
    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    try:
        pipeline = Pipeline.from_settings(settings)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc.message}")
        raise typer.Exit(code=2) from exc

    if once:
        asyncio.run(pipeline.router.subscribe(pipeline.bus))
        pipeline.sink.drain()
        result = asyncio.run(pipeline.tick())
        pipeline.close()
        typer.echo(json.dumps({"outcome": result.outcome.value, "token": result.token, "job_id": result.job_id}))
        return

    stopped = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: stopped.set())
    pipeline.start()
    stopped.wait()
    pipeline.stop()


@app.command()
def emit(
    source: str = typer.Argument(..., help="Source identifier, e.g. a function name."),
    lines: list[str] | None = typer.Argument(None, help="Log lines; read from stdin when omitted."),
) -> None:
    """Append log lines to the buffer."""
    from piiwatch.buffer.log_buffer import LogBuffer
    from piiwatch.core.errors import BufferSaturated
    from piiwatch.core.models import LogRecord

    settings = _settings_or_exit()
    texts = lines or [line.rstrip("\n") for line in sys.stdin]
    with LogBuffer(
        settings.buffer_path,
        capacity=settings.buffer_capacity,
        full_policy=settings.buffer_full_policy,
        block_timeout=settings.buffer_block_timeout,
    ) as buffer:
        try:
            offsets = [buffer.append(LogRecord.from_text(source, text)) for text in texts if text]
        except BufferSaturated as exc:
            err_console.print(f"[red]{exc.message}[/red]")
            raise typer.Exit(code=1) from exc
    typer.echo(f"appended {len(offsets)} record(s)")


@app.command("generate-key")
def generate_key() -> None:
    """Print a new base64-encoded 256-bit master key."""
    from piiwatch.sink.codec import generate_master_key

    typer.echo(generate_master_key())


# ── failures ─────────────────────────────────────────────────────────────


@failures_app.command("list")
def list_failures(
    all_: bool = typer.Option(False, "--all", help="Include resolved entries."),
    limit: int = typer.Option(50, "--limit", "-n"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List failed alert deliveries."""
    from piiwatch.routing.dispatch import DeliveryFailureLog

    settings = _settings_or_exit()
    log = DeliveryFailureLog(settings.failures_path)
    entries = log.list_all(limit) if all_ else log.list_unresolved(limit)
    log.close()

    if json_out:
        typer.echo(
            json.dumps(
                [
                    {
                        "id": e.id,
                        "destination": e.destination,
                        "error": e.error,
                        "attempts": e.attempts,
                        "created_at": e.created_at.isoformat(),
                        "resolved": e.is_resolved,
                    }
                    for e in entries
                ],
                indent=2,
            )
        )
        return
    if not entries:
        console.print("No delivery failures.")
        return
    table = Table(title="Delivery failures")
    for column in ("ID", "Destination", "Error", "Attempts", "Created", "Resolved"):
        table.add_column(column)
    for e in entries:
        table.add_row(
            e.id, e.destination, e.error, str(e.attempts), e.created_at.isoformat(), "yes" if e.is_resolved else "no"
        )
    console.print(table)


@failures_app.command("resolve")
def resolve_failure(
    failure_id: str = typer.Argument(..., help="Failure entry ID"),
    by: str = typer.Option("operator", "--by"),
) -> None:
    """Mark a failed delivery as handled."""
    from piiwatch.routing.dispatch import DeliveryFailureLog

    settings = _settings_or_exit()
    log = DeliveryFailureLog(settings.failures_path)
    resolved = log.resolve(failure_id, resolved_by=by)
    log.close()
    if not resolved:
        err_console.print(f"[red]No unresolved failure {failure_id}[/red]")
        raise typer.Exit(code=1)
    typer.echo(f"resolved {failure_id}")

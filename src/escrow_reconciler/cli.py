"""Escrow reconciler command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import typer
from pydantic import ValidationError

from escrow_reconciler import __version__
from escrow_reconciler.config import Settings, get_settings
from escrow_reconciler.service import ControlResult, ReconciliationService

__all__ = ["app"]

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="escrow-reconciler",
    help="Keep off-chain escrow and order state in line with the escrow contract.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"escrow-reconciler version {__version__}")
        raise typer.Exit()


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _configure_logging(settings: Settings, *, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_result(result: ControlResult, *, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps({"success": result.success, "message": result.message, "data": result.data}, default=str))
        return
    typer.echo(result.message)
    for key, value in result.data.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        typer.echo(f"  {key}: {value}")


def _control(
    call: Callable[[ReconciliationService], Awaitable[ControlResult]],
    *,
    as_json: bool,
) -> None:
    """Run one control operation against a short-lived service."""
    settings = _load_settings()
    _configure_logging(settings)

    async def main() -> ControlResult:
        service = ReconciliationService(settings)
        try:
            return await call(service)
        finally:
            await service.close()

    result = asyncio.run(main())
    _echo_result(result, as_json=as_json)
    if not result.success:
        raise typer.Exit(1)


_JSON_OPTION: Any = typer.Option(False, "--json", help="Print the result as JSON.")


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Escrow reconciler: ingest, validate and reconcile escrow contract events."""


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Start live ingestion and the job scheduler until interrupted."""
    settings = _load_settings()
    _configure_logging(settings, verbose=verbose)
    try:
        settings.validate_requirements(command="run")
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    logger.info("Starting with settings: %s", settings.redacted_summary())
    try:
        asyncio.run(ReconciliationService(settings).run())
    except KeyboardInterrupt:
        typer.echo("Interrupted", err=True)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def status(as_json: bool = _JSON_OPTION) -> None:
    """Show the sync checkpoint and how far behind the chain it is."""
    _control(lambda s: s.get_sync_status(), as_json=as_json)


@app.command()
def resync(
    from_block: int = typer.Argument(..., min=0, help="Block to re-ingest from."),
    as_json: bool = _JSON_OPTION,
) -> None:
    """Re-ingest and reconcile everything from FROM_BLOCK to the confirmed head."""
    _control(lambda s: s.resync_from_block(from_block), as_json=as_json)


@app.command()
def reconcile(
    escrow: str | None = typer.Option(None, "--escrow", "-e", help="Reconcile a single escrow."),
    as_json: bool = _JSON_OPTION,
) -> None:
    """Apply unprocessed events to escrow and order state."""
    if escrow:
        _control(lambda s: s.reconcile_escrow(escrow), as_json=as_json)
    else:
        _control(lambda s: s.reconcile_all(), as_json=as_json)


@app.command()
def audit(
    deep: bool = typer.Option(False, "--deep", help="Also check stuck and unapplied events."),
    as_json: bool = _JSON_OPTION,
) -> None:
    """Compare order statuses against their escrows."""
    _control(lambda s: s.run_consistency_check(deep=deep), as_json=as_json)


@app.command("validate-block")
def validate_block(
    block_number: int = typer.Argument(..., min=0, help="Block number to check."),
    as_json: bool = _JSON_OPTION,
) -> None:
    """Check a single block header against its parent."""
    _control(lambda s: s.validate_block(block_number), as_json=as_json)

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import orjson
import typer

from crmforms.config import Settings
from crmforms.schema import synthesize_schema
from crmforms.session import FormSession, SessionState
from crmforms.transports import HTTPFormSource, HTTPSubmissionSink

cli = typer.Typer(add_completion=False, help="Web-form capture service for the CRM.")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_json(path: Path) -> Any:
    try:
        return orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as exc:
        raise typer.BadParameter(f"{path}: {exc}") from exc


def run_server(host: str | None, port: int | None) -> None:
    import uvicorn

    from crmforms.app import create_app

    settings = Settings()
    configure_logging(settings.log_level)
    resolved_host = host or settings.host
    resolved_port = port if port is not None else settings.port
    uvicorn.run(create_app(settings), host=resolved_host, port=resolved_port)


@cli.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="Address to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
) -> None:
    ctx.obj = {"host": host, "port": port}
    if ctx.invoked_subcommand is None:
        run_server(host, port)


@cli.command()
def run(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="Address to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
) -> None:
    """Serve the API and the embeddable forms."""
    base = ctx.obj or {}
    resolved_host = host or base.get("host")
    resolved_port = port if port is not None else base.get("port")
    run_server(resolved_host, resolved_port)


@cli.command()
def validate(
    form_file: Path = typer.Argument(..., help="Form definition JSON (object with 'fields', or a list of fields)"),
    payload_file: Path = typer.Argument(..., help="Submission payload JSON object"),
) -> None:
    """Check a payload against a form definition without a server."""
    form = _read_json(form_file)
    fields = form.get("fields", []) if isinstance(form, dict) else form
    if not isinstance(fields, list):
        raise typer.BadParameter(f"{form_file}: no field list found")
    payload = _read_json(payload_file)

    schema = synthesize_schema(fields)
    if schema.skipped:
        typer.echo(f"skipped {schema.skipped} malformed field(s)", err=True)
    result = schema.validate(payload if isinstance(payload, dict) else {})
    if result.ok:
        typer.echo(orjson.dumps(result.values, option=orjson.OPT_INDENT_2).decode("utf-8"))
        return
    for field_id, message in result.errors.items():
        typer.echo(f"{field_id}: {message}")
    raise typer.Exit(code=1)


async def _fill(form_id: str, payload: dict[str, Any], api_url: str, timeout: float) -> int:
    session = FormSession(
        form_id,
        HTTPFormSource(api_url, timeout=timeout),
        HTTPSubmissionSink(api_url, timeout=timeout),
    )
    if await session.load() == SessionState.ERROR:
        typer.echo(f"error: {session.banner}", err=True)
        return 2
    try:
        session.update({key: value for key, value in payload.items() if key in session.values})
        outcome = await session.submit({"client": "crmforms-cli"})
    finally:
        await session.close()
    if outcome.ok and outcome.receipt is not None:
        typer.echo(f"submitted {outcome.receipt.submission_id}")
        return 0
    if outcome.message:
        typer.echo(f"error: {outcome.message}", err=True)
    for field_id, message in outcome.errors.items():
        typer.echo(f"{field_id}: {message}", err=True)
    return 1


@cli.command()
def fill(
    form_id: str = typer.Argument(..., help="Form id on the server"),
    payload_file: Path = typer.Argument(..., help="Submission payload JSON object"),
    api_url: str | None = typer.Option(None, help="Base URL of the crmforms API"),
) -> None:
    """Fetch a form from a running server, validate a payload and submit it."""
    settings = Settings()
    configure_logging(settings.log_level)
    payload = _read_json(payload_file)
    if not isinstance(payload, dict):
        raise typer.BadParameter(f"{payload_file}: payload must be a JSON object")
    code = asyncio.run(_fill(form_id, payload, api_url or settings.api_url, settings.http_timeout))
    if code:
        raise typer.Exit(code=code)


if __name__ == "__main__":
    cli()

"""Command line entry points: run the service, inspect a party log."""

from __future__ import annotations

import json
import logging

import typer

from .client import WatchPartyClient
from .errors import WatchPartyError

app = typer.Typer(help="Watch party sync service tools.")


@app.callback()
def main_callback() -> None:
    """Root callback; a command is required."""


@app.command(name="serve")
def serve(  # pragma: no cover - thin uvicorn wrapper
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8010, "--port", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Run the HTTP/WebSocket service with uvicorn."""

    import uvicorn

    uvicorn.run("watchparty_sync.app:create_app", factory=True, host=host, port=port, reload=reload)


@app.command(name="logs")
def logs(
    party_id: str = typer.Argument(..., help="Party identifier."),
    base_url: str = typer.Option("http://127.0.0.1:8010", "--base-url", envvar="WATCHPARTY_URL"),
    user_id: str = typer.Option("cli", "--user-id", help="Sent as X-User-Id."),
    cursor: int = typer.Option(0, "--cursor", min=0, help="Only entries after this sequence number."),
    grouped: bool = typer.Option(False, "--grouped", help="Print grouped view instead of raw entries."),
) -> None:
    """Print a party log as JSON lines."""

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s - %(message)s")

    with WatchPartyClient(base_url, user_id) as client:
        try:
            if grouped:
                items = [group.model_dump(mode="json") for group in client.fetch_grouped(party_id)]
            else:
                items = [entry.model_dump(mode="json") for entry in client.fetch_logs(party_id, cursor=cursor)]
        except WatchPartyError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    for item in items:
        typer.echo(json.dumps(item, ensure_ascii=False))


if __name__ == "__main__":  # pragma: no cover
    app()

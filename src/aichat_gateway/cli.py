"""CLI entry point for aichat-gateway."""

import json
import logging
import os
import sys

import click
import uvicorn

from .config import get_query_budget, get_storage_path
from .errors import GatewayError
from .query import QueryEngine, Scope
from .store import SessionStore

LOG_LEVELS = ["critical", "error", "warning", "info", "debug"]


@click.group()
def main():
    """Serve and query chat session transcripts, and chat through the claude CLI."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--root", type=click.Path(file_okay=False), default=None, help="Session storage root.")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default="info", help="Logging level.")
def serve(port: int, host: str, root: str | None, log_level: str):
    """Start the HTTP API."""
    if root:
        os.environ["AICHAT_GATEWAY_ROOT"] = root
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Starting aichat-gateway on http://{host}:{port} (storage: {get_storage_path()})")
    uvicorn.run("aichat_gateway.server:app", host=host, port=port, reload=False, log_level=log_level)


@main.command()
@click.argument("expression")
@click.option("--project", "projects", multiple=True, help="Limit to a project (repeatable).")
@click.option("--session", "sessions", multiple=True, help="Limit to PROJECT/SESSION_ID (repeatable).")
@click.option("--slurp", is_flag=True, help="Run the filter once over an array of all messages.")
@click.option("--root", type=click.Path(file_okay=False), default=None, help="Session storage root.")
def query(expression: str, projects: tuple, sessions: tuple, slurp: bool, root: str | None):
    """Run a jq-style EXPRESSION over stored messages and print one JSON value per line."""
    refs = []
    for ref in sessions:
        project, sep, session_id = ref.partition("/")
        if not sep or not session_id:
            raise click.BadParameter(f"expected PROJECT/SESSION_ID, got {ref!r}", param_hint="--session")
        refs.append((project, session_id))

    store = SessionStore(root or get_storage_path())
    engine = QueryEngine(store, get_query_budget())
    try:
        result = engine.execute(expression, Scope(tuple(projects), tuple(refs)), slurp=slurp)
    except GatewayError as e:
        click.echo(f"{e.code}: {e.message}", err=True)
        sys.exit(1)

    for value in result.results:
        click.echo(json.dumps(value, ensure_ascii=False))

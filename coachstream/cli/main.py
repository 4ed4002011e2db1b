"""
coachstream CLI entry point

Interactive coaching chat against a streaming inference endpoint, plus
management of the locally stored conversations.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer

# Load project environment variables before configuration is resolved
from coachstream.core.env_loader import load_project_env

load_project_env()

from coachstream.cli.commands import chat
from coachstream.cli.commands.conversations import conversations_app
from coachstream.core.config import get_config


def config_callback(
    ctx: typer.Context,
    endpoint_url: Optional[str] = typer.Option(
        None,
        "--endpoint",
        help="Inference endpoint URL. Overrides COACH_ENDPOINT_URL env var.",
    ),
    api_token: Optional[str] = typer.Option(
        None,
        "--token",
        help="Bearer token for the endpoint. Overrides COACH_API_TOKEN env var.",
    ),
    user_id: Optional[str] = typer.Option(
        None,
        "--user",
        help="Owner of the stored conversations. Overrides COACH_USER_ID env var.",
    ),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        help="SQLite database path. Overrides COACH_CHAT_DB_PATH env var.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Connect timeout in seconds. Overrides COACH_TIMEOUT env var.",
    ),
    idle_timeout: Optional[float] = typer.Option(
        None,
        "--idle-timeout",
        help="Abort a stream after this many silent seconds. Overrides COACH_STREAM_IDLE_TIMEOUT.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Global options callback. Sets configuration for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = get_config(
        endpoint_url=endpoint_url,
        api_token=api_token,
        user_id=user_id,
        db_path=db_path,
        timeout=timeout,
        idle_timeout=idle_timeout,
    )


app = typer.Typer(
    name="coachstream",
    help="coachstream: streaming AI coaching chat",
    no_args_is_help=True,
    callback=config_callback,
)

app.command()(chat.chat)
app.add_typer(conversations_app, name="conversations")


def main() -> None:
    """Main entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        print("\n[ABORTED] Aborted by user.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    main()

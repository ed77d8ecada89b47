"""CLI tool for creating an authorized Telegram session."""

import asyncio
import logging
from pathlib import Path

import click
from telethon import TelegramClient

from .config import load_credentials_from_env


logging.basicConfig(
    level=logging.ERROR,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def authorize(session_path: Path, api_id: int, api_hash: str) -> str:
    """
    Run Telethon's interactive phone / code / 2FA flow for ``session_path``.

    Returns the display name of the logged-in account.
    """
    client = TelegramClient(str(session_path), api_id, api_hash)
    try:
        await client.start(
            phone=lambda: click.prompt("Enter your phone number"),
            code_callback=lambda: click.prompt("Enter the code you received"),
            password=lambda: click.prompt(
                "Two-factor authentication enabled. Enter your password",
                hide_input=True,
            ),
        )
        me = await client.get_me()
        return " ".join(p for p in (me.first_name, me.last_name) if p) or str(me.id)
    finally:
        await client.disconnect()


@click.command()
@click.option(
    "--username",
    required=True,
    help="Name of the session; send it as X-Telegram-Username to the server",
)
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default="./data",
    help="Data directory shared with the server (default: ./data)",
)
def main(username: str, data_dir: Path):
    """Authorize a Telegram session for the threads server."""
    try:
        creds = load_credentials_from_env()
        api_id = int(creds["api_id"])
    except ValueError as e:
        raise click.ClickException(str(e))

    sessions_dir = Path(data_dir) / "sessions"
    sessions_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Using session file: {sessions_dir / username}.session")
    try:
        name = asyncio.run(authorize(sessions_dir / username, api_id, creds["api_hash"]))
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user")
        raise SystemExit(0)
    except Exception as e:
        logger.error(f"Authorization failed: {e}", exc_info=True)
        raise click.ClickException(f"Authorization failed: {e}")
    click.echo(f"✅ Logged in as {name}")

"""FastAPI server for Telegram Threads."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import click
import uvicorn
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import (
    ThreadsConfig,
    load_credentials_from_env,
    load_settings,
    resolve_settings_file,
)
from .api import threads_router, settings_router, API_PREFIX
from .api import auth_utils as api_auth
from .api import threads as api_threads


# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down server, cancelling thread loads and cleaning up Telegram clients...")
    api_threads.cancel_loaders()
    await api_auth.cleanup_clients()
    logger.info("Cleanup complete")


def create_app(config: ThreadsConfig) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Server configuration

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Telegram Threads API",
        description="Reconstructs reply threads from the recent history of your Telegram groups",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify actual origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    api_router = APIRouter(prefix=API_PREFIX)
    api_router.include_router(threads_router)
    api_router.include_router(settings_router)
    app.include_router(api_router)

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Telegram Threads API",
            "version": "1.0.0",
            "docs": "/docs",
            "endpoints": {
                "groups": f"{API_PREFIX}/groups",
                "threads": f"{API_PREFIX}/threads",
                "threads_stream": f"{API_PREFIX}/threads/stream",
                "settings": f"{API_PREFIX}/settings",
            },
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


@click.command()
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default="./data",
    help="Data directory for sessions, media, and settings (default: ./data)",
)
@click.option(
    "--host",
    type=str,
    default="0.0.0.0",
    help="Server host (default: 0.0.0.0)",
)
@click.option(
    "--port",
    type=int,
    default=8000,
    help="Server port (default: 8000)",
)
@click.option(
    "--settings",
    "settings_file",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to a settings.yaml to import into the data directory (overrides existing)",
)
def main(
    data_dir: Path,
    host: str,
    port: int,
    settings_file: Optional[Path],
):
    """Telegram Threads API Server.

    \b
    Configuration:
    - Telegram credentials: set TELEGRAM_API_ID and TELEGRAM_API_HASH
      as environment variables or in a .env file.
    - Pipeline settings (page size, budgets, reply threshold, media):
      stored in {data-dir}/settings.yaml, editable via the /settings API.
    - Use --settings to import a settings.yaml template on first run
      or to reset settings.
    """
    try:
        creds = load_credentials_from_env()
    except ValueError as e:
        raise click.ClickException(str(e))

    data_dir = Path(data_dir)
    try:
        settings_path = resolve_settings_file(data_dir, settings_file)
    except ValueError as e:
        raise click.ClickException(str(e))

    config = ThreadsConfig(
        api_id=creds["api_id"],
        api_hash=creds["api_hash"],
        data_dir=data_dir,
        host=host,
        port=port,
        settings=load_settings(settings_path),
        settings_path=settings_path,
    )

    s = config.settings
    logger.info("=" * 60)
    logger.info("Telegram Threads API Server")
    logger.info("=" * 60)
    logger.info(f"API ID: {config.api_id}")
    logger.info(f"Data directory: {config.data_dir.resolve()}")
    logger.info(f"  Media: {config.media_dir.resolve()}")
    logger.info(f"  Sessions: {config.sessions_dir.resolve()}")
    logger.info(f"Settings file: {config.settings_path}")
    logger.info(
        f"History: {s.max_history_pages} pages x {s.history_page_size}, "
        f"budget {s.history_message_budget} messages"
    )
    logger.info(f"Min reply count: {s.min_reply_count}")
    if s.max_concurrent_chats:
        logger.info(f"Concurrent chats: {s.max_concurrent_chats}")
    else:
        logger.info("Concurrent chats: unlimited")
    logger.info(f"Download media: {s.download_media}")
    logger.info(f"Server: {config.host}:{config.port}")
    logger.info("=" * 60)

    app_instance = create_app(config)

    uvicorn.run(app_instance, host=config.host, port=config.port, log_level="info")

"""Header-based auth and the per-user Telegram client pool."""

from fastapi import Header, HTTPException, Depends
from typing import Annotated
from telethon import TelegramClient
import asyncio
import logging

from ..client import TelethonFacade
from ..config import ThreadsConfig
from .deps import get_config


logger = logging.getLogger(__name__)

# One connected client per username, shared by that user's requests
_client_pool: dict[str, TelegramClient] = {}
_client_locks: dict[str, asyncio.Lock] = {}
_pool_lock: asyncio.Lock = asyncio.Lock()  # Protects _client_locks


async def get_authenticated_user(
    x_telegram_username: Annotated[str, Header()] = None,
    config: ThreadsConfig = Depends(get_config),
) -> str:
    """
    Username from the X-Telegram-Username header.

    The user counts as authenticated when ``<sessions_dir>/<username>.session``
    exists; the session itself is checked when the client connects.

    Raises:
        HTTPException: 401 if the header is missing or there is no session
    """
    if not x_telegram_username:
        raise HTTPException(
            status_code=401, detail="Missing X-Telegram-Username header"
        )

    session_file = config.sessions_dir / f"{x_telegram_username}.session"
    if not session_file.exists():
        raise HTTPException(
            status_code=401,
            detail=f"User '{x_telegram_username}' not authenticated. "
            "Run telegram-threads-login first.",
        )

    return x_telegram_username


async def _user_lock(username: str) -> asyncio.Lock:
    async with _pool_lock:
        return _client_locks.setdefault(username, asyncio.Lock())


async def _connect(username: str, config: ThreadsConfig) -> TelegramClient:
    client = TelegramClient(
        str(config.sessions_dir / username),
        config.api_id,
        config.api_hash,
        flood_sleep_threshold=120,
    )
    try:
        await client.connect()
        if not await client.is_user_authorized():
            raise HTTPException(
                status_code=401,
                detail=f"Telegram session for '{username}' is not authorized",
            )
    except Exception:
        if client.is_connected():
            await client.disconnect()
        raise
    logger.info("Connected Telegram client for '%s'", username)
    return client


async def pooled_client(username: str, config: ThreadsConfig) -> TelegramClient:
    """
    Connected, authorized client for ``username``, created on first use.

    The per-user lock only covers lookup and creation, so one user's
    requests share the client and run concurrently. A pooled client whose
    session has expired is dropped and replaced.
    """
    lock = await _user_lock(username)
    async with lock:
        client = _client_pool.get(username)
        if client is not None:
            if client.is_connected() and await client.is_user_authorized():
                return client
            logger.info("Dropping stale Telegram client for '%s'", username)
            del _client_pool[username]
            if client.is_connected():
                await client.disconnect()

        client = await _connect(username, config)
        _client_pool[username] = client
        return client


async def get_telegram_client(
    username: str = Depends(get_authenticated_user),
    config: ThreadsConfig = Depends(get_config),
) -> TelegramClient:
    return await pooled_client(username, config)


async def get_facade(
    client: TelegramClient = Depends(get_telegram_client),
    config: ThreadsConfig = Depends(get_config),
) -> TelethonFacade:
    """Per-request facade; its file-id registry lives as long as the run."""
    return TelethonFacade(client, config.media_dir)


async def cleanup_clients():
    """Disconnect every pooled client. Called on server shutdown."""
    for username, client in list(_client_pool.items()):
        if client.is_connected():
            await client.disconnect()
    _client_pool.clear()
    _client_locks.clear()

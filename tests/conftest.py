"""Shared test fixtures: app, HTTP client, temp dirs, fake facade."""

from __future__ import annotations

import pytest
import pytest_asyncio
import yaml
from httpx import AsyncClient, ASGITransport

from telegram_threads.server import create_app
from telegram_threads.config import ThreadsConfig, ThreadSettings
from telegram_threads.api.auth_utils import (
    get_authenticated_user,
    get_facade,
    get_telegram_client,
)
from telegram_threads.models import User

from .fake_facade import FakeFacade


# ---------------------------------------------------------------------------
# Temp directories
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_data_dir(tmp_path):
    """Temporary data directory with sessions and settings.yaml."""
    data = tmp_path / "data"
    data.mkdir()
    (data / "sessions").mkdir()
    # Auth checks that <username>.session exists on disk
    (data / "sessions" / "testuser.session").touch()

    settings = {
        "download_media": False,
        "min_reply_count": 1,
        "max_concurrent_chats": None,
    }
    with open(data / "settings.yaml", "w") as f:
        yaml.dump(settings, f)

    return data


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Pipeline settings that accept threads with two or more replies."""
    return ThreadSettings(min_reply_count=1)


@pytest.fixture
def threads_config(tmp_data_dir):
    """ThreadsConfig wired to temp directories, no real Telegram creds needed."""
    return ThreadsConfig(
        api_id="12345",
        api_hash="fakehash",
        data_dir=tmp_data_dir,
        settings=ThreadSettings(download_media=False, min_reply_count=1),
        settings_path=tmp_data_dir / "settings.yaml",
    )


# ---------------------------------------------------------------------------
# Fake facade
# ---------------------------------------------------------------------------


@pytest.fixture
def users():
    return [
        User(1, "Alice"),
        User(2, "Bob", active_usernames=("bob",)),
        User(3, "Carol", "King", active_usernames=("carol_k",)),
    ]


@pytest.fixture
def facade(users):
    """Empty FakeFacade that knows a few users.

    Override in individual test modules to supply chats and history.
    """
    return FakeFacade(users=users)


# ---------------------------------------------------------------------------
# FastAPI app with dependency overrides
# ---------------------------------------------------------------------------


@pytest.fixture
def app(threads_config, facade):
    """Create the real FastAPI app but swap the Telegram facade for a fake."""
    application = create_app(threads_config)

    async def override_get_client():
        return None

    async def override_get_facade():
        return facade

    async def override_get_user():
        return "testuser"

    application.dependency_overrides[get_telegram_client] = override_get_client
    application.dependency_overrides[get_facade] = override_get_facade
    application.dependency_overrides[get_authenticated_user] = override_get_user

    yield application

    application.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Async HTTP test client (hits real FastAPI routes via ASGI transport)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(app):
    """httpx AsyncClient talking to the in-process FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

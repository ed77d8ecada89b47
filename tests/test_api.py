"""Tests for the HTTP API: groups, threads, streaming and auth."""

from __future__ import annotations

import asyncio
import json

import pytest
from httpx import AsyncClient, ASGITransport

from telegram_threads.aggregator import SUPERSEDED
from telegram_threads.api import API_PREFIX
from telegram_threads.api import threads as api_threads
from telegram_threads.client import RemoteCallError
from telegram_threads.models import ChatKind
from telegram_threads.server import create_app

from .fake_facade import group, make_message, make_photo


@pytest.fixture
def facade(facade):
    facade.add_chat(group(1, "News", ChatKind.channel))
    facade.add_chat(
        group(10, "Group"),
        [
            make_message(1, chat_id=10, user_id=1, text="Root"),
            make_message(2, chat_id=10, user_id=2, text="hi @carol_k", reply_to=1),
            make_message(3, chat_id=10, user_id=3, text="yes", reply_to=1),
        ],
    )
    facade.add_chat(
        group(20, "Other"),
        [
            make_message(50, chat_id=20, user_id=1),
            make_message(51, chat_id=20, user_id=2, reply_to=50),
            make_message(52, chat_id=20, user_id=3, reply_to=51),
        ],
    )
    return facade


def parse_sse(text: str) -> list[dict]:
    """Decode the `data:` payloads of a Server-Sent Events body."""
    events = []
    for chunk in text.split("\n\n"):
        chunk = chunk.strip()
        if chunk.startswith("data: "):
            events.append(json.loads(chunk[len("data: ") :]))
    return events


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_root_and_health(client):
    root = await client.get("/")
    health = await client.get("/health")

    assert root.status_code == 200
    assert root.json()["endpoints"]["threads"] == f"{API_PREFIX}/threads"
    assert health.json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_groups(client):
    response = await client.get(f"{API_PREFIX}/groups")

    assert response.status_code == 200
    assert response.json() == [
        {"id": 10, "title": "Group", "kind": "supergroup"},
        {"id": 20, "title": "Other", "kind": "supergroup"},
    ]


@pytest.mark.asyncio
async def test_groups_rate_limited(client, facade):
    facade.chats_error = RemoteCallError("fetch_chats", "rate limited", retry_after=42)

    response = await client.get(f"{API_PREFIX}/groups")

    assert response.status_code == 429
    assert response.headers["retry-after"] == "42"


@pytest.mark.asyncio
async def test_groups_remote_failure(client, facade):
    facade.chats_error = RemoteCallError("fetch_chats", "AUTH_KEY_UNREGISTERED")

    response = await client.get(f"{API_PREFIX}/groups")

    assert response.status_code == 502
    assert "AUTH_KEY_UNREGISTERED" in response.json()["detail"]


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_threads(client):
    response = await client.get(f"{API_PREFIX}/threads")

    assert response.status_code == 200
    data = response.json()
    assert data["is_loading"] is False
    assert data["error"] is None
    assert [(t["chat_id"], t["id"]) for t in data["threads"]] == [(20, 50), (10, 1)]

    thread = data["threads"][1]
    assert thread["sender_name"] == "Alice"
    assert thread["reply_count"] == 2
    assert thread["is_complete"] is True
    assert [r["sender_name"] for r in thread["replies"]] == ["Bob", "Carol King"]
    assert thread["replies"][0]["rich_text"] == [
        {"kind": "text", "text": "hi ", "url": None},
        {"kind": "mention", "text": "Carol King", "url": None},
    ]

    nested = data["threads"][0]
    assert [r["depth"] for r in nested["replies"]] == [1, 2]


@pytest.mark.asyncio
async def test_threads_partial_failure(client, facade):
    facade.history_errors[20] = RemoteCallError("fetch_chat_history", "CHANNEL_PRIVATE")

    response = await client.get(f"{API_PREFIX}/threads")

    data = response.json()
    assert response.status_code == 200
    assert [t["chat_id"] for t in data["threads"]] == [10]
    assert data["error"] == "fetch_chat_history: CHANNEL_PRIVATE"


@pytest.mark.asyncio
async def test_threads_download_media_when_enabled(client, facade, threads_config):
    threads_config.settings.download_media = True
    facade.files[9] = "/media/9.jpg"
    facade.set_history(
        10,
        [
            make_message(1, chat_id=10, content=make_photo((9, 100))),
            make_message(2, chat_id=10, reply_to=1),
            make_message(3, chat_id=10, reply_to=1),
        ],
    )

    response = await client.get(f"{API_PREFIX}/threads")

    (thread,) = [t for t in response.json()["threads"] if t["chat_id"] == 10]
    assert thread["photo_path"] == "/media/9.jpg"
    assert thread["text"] == "Photo"


@pytest.mark.asyncio
async def test_stream_threads(client):
    response = await client.get(f"{API_PREFIX}/threads/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(response.text)
    assert events[0] == {"threads": [], "is_loading": True, "error": None}
    final = events[-1]
    assert final["is_loading"] is False
    assert [t["id"] for t in final["threads"]] == [50, 1]
    assert all(t["is_complete"] for t in final["threads"])
    assert any(
        not t["is_complete"] for event in events[1:-1] for t in event["threads"]
    )


@pytest.mark.asyncio
async def test_newer_threads_request_supersedes_older(client, facade):
    gate = asyncio.Event()
    facade.history_gates[10] = gate

    first = asyncio.create_task(client.get(f"{API_PREFIX}/threads"))
    await asyncio.sleep(0.1)
    second = asyncio.create_task(client.get(f"{API_PREFIX}/threads"))

    superseded = await first
    gate.set()
    latest = await second

    assert superseded.status_code == 409
    assert latest.status_code == 200
    assert [t["id"] for t in latest.json()["threads"]] == [50, 1]
    assert 10 in facade.cancelled
    assert api_threads._loaders == {}


@pytest.mark.asyncio
async def test_sequential_threads_requests_both_succeed(client):
    first = await client.get(f"{API_PREFIX}/threads")
    second = await client.get(f"{API_PREFIX}/threads")

    assert first.status_code == 200
    assert second.status_code == 200
    assert api_threads._loaders == {}


@pytest.mark.asyncio
async def test_stream_superseded_by_newer_request(client, facade):
    gate = asyncio.Event()
    facade.history_gates[10] = gate

    stream = asyncio.create_task(client.get(f"{API_PREFIX}/threads/stream"))
    await asyncio.sleep(0.1)
    batch = asyncio.create_task(client.get(f"{API_PREFIX}/threads"))

    stream_response = await stream
    gate.set()
    batch_response = await batch

    final = parse_sse(stream_response.text)[-1]
    assert final["is_loading"] is False
    assert final["error"] == SUPERSEDED
    assert 1 not in [t["id"] for t in final["threads"]]
    assert batch_response.status_code == 200
    assert [t["id"] for t in batch_response.json()["threads"]] == [50, 1]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_username_header(threads_config):
    app = create_app(threads_config)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        threads = await c.get(f"{API_PREFIX}/threads")
        settings = await c.get(f"{API_PREFIX}/settings")

    assert threads.status_code == 401
    assert settings.status_code == 401


@pytest.mark.asyncio
async def test_unknown_session(threads_config):
    app = create_app(threads_config)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        response = await c.get(
            f"{API_PREFIX}/settings", headers={"X-Telegram-Username": "stranger"}
        )

    assert response.status_code == 401
    assert "telegram-threads-login" in response.json()["detail"]

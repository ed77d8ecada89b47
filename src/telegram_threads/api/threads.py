"""Group and thread API endpoints."""

from dataclasses import asdict
from typing import Dict, List, Optional
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .auth_utils import get_authenticated_user, get_facade
from .deps import get_config
from ..aggregator import ThreadsLoader, ThreadsState
from ..client import RemoteCallError, TelegramFacade
from ..config import ThreadSettings, ThreadsConfig
from ..groups import fetch_group_chats
from ..models import ChatKind


router = APIRouter(tags=["threads"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class GroupInfo(BaseModel):
    id: int
    title: str
    kind: ChatKind


class ReactionResponse(BaseModel):
    label: str
    count: int


class TextSpanResponse(BaseModel):
    kind: str
    text: str
    url: Optional[str] = None


class ThreadNodeResponse(BaseModel):
    """A reply, flattened; ``depth`` 1 is a direct reply to the root."""

    id: int
    chat_id: int
    sender_name: str
    text: str
    depth: int
    date: int
    rich_text: Optional[List[TextSpanResponse]] = None
    photo_path: Optional[str] = None
    photo_file_id: Optional[int] = None
    reactions: List[ReactionResponse] = []


class ThreadResponse(BaseModel):
    id: int
    chat_id: int
    chat_title: str
    sender_name: str
    text: str
    reply_count: int
    date: int
    replies: List[ThreadNodeResponse]
    is_complete: bool
    rich_text: Optional[List[TextSpanResponse]] = None
    chat_avatar_path: Optional[str] = None
    chat_avatar_file_id: Optional[int] = None
    photo_path: Optional[str] = None
    photo_file_id: Optional[int] = None
    reactions: List[ReactionResponse] = []


class ThreadsResponse(BaseModel):
    """Merged threads; ``error`` may be set alongside partial results."""

    threads: List[ThreadResponse]
    is_loading: bool = False
    error: Optional[str] = None


def state_to_response(state: ThreadsState) -> ThreadsResponse:
    return ThreadsResponse.model_validate(asdict(state))


def _remote_error_to_http(e: RemoteCallError, where: str) -> HTTPException:
    if e.retry_after is not None:
        logger.error("Telegram rate limit in %s: retry-after %ds", where, e.retry_after)
        return HTTPException(
            status_code=429,
            detail=f"Telegram rate limit exceeded. Retry after {e.retry_after} seconds.",
            headers={"Retry-After": str(e.retry_after)},
        )
    logger.error("Telegram request failed in %s: %s", where, e)
    return HTTPException(status_code=502, detail=f"Telegram request failed: {e}")


# ---------------------------------------------------------------------------
# Per-user loads
# ---------------------------------------------------------------------------


# A user's newest thread load; starting another supersedes it
_loaders: Dict[str, ThreadsLoader] = {}


def start_loader(
    username: str, facade: TelegramFacade, settings: ThreadSettings
) -> ThreadsLoader:
    previous = _loaders.get(username)
    if previous is not None:
        logger.info("Superseding in-flight thread load for '%s'", username)
        previous.cancel()
    loader = ThreadsLoader(facade, settings)
    _loaders[username] = loader
    return loader


def release_loader(username: str, loader: ThreadsLoader) -> None:
    if _loaders.get(username) is loader:
        del _loaders[username]


def cancel_loaders() -> None:
    """Cancel every in-flight load. Called on server shutdown."""
    for loader in _loaders.values():
        loader.cancel()
    _loaders.clear()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/groups",
    response_model=List[GroupInfo],
    summary="List group chats",
    description="Basic groups and non-channel supergroups of the authenticated user.",
)
async def list_groups(
    facade: TelegramFacade = Depends(get_facade),
    config: ThreadsConfig = Depends(get_config),
) -> List[GroupInfo]:
    try:
        chats = await fetch_group_chats(facade, config.settings.chat_limit)
    except RemoteCallError as e:
        raise _remote_error_to_http(e, "list_groups")
    return [GroupInfo(id=c.id, title=c.title, kind=c.kind) for c in chats]


@router.get(
    "/threads",
    response_model=ThreadsResponse,
    summary="Reconstruct reply threads across group chats",
    description="""
    Scan the recent history of every group chat, rebuild reply threads and
    return them merged, newest first.

    Partial success is a normal outcome: chats that failed contribute
    nothing and the first failure is reported in `error`.
    Media is downloaded when `download_media` is enabled in settings.

    A newer thread request from the same user supersedes this one, which
    then fails with 409.
    """,
)
async def get_threads(
    username: str = Depends(get_authenticated_user),
    facade: TelegramFacade = Depends(get_facade),
    config: ThreadsConfig = Depends(get_config),
) -> ThreadsResponse:
    loader = start_loader(username, facade, config.settings)
    try:
        state = await loader.load()
    except asyncio.CancelledError:
        if _loaders.get(username) is loader:
            raise
        raise HTTPException(status_code=409, detail="Thread load superseded by a newer request")
    finally:
        release_loader(username, loader)
    return state_to_response(state)


@router.get(
    "/threads/stream",
    summary="Stream thread reconstruction progress",
    description="""
    Server-Sent Events: one `data:` event per merged state snapshot.

    Each accepted thread first appears as a preview (`is_complete=false`,
    a few direct replies) and is then replaced by its complete view.
    The final event has `is_loading=false`; when a newer thread request
    from the same user superseded the stream, its `error` says so.
    """,
)
async def stream_threads_endpoint(
    username: str = Depends(get_authenticated_user),
    facade: TelegramFacade = Depends(get_facade),
    config: ThreadsConfig = Depends(get_config),
):
    loader = start_loader(username, facade, config.settings)

    async def event_stream():
        try:
            async for state in loader.stream():
                yield f"data: {state_to_response(state).model_dump_json()}\n\n"
        finally:
            release_loader(username, loader)

    return StreamingResponse(event_stream(), media_type="text/event-stream")

"""Fan-out across group chats and merge into one thread list.

Each conversation runs its own :class:`ChatPipeline` task; fetches proceed
in parallel, but every change to the shared :class:`ThreadsState` goes
through :class:`ThreadsStore`, whose lock makes it the single writer.
The merged list is always ordered by root date, newest first.
"""

from __future__ import annotations

import asyncio
import bisect
import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .client import TelegramFacade
from .config import ThreadSettings
from .groups import fetch_group_chats
from .models import Chat, ThreadNode, ThreadView
from .threads import ChatPipeline


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadsState:
    threads: List[ThreadView] = field(default_factory=list)
    is_loading: bool = False
    error: Optional[str] = None


def error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


def merge_threads(existing: List[ThreadView], incoming: List[ThreadView]) -> List[ThreadView]:
    """Concatenate, keep the first view per (chat, root), newest first."""
    seen = set()
    merged = []
    for view in list(existing) + list(incoming):
        if view.key in seen:
            continue
        seen.add(view.key)
        merged.append(view)
    merged.sort(key=lambda v: v.date, reverse=True)
    return merged


def upsert_thread(existing: List[ThreadView], view: ThreadView) -> List[ThreadView]:
    """Replace any view with the same (chat, root) and keep newest-first order."""
    threads = [t for t in existing if t.key != view.key]
    # ascending keys for bisect; equal dates keep earlier arrivals first
    keys = [-t.date for t in threads]
    threads.insert(bisect.bisect_right(keys, -view.date), view)
    return threads


def _patch_replies(replies: List[ThreadNode], message_id: int, path: str) -> List[ThreadNode]:
    return [
        replace(r, photo_path=path) if r.id == message_id and r.photo_path is None else r
        for r in replies
    ]


def patch_media_path(
    threads: List[ThreadView],
    chat_id: int,
    message_id: Optional[int],
    path: str,
) -> List[ThreadView]:
    """
    Fill a downloaded path into matching nodes that still lack one.

    ``message_id=None`` targets the chat avatar of every thread in the chat.
    """
    patched = []
    for thread in threads:
        current = thread
        if thread.chat_id == chat_id:
            if message_id is None:
                if thread.chat_avatar_path is None:
                    current = replace(current, chat_avatar_path=path)
            else:
                if thread.id == message_id and thread.photo_path is None:
                    current = replace(current, photo_path=path)
                replies = _patch_replies(current.replies, message_id, path)
                if replies != current.replies:
                    current = replace(current, replies=replies)
        patched.append(current)
    return patched


# ---------------------------------------------------------------------------
# Shared view-state
# ---------------------------------------------------------------------------


class ThreadsStore:
    """Owner of the merged view-state. All writes are serialized."""

    def __init__(self):
        self.state = ThreadsState()
        self._lock = asyncio.Lock()

    async def start(self) -> ThreadsState:
        async with self._lock:
            self.state = ThreadsState(threads=[], is_loading=True, error=None)
            return self.state

    async def merge(self, views: List[ThreadView]) -> ThreadsState:
        async with self._lock:
            self.state = replace(self.state, threads=merge_threads(self.state.threads, views))
            return self.state

    async def upsert(self, view: ThreadView) -> ThreadsState:
        async with self._lock:
            self.state = replace(self.state, threads=upsert_thread(self.state.threads, view))
            return self.state

    async def patch_media(
        self, chat_id: int, message_id: Optional[int], path: str
    ) -> ThreadsState:
        async with self._lock:
            threads = patch_media_path(self.state.threads, chat_id, message_id, path)
            self.state = replace(self.state, threads=threads)
            return self.state

    async def finish(self, error: Optional[str] = None) -> ThreadsState:
        async with self._lock:
            self.state = replace(self.state, is_loading=False, error=error)
            return self.state


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


def _chat_limiter(settings: ThreadSettings):
    if settings.max_concurrent_chats:
        return asyncio.Semaphore(settings.max_concurrent_chats)
    return None


async def _cancel_all(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_all(
    facade: TelegramFacade,
    chats: List[Chat],
    store: ThreadsStore,
    settings: Optional[ThreadSettings] = None,
) -> Tuple[List[ThreadView], Optional[str]]:
    """
    Build threads for every chat concurrently, merging as each finishes.

    A failing chat contributes nothing and never stops its siblings; the
    first failure by completion order is returned with the partial list.
    """
    settings = settings or ThreadSettings()
    limiter = _chat_limiter(settings)

    async def run_chat(chat: Chat) -> List[ThreadView]:
        async with limiter or contextlib.nullcontext():
            return await ChatPipeline(facade, chat, settings).run()

    tasks = [asyncio.create_task(run_chat(chat)) for chat in chats]
    first_error: Optional[str] = None
    try:
        for finished in asyncio.as_completed(tasks):
            try:
                views = await finished
            except Exception as e:
                logger.error("Failed to load a chat's threads: %s", e, exc_info=True)
                if first_error is None:
                    first_error = error_message(e)
                continue
            if views:
                await store.merge(views)
    finally:
        await _cancel_all(tasks)

    return store.state.threads, first_error


async def load_threads(
    facade: TelegramFacade,
    settings: Optional[ThreadSettings] = None,
    store: Optional[ThreadsStore] = None,
) -> ThreadsState:
    """One batch pipeline run: discover groups, build, merge."""
    settings = settings or ThreadSettings()
    store = store or ThreadsStore()
    await store.start()
    logger.info("Starting to load threads")

    try:
        chats = await fetch_group_chats(facade, settings.chat_limit)
    except Exception as e:
        logger.error("Failed to load threads: %s", e, exc_info=True)
        return await store.finish(error_message(e) or "Unable to load threads")

    _, first_error = await run_all(facade, chats, store, settings)
    return await store.finish(first_error)


_DONE = object()


async def stream_all(
    facade: TelegramFacade,
    settings: Optional[ThreadSettings] = None,
    store: Optional[ThreadsStore] = None,
) -> AsyncIterator[ThreadsState]:
    """
    Streaming pipeline run: yields a state snapshot after every upsert.

    Previews appear first and are replaced in place by their complete
    views; the last snapshot has ``is_loading=False``.
    """
    settings = settings or ThreadSettings()
    store = store or ThreadsStore()
    yield await store.start()

    try:
        chats = await fetch_group_chats(facade, settings.chat_limit)
    except Exception as e:
        logger.error("Failed to load threads: %s", e, exc_info=True)
        yield await store.finish(error_message(e))
        return

    limiter = _chat_limiter(settings)
    queue: asyncio.Queue = asyncio.Queue()
    errors: List[str] = []

    async def run_chat(chat: Chat) -> None:
        try:
            async with limiter or contextlib.nullcontext():
                async for view in ChatPipeline(facade, chat, settings).stream():
                    await queue.put(await store.upsert(view))
        except Exception as e:
            logger.error("Failed to load threads for '%s': %s", chat.title, e, exc_info=True)
            errors.append(error_message(e))
        finally:
            await queue.put(_DONE)

    tasks = [asyncio.create_task(run_chat(chat)) for chat in chats]
    try:
        remaining = len(tasks)
        while remaining:
            item = await queue.get()
            if item is _DONE:
                remaining -= 1
                continue
            yield item
    finally:
        await _cancel_all(tasks)

    yield await store.finish(errors[0] if errors else None)


# ---------------------------------------------------------------------------
# Media fan-out
# ---------------------------------------------------------------------------


MediaTarget = Tuple[int, Optional[int]]  # (chat id, message id or None for avatar)


def collect_media_targets(threads: List[ThreadView]) -> Dict[int, List[MediaTarget]]:
    """Missing media across the merged list, grouped by file id."""
    targets: Dict[int, List[MediaTarget]] = {}

    def add(file_id: Optional[int], target: MediaTarget) -> None:
        if file_id is None:
            return
        bucket = targets.setdefault(file_id, [])
        if target not in bucket:
            bucket.append(target)

    for thread in threads:
        if thread.chat_avatar_path is None:
            add(thread.chat_avatar_file_id, (thread.chat_id, None))
        if thread.photo_path is None:
            add(thread.photo_file_id, (thread.chat_id, thread.id))
        for reply in thread.replies:
            if reply.photo_path is None:
                add(reply.photo_file_id, (reply.chat_id, reply.id))
    return targets


async def enrich_media(
    facade: TelegramFacade,
    store: ThreadsStore,
    settings: Optional[ThreadSettings] = None,
) -> ThreadsState:
    """Download each missing file once and patch every node that shows it."""
    settings = settings or ThreadSettings()
    targets = collect_media_targets(store.state.threads)
    if not targets:
        return store.state

    async def fetch(file_id: int, file_targets: List[MediaTarget]) -> None:
        try:
            downloaded = await facade.download_file(
                file_id, priority=settings.download_priority, offset=0, limit=0, synchronous=True
            )
        except Exception as e:
            logger.error("Failed to download media %s: %s", file_id, e)
            return
        path = downloaded.completed_path
        if path is None:
            return
        for chat_id, message_id in file_targets:
            await store.patch_media(chat_id, message_id, path)

    tasks = [asyncio.create_task(fetch(fid, ts)) for fid, ts in targets.items()]
    try:
        await asyncio.gather(*tasks)
    finally:
        await _cancel_all(tasks)
    return store.state


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


SUPERSEDED = "Superseded by a newer load"


class ThreadsLoader:
    """
    Owns at most one in-flight pipeline run.

    Starting a new load cancels the previous one; its per-chat tasks and
    downloads are abandoned rather than awaited.
    """

    def __init__(self, facade: TelegramFacade, settings: Optional[ThreadSettings] = None):
        self.facade = facade
        self.settings = settings or ThreadSettings()
        self.store = ThreadsStore()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ThreadsState:
        return self.store.state

    async def _run(self) -> ThreadsState:
        state = await load_threads(self.facade, self.settings, self.store)
        if self.settings.download_media:
            state = await enrich_media(self.facade, self.store, self.settings)
        return state

    def load(self) -> asyncio.Task:
        self.cancel()
        self._task = asyncio.create_task(self._run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            logger.info("Cancelling in-flight thread load")
            self._task.cancel()

    async def stream(self) -> AsyncIterator[ThreadsState]:
        """
        Streaming run owned by this loader.

        If the run is cancelled through :meth:`cancel` the stream ends with
        a final snapshot whose error is :data:`SUPERSEDED`.
        """
        self.cancel()
        queue: asyncio.Queue = asyncio.Queue()

        async def pump() -> None:
            try:
                async for state in stream_all(self.facade, self.settings, self.store):
                    queue.put_nowait(state)
            finally:
                queue.put_nowait(_DONE)

        task = self._task = asyncio.create_task(pump())
        try:
            while (item := await queue.get()) is not _DONE:
                yield item
            await asyncio.wait([task])
            if task.cancelled():
                yield await self.store.finish(SUPERSEDED)
            elif task.exception() is not None:
                raise task.exception()
        finally:
            self.cancel()

"""Thread reconstruction and assembly for a single conversation.

A conversation's scanned history is turned into a parent → children map.
Roots are messages that have replies but are not themselves replies to
anything in the window; each accepted root becomes a :class:`ThreadView`
whose replies are flattened depth-first, siblings in chronological order.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from .client import TelegramFacade
from .config import ThreadSettings
from .enrichment import EnrichmentCache, photo_file
from .history import ScanResult, scan_history
from .models import (
    Chat,
    CustomEmojiReaction,
    EmojiReaction,
    Message,
    Reaction,
    ReactionKind,
    ThreadNode,
    ThreadView,
)
from .text import enrich_message_text, message_text


logger = logging.getLogger(__name__)

RepliesByParent = Dict[int, List[Message]]


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


def find_thread_roots(scan: ScanResult) -> List[Message]:
    """
    Root candidates, oldest first.

    A root has at least one reply and is not itself a reply to a message in
    ``replies_by_parent``. Parents that were never fetched are not roots, so
    their replies drop out of this run.
    """
    replied_ids = {m.id for replies in scan.replies_by_parent.values() for m in replies}
    roots = [
        scan.messages_by_id[parent_id]
        for parent_id in scan.replies_by_parent
        if parent_id not in replied_ids and parent_id in scan.messages_by_id
    ]
    roots.sort(key=lambda m: (m.date, m.id))
    return roots


def count_replies(
    parent_id: int,
    replies_by_parent: RepliesByParent,
    max_depth: int = 64,
    depth: int = 1,
) -> int:
    """Descendants of ``parent_id`` down to ``max_depth`` levels."""
    if depth > max_depth:
        return 0
    return sum(
        1 + count_replies(reply.id, replies_by_parent, max_depth, depth + 1)
        for reply in replies_by_parent.get(parent_id, [])
    )


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------


def reaction_label(kind: ReactionKind) -> Optional[str]:
    if isinstance(kind, EmojiReaction):
        return kind.emoji
    if isinstance(kind, CustomEmojiReaction):
        return "Custom"
    return None


def map_reactions(message: Message) -> List[Reaction]:
    reactions = []
    for rc in message.reactions:
        label = reaction_label(rc.kind)
        if label is not None:
            reactions.append(Reaction(label=label, count=rc.total_count))
    return reactions


async def load_reaction_counts(facade: TelegramFacade, message: Message) -> List[Reaction]:
    """Reactions carried by the message, refreshed from the engine if empty."""
    reactions = map_reactions(message)
    if reactions:
        return reactions
    try:
        refreshed = await facade.fetch_message(message.chat_id, message.id)
    except Exception as e:
        logger.debug("Could not refresh reactions for %s: %s", message.id, e)
        return []
    return map_reactions(refreshed)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


class ThreadAssembler:
    """Turns roots of one conversation into thread views."""

    def __init__(
        self,
        facade: TelegramFacade,
        chat: Chat,
        replies_by_parent: RepliesByParent,
        cache: EnrichmentCache,
        settings: Optional[ThreadSettings] = None,
    ):
        self.facade = facade
        self.chat = chat
        self.replies_by_parent = replies_by_parent
        self.cache = cache
        self.settings = settings or ThreadSettings()

    def reply_count(self, root: Message) -> int:
        return count_replies(root.id, self.replies_by_parent, self.settings.max_reply_depth)

    def accepts(self, reply_count: int) -> bool:
        return reply_count > self.settings.min_reply_count

    async def collect_replies(
        self, parent_id: int, depth: int = 1, shallow: bool = False
    ) -> List[ThreadNode]:
        """
        Flatten replies under ``parent_id`` depth-first.

        Shallow mode keeps only the first ``preview_reply_limit`` direct
        replies, without recursion, media or rich text.
        """
        if depth > self.settings.max_reply_depth:
            return []

        replies = sorted(self.replies_by_parent.get(parent_id, []), key=lambda m: m.date)
        if shallow:
            replies = replies[: self.settings.preview_reply_limit]
        download = not shallow and self.settings.download_media

        nodes: List[ThreadNode] = []
        for reply in replies:
            text = message_text(reply.content)
            file = photo_file(reply)
            nodes.append(
                ThreadNode(
                    id=reply.id,
                    chat_id=reply.chat_id,
                    sender_name=await self.cache.resolve_sender_name(reply),
                    text=text,
                    depth=depth,
                    date=reply.date,
                    rich_text=None if shallow else await enrich_message_text(text, self.cache),
                    photo_path=await self.cache.resolve_photo_path(reply) if download else None,
                    photo_file_id=file.id if file else None,
                    reactions=(
                        map_reactions(reply)
                        if shallow
                        else await load_reaction_counts(self.facade, reply)
                    ),
                )
            )
            if not shallow:
                nodes.extend(await self.collect_replies(reply.id, depth + 1))
        return nodes

    async def preview(self, root: Message, reply_count: int) -> ThreadView:
        """Cheap first pass: a few direct replies, nothing downloaded."""
        file = photo_file(root)
        return ThreadView(
            id=root.id,
            chat_id=self.chat.id,
            chat_title=self.chat.title,
            sender_name=await self.cache.resolve_sender_name(root),
            text=message_text(root.content),
            reply_count=reply_count,
            date=root.date,
            replies=await self.collect_replies(root.id, shallow=True),
            is_complete=False,
            chat_avatar_file_id=self.chat.photo.id if self.chat.photo else None,
            photo_file_id=file.id if file else None,
            reactions=map_reactions(root),
        )

    async def complete(self, root: Message, reply_count: int) -> ThreadView:
        """Fully enriched pass: every reply, rich text, media, reactions."""
        text = message_text(root.content)
        file = photo_file(root)
        download = self.settings.download_media
        return ThreadView(
            id=root.id,
            chat_id=self.chat.id,
            chat_title=self.chat.title,
            sender_name=await self.cache.resolve_sender_name(root),
            text=text,
            reply_count=reply_count,
            date=root.date,
            replies=await self.collect_replies(root.id),
            is_complete=True,
            rich_text=await enrich_message_text(text, self.cache),
            chat_avatar_path=await self.cache.resolve_chat_avatar(self.chat) if download else None,
            chat_avatar_file_id=self.chat.photo.id if self.chat.photo else None,
            photo_path=await self.cache.resolve_photo_path(root) if download else None,
            photo_file_id=file.id if file else None,
            reactions=await load_reaction_counts(self.facade, root),
        )

    async def assemble(self, root: Message) -> Optional[ThreadView]:
        """Complete view of ``root``, or None when it has too few replies."""
        total = self.reply_count(root)
        if not self.accepts(total):
            logger.debug(
                "Skipped root %d in '%s' with replies=%d", root.id, self.chat.title, total
            )
            return None
        view = await self.complete(root, total)
        logger.debug(
            "Thread found in '%s': rootId=%d, replies=%d", self.chat.title, root.id, total
        )
        return view

    async def assemble_progressive(self, root: Message) -> AsyncIterator[ThreadView]:
        """Preview then complete view of ``root``; nothing when rejected."""
        total = self.reply_count(root)
        if not self.accepts(total):
            logger.debug(
                "Skipped root %d in '%s' with replies=%d", root.id, self.chat.title, total
            )
            return
        yield await self.preview(root, total)
        yield await self.complete(root, total)
        logger.debug(
            "Thread found in '%s': rootId=%d, replies=%d", self.chat.title, root.id, total
        )


# ---------------------------------------------------------------------------
# Per-conversation pipeline
# ---------------------------------------------------------------------------


class PipelineState(str, Enum):
    """Lifecycle of one conversation's pipeline; the last three are terminal."""

    pending = "pending"
    scanning = "scanning"
    reconstructing = "reconstructing"
    assembling = "assembling"
    accepted = "accepted"
    rejected = "rejected"
    failed = "failed"


class ChatPipeline:
    """
    Scan → reconstruct → assemble for one conversation.

    Owns its :class:`EnrichmentCache`, so caches never leak across runs.
    There is no retry: a failure leaves the pipeline in ``failed``.
    """

    def __init__(
        self,
        facade: TelegramFacade,
        chat: Chat,
        settings: Optional[ThreadSettings] = None,
        cache: Optional[EnrichmentCache] = None,
    ):
        self.facade = facade
        self.chat = chat
        self.settings = settings or ThreadSettings()
        self.cache = cache or EnrichmentCache(facade, self.settings.download_priority)
        self.state = PipelineState.pending
        self.error: Optional[BaseException] = None

    async def _prepare(self) -> tuple:
        logger.debug("Fetching history for chat '%s' (%d)", self.chat.title, self.chat.id)
        self.state = PipelineState.scanning
        scan = await scan_history(
            self.facade,
            self.chat,
            page_size=self.settings.history_page_size,
            max_pages=self.settings.max_history_pages,
            message_budget=self.settings.history_message_budget,
        )

        self.state = PipelineState.reconstructing
        roots = find_thread_roots(scan)
        logger.debug(
            "Collected %d messages with %d potential roots in '%s'",
            len(scan.messages_by_id),
            len(roots),
            self.chat.title,
        )

        self.state = PipelineState.assembling
        assembler = ThreadAssembler(
            self.facade, self.chat, scan.replies_by_parent, self.cache, self.settings
        )
        return scan, roots, assembler

    def _finish(self, scan: ScanResult, accepted: int) -> None:
        self.state = PipelineState.accepted if accepted else PipelineState.rejected
        logger.info(
            "Finished '%s': scanned=%d, threads=%d", self.chat.title, scan.scanned, accepted
        )

    def _fail(self, error: BaseException) -> None:
        self.state = PipelineState.failed
        self.error = error

    async def run(self) -> List[ThreadView]:
        """Batch variant: complete views of every accepted root."""
        try:
            scan, roots, assembler = await self._prepare()
            views = []
            for root in roots:
                view = await assembler.assemble(root)
                if view is not None:
                    views.append(view)
        except Exception as e:
            self._fail(e)
            raise
        self._finish(scan, len(views))
        return views

    async def stream(self) -> AsyncIterator[ThreadView]:
        """Progressive variant: preview then complete view per accepted root."""
        try:
            scan, roots, assembler = await self._prepare()
            accepted = 0
            for root in roots:
                async for view in assembler.assemble_progressive(root):
                    if view.is_complete:
                        accepted += 1
                    yield view
        except Exception as e:
            self._fail(e)
            raise
        self._finish(scan, accepted)


async def build_threads(
    facade: TelegramFacade, chat: Chat, settings: Optional[ThreadSettings] = None
) -> List[ThreadView]:
    return await ChatPipeline(facade, chat, settings).run()


async def stream_threads(
    facade: TelegramFacade, chat: Chat, settings: Optional[ThreadSettings] = None
) -> AsyncIterator[ThreadView]:
    async for view in ChatPipeline(facade, chat, settings).stream():
        yield view

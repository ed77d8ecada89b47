"""Paginated history scan of a single conversation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .client import TelegramFacade
from .models import Chat, Message


logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 100
MAX_HISTORY_PAGES = 5
HISTORY_MESSAGE_BUDGET = 100


@dataclass
class ScanResult:
    """Messages fetched for one conversation, indexed for reconstruction."""

    messages_by_id: Dict[int, Message] = field(default_factory=dict)
    replies_by_parent: Dict[int, List[Message]] = field(default_factory=dict)
    pages: int = 0
    scanned: int = 0  # raw message count across pages, duplicates included

    def add(self, message: Message) -> bool:
        """Index a message; returns False if its id was already seen."""
        if message.id in self.messages_by_id:
            return False
        self.messages_by_id[message.id] = message
        if message.reply_to_message_id is not None:
            self.replies_by_parent.setdefault(message.reply_to_message_id, []).append(
                message
            )
        return True


async def scan_history(
    facade: TelegramFacade,
    chat: Chat,
    page_size: int = HISTORY_PAGE_SIZE,
    max_pages: int = MAX_HISTORY_PAGES,
    message_budget: int = HISTORY_MESSAGE_BUDGET,
) -> ScanResult:
    """
    Walk a conversation's history backwards from the latest message.

    Stops on an empty page, after ``max_pages`` pages, or once
    ``message_budget`` messages have been returned. Overlapping pages are
    harmless: each message id is indexed once. Remote errors propagate to
    the caller, which scopes them to this conversation.
    """
    result = ScanResult()
    from_message_id = 0

    while result.pages < max_pages and result.scanned < message_budget:
        history = await facade.fetch_chat_history(
            chat.id,
            from_message_id=from_message_id,
            offset=0,
            limit=page_size,
            only_local=False,
        )
        result.scanned += len(history)
        logger.debug(
            "History page=%d for '%s' size=%d fromMessageId=%d",
            result.pages,
            chat.title,
            len(history),
            from_message_id,
        )

        if not history:
            break

        for message in history:
            result.add(message)

        from_message_id = history[-1].id
        result.pages += 1

    return result

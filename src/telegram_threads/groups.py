"""Group discovery: list conversations and keep the group-like ones."""

from __future__ import annotations

import logging
from typing import List

from .client import RemoteCallError, TelegramFacade
from .models import Chat


logger = logging.getLogger(__name__)

CHAT_LIMIT = 100


async def fetch_group_chats(facade: TelegramFacade, limit: int = CHAT_LIMIT) -> List[Chat]:
    """
    Return basic groups and non-channel supergroups, in chat-list order.

    Broadcast channels and one-to-one chats are dropped. A chat that cannot
    be fetched is skipped; failing to list chats at all propagates.
    """
    chat_ids = await facade.fetch_chats(limit)
    logger.debug("Fetched chat ids count: %d", len(chat_ids))

    groups: List[Chat] = []
    for chat_id in chat_ids:
        try:
            chat = await facade.fetch_chat(chat_id)
        except RemoteCallError as e:
            logger.warning("Skipping chat %s: %s", chat_id, e)
            continue
        if chat.is_group:
            groups.append(chat)

    logger.info("Filtered group chats count: %d of %d", len(groups), len(chat_ids))
    return groups

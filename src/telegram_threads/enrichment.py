"""Per-run enrichment cache: sender names, mention names and media paths.

One :class:`EnrichmentCache` lives for exactly one pipeline run. Entries are
filled on first access and never evicted; nothing outlives the run. Remote
failures resolve to placeholders ("Unknown", ``None``) instead of failing
the thread that asked.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .client import TelegramFacade
from .models import (
    Chat,
    ChatSender,
    MediaFile,
    Message,
    PhotoContent,
    PhotoSize,
    UserSender,
)


logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "Unknown"
DOWNLOAD_PRIORITY = 1


def largest_photo_size(content: PhotoContent) -> Optional[PhotoSize]:
    """Pick the photo variant with the largest expected size."""
    if not content.sizes:
        return None
    return max(content.sizes, key=lambda s: s.file.expected_size)


class EnrichmentCache:
    def __init__(self, facade: TelegramFacade, download_priority: int = DOWNLOAD_PRIORITY):
        self.facade = facade
        self.download_priority = download_priority
        self.user_names: Dict[int, str] = {}
        self.chat_names: Dict[int, str] = {}
        self.mention_names: Dict[str, str] = {}
        self.file_paths: Dict[int, Optional[str]] = {}

    # -- names --

    async def resolve_sender_name(self, message: Message) -> str:
        sender = message.sender
        if isinstance(sender, UserSender):
            if sender.user_id not in self.user_names:
                self.user_names[sender.user_id] = await self._user_name(sender.user_id)
            return self.user_names[sender.user_id]
        if isinstance(sender, ChatSender):
            if sender.chat_id not in self.chat_names:
                self.chat_names[sender.chat_id] = await self._chat_name(sender.chat_id)
            return self.chat_names[sender.chat_id]
        return UNKNOWN_SENDER

    async def _user_name(self, user_id: int) -> str:
        try:
            user = await self.facade.fetch_user(user_id)
        except Exception as e:
            logger.debug("Could not resolve user %s: %s", user_id, e)
            return UNKNOWN_SENDER
        return user.display_name or UNKNOWN_SENDER

    async def _chat_name(self, chat_id: int) -> str:
        try:
            chat = await self.facade.fetch_chat(chat_id)
        except Exception as e:
            logger.debug("Could not resolve chat %s: %s", chat_id, e)
            return UNKNOWN_SENDER
        return chat.title if chat.title and chat.title.strip() else UNKNOWN_SENDER

    async def resolve_mention_name(self, username: str) -> str:
        """Display name for an ``@username`` mention, or ``@username`` itself."""
        key = username.lower()
        if key not in self.mention_names:
            fallback = f"@{username}"
            try:
                user = await self.facade.fetch_user_by_username(username)
            except Exception as e:
                logger.debug("Could not resolve mention @%s: %s", username, e)
                user = None
            name = user.display_name if user else ""
            self.mention_names[key] = name or fallback
        return self.mention_names[key]

    # -- media --

    async def resolve_file_path(self, file: MediaFile) -> Optional[str]:
        """Local path for a file, downloading it at most once per run."""
        if file.id not in self.file_paths:
            self.file_paths[file.id] = await self._download(file)
        return self.file_paths[file.id]

    async def _download(self, file: MediaFile) -> Optional[str]:
        if file.completed_path:
            return file.completed_path
        try:
            downloaded = await self.facade.download_file(
                file.id,
                priority=self.download_priority,
                offset=0,
                limit=0,
                synchronous=True,
            )
        except Exception as e:
            logger.warning("Failed to download file %s: %s", file.id, e)
            return None
        return downloaded.completed_path

    async def resolve_photo_path(self, message: Message) -> Optional[str]:
        file = photo_file(message)
        if file is None:
            return None
        return await self.resolve_file_path(file)

    async def resolve_chat_avatar(self, chat: Chat) -> Optional[str]:
        if chat.photo is None:
            return None
        return await self.resolve_file_path(chat.photo)


def photo_file(message: Message) -> Optional[MediaFile]:
    """The file of a photo message's largest variant, if any."""
    if not isinstance(message.content, PhotoContent):
        return None
    size = largest_photo_size(message.content)
    return size.file if size else None

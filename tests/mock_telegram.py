"""Fake Telethon client for facade tests: no real Telegram API calls.

Entities and messages are duck-typed dataclasses; peers, media and
reactions use the real ``telethon.tl.types`` classes because the facade
dispatches on them with ``isinstance``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from telethon.tl.types import MessageReplyHeader, PeerUser


# ---------------------------------------------------------------------------
# Fake entities
# ---------------------------------------------------------------------------


@dataclass
class FakeChatPhoto:
    """Mimics telethon.tl.types.ChatPhoto."""

    photo_id: int


@dataclass
class FakeUsername:
    """Mimics telethon.tl.types.Username (collectible usernames)."""

    username: str
    active: bool = True


@dataclass
class FakeUser:
    """Mimics telethon.tl.types.User."""

    id: int
    first_name: Optional[str] = "Test"
    last_name: Optional[str] = None
    username: Optional[str] = None
    usernames: Optional[List[FakeUsername]] = None
    photo: Any = None


@dataclass
class FakeChannel:
    """Mimics telethon.tl.types.Channel (supergroup or broadcast)."""

    id: int
    title: str = "Test Channel"
    megagroup: bool = False
    broadcast: bool = False
    username: Optional[str] = None
    photo: Any = None


@dataclass
class FakeBasicChat:
    """Mimics telethon.tl.types.Chat (legacy basic group)."""

    id: int
    title: str = "Test Group"
    photo: Any = None


@dataclass
class FakeDialog:
    """Mimics telethon Dialog; only the marked id is used."""

    id: int


# ---------------------------------------------------------------------------
# Fake message
# ---------------------------------------------------------------------------


@dataclass
class FakeReactions:
    """Mimics telethon.tl.types.MessageReactions."""

    results: list


@dataclass
class FakeMessage:
    """Mimics telethon.tl.types.Message."""

    id: int
    message: str = ""
    date: datetime = field(
        default_factory=lambda: datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    )
    from_id: Any = field(default_factory=lambda: PeerUser(user_id=100))
    reply_to: Optional[MessageReplyHeader] = None
    media: Any = None
    reactions: Optional[FakeReactions] = None


# ---------------------------------------------------------------------------
# Mock Telegram Client
# ---------------------------------------------------------------------------


class MockTelegramClient:
    """
    Drop-in replacement for the TelegramClient calls TelethonFacade makes.

    ``errors`` maps a method name to an exception raised on every call.
    """

    def __init__(
        self,
        dialogs: Optional[List[FakeDialog]] = None,
        entities: Optional[List[Any]] = None,
    ):
        self.dialogs = dialogs or []
        self.entities: Dict[int, Any] = {e.id: e for e in entities or []}
        self._messages_by_chat: Dict[int, List[FakeMessage]] = {}
        self.errors: Dict[str, Exception] = {}
        self.get_messages_calls: List[dict] = []
        self.downloads: List[dict] = []

    # -- helpers for test setup --

    def set_messages(self, chat_id: int, messages: List[FakeMessage]):
        self._messages_by_chat[chat_id] = sorted(messages, key=lambda m: m.id, reverse=True)

    def _raise_for(self, method: str):
        if method in self.errors:
            raise self.errors[method]

    # -- TelegramClient API surface used by the facade --

    async def iter_dialogs(self, limit=None, **kwargs):
        self._raise_for("iter_dialogs")
        for d in self.dialogs[:limit]:
            yield d

    async def get_entity(self, entity):
        self._raise_for("get_entity")
        if isinstance(entity, PeerUser):
            entity = entity.user_id
        if isinstance(entity, str):
            for e in self.entities.values():
                if getattr(e, "username", None) == entity:
                    return e
            raise ValueError(f'No user has "{entity}" as username')
        if entity not in self.entities:
            raise ValueError(f"Could not find the input entity for {entity}")
        return self.entities[entity]

    async def get_messages(self, entity, limit=None, offset_id=0, add_offset=0, ids=None):
        self._raise_for("get_messages")
        self.get_messages_calls.append(
            {"entity": entity, "limit": limit, "offset_id": offset_id, "ids": ids}
        )
        messages = self._messages_by_chat.get(entity, [])
        if ids is not None:
            return next((m for m in messages if m.id == ids), None)
        if offset_id:
            messages = [m for m in messages if m.id < offset_id]
        return messages[add_offset : add_offset + limit if limit else None]

    async def download_media(self, media, file=None, thumb=None):
        self._raise_for("download_media")
        self.downloads.append({"media": media, "file": file, "thumb": thumb})
        Path(file).write_bytes(b"\xff\xd8fake-jpeg")
        return file

    async def download_profile_photo(self, entity, file=None, download_big=True):
        self._raise_for("download_profile_photo")
        self.downloads.append({"entity": entity, "file": file, "big": download_big})
        Path(file).write_bytes(b"\xff\xd8fake-avatar")
        return file

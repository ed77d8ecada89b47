"""Remote client facade over Telethon.

Every call is a single async request/response. Telethon objects are decoded
here, once, into :mod:`telegram_threads.models`; nothing past this module
touches ``telethon.tl.types``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from telethon import TelegramClient
from telethon.errors import FloodWaitError, RPCError
from telethon.tl.types import (
    DocumentAttributeAnimated,
    DocumentAttributeAudio,
    DocumentAttributeSticker,
    DocumentAttributeVideo,
    MessageMediaDocument,
    MessageMediaPhoto,
    PeerChannel,
    PeerChat,
    PeerUser,
    Photo,
    PhotoCachedSize,
    PhotoSize as TlPhotoSize,
    PhotoSizeProgressive,
    ReactionCustomEmoji,
    ReactionEmoji,
)
from telethon.utils import get_peer_id

from .models import (
    AnimationContent,
    AudioContent,
    Chat,
    ChatKind,
    ChatSender,
    CustomEmojiReaction,
    EmojiReaction,
    LocalFile,
    MediaFile,
    Message,
    MessageContent,
    MessageSender,
    OtherContent,
    OtherReaction,
    PhotoContent,
    PhotoSize,
    ReactionCount,
    TextContent,
    User,
    UserSender,
    VideoContent,
)


logger = logging.getLogger(__name__)


class RemoteCallError(Exception):
    """A facade call returned an error instead of a result."""

    def __init__(self, method: str, message: str, retry_after: Optional[int] = None):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message
        self.retry_after = retry_after


class TelegramFacade(Protocol):
    """Request surface the thread pipeline depends on."""

    async def fetch_chats(self, limit: int) -> List[int]: ...

    async def fetch_chat(self, chat_id: int) -> Chat: ...

    async def fetch_chat_history(
        self,
        chat_id: int,
        from_message_id: int,
        offset: int,
        limit: int,
        only_local: bool,
    ) -> List[Message]: ...

    async def fetch_user(self, user_id: int) -> User: ...

    async def fetch_user_by_username(self, username: str) -> Optional[User]: ...

    async def fetch_message(self, chat_id: int, message_id: int) -> Message: ...

    async def download_file(
        self,
        file_id: int,
        priority: int = 1,
        offset: int = 0,
        limit: int = 0,
        synchronous: bool = True,
    ) -> MediaFile: ...


@dataclass(frozen=True)
class _FileEntry:
    """What the facade needs to fetch a file id it handed out."""

    kind: str  # "photo" | "avatar"
    source: Any  # Telethon Photo or entity
    thumb: Any
    filename: str
    expected_size: int


class TelethonFacade:
    """
    :class:`TelegramFacade` backed by a connected, authorized TelegramClient.

    File ids are small integers assigned to each distinct photo size or
    avatar seen while decoding; they stay valid for the facade's lifetime.
    Files already present in ``media_dir`` count as downloaded.
    """

    def __init__(self, client: TelegramClient, media_dir: Path):
        self.client = client
        self.media_dir = Path(media_dir)
        self.media_dir.mkdir(parents=True, exist_ok=True)
        self._file_ids: Dict[Tuple, int] = {}
        self._files: Dict[int, _FileEntry] = {}

    # -- requests --

    async def _call(self, method: str, awaitable):
        try:
            return await awaitable
        except FloodWaitError as e:
            logger.warning("Telegram rate limit in %s: retry-after %ds", method, e.seconds)
            raise RemoteCallError(
                method, f"rate limited for {e.seconds}s", retry_after=e.seconds
            ) from e
        except RPCError as e:
            raise RemoteCallError(method, str(e)) from e
        except ValueError as e:
            # get_entity raises ValueError for peers it cannot resolve
            raise RemoteCallError(method, str(e)) from e

    async def _collect_dialog_ids(self, limit: int) -> List[int]:
        return [dialog.id async for dialog in self.client.iter_dialogs(limit=limit)]

    async def fetch_chats(self, limit: int) -> List[int]:
        return await self._call("fetch_chats", self._collect_dialog_ids(limit))

    async def fetch_chat(self, chat_id: int) -> Chat:
        entity = await self._call("fetch_chat", self.client.get_entity(chat_id))
        return self._decode_chat(chat_id, entity)

    async def fetch_chat_history(
        self,
        chat_id: int,
        from_message_id: int,
        offset: int,
        limit: int,
        only_local: bool,
    ) -> List[Message]:
        """Newest-first page of messages older than ``from_message_id`` (0 = latest).

        ``only_local`` is accepted for parity; Telethon keeps no local history.
        """
        raw = await self._call(
            "fetch_chat_history",
            self.client.get_messages(
                chat_id, limit=limit, offset_id=from_message_id, add_offset=offset
            ),
        )
        return [self._decode_message(chat_id, m) for m in raw or [] if m is not None]

    async def fetch_user(self, user_id: int) -> User:
        entity = await self._call("fetch_user", self.client.get_entity(PeerUser(user_id)))
        return self._decode_user(entity)

    async def fetch_user_by_username(self, username: str) -> Optional[User]:
        try:
            entity = await self._call(
                "fetch_user_by_username", self.client.get_entity(username)
            )
        except RemoteCallError as e:
            logger.debug("Username @%s not resolved: %s", username, e)
            return None
        if getattr(entity, "first_name", None) is None and getattr(entity, "title", None):
            # public chat or channel, not a person
            return None
        return self._decode_user(entity)

    async def fetch_message(self, chat_id: int, message_id: int) -> Message:
        raw = await self._call(
            "fetch_message", self.client.get_messages(chat_id, ids=message_id)
        )
        if raw is None:
            raise RemoteCallError("fetch_message", f"message {message_id} not found")
        return self._decode_message(chat_id, raw)

    async def download_file(
        self,
        file_id: int,
        priority: int = 1,
        offset: int = 0,
        limit: int = 0,
        synchronous: bool = True,
    ) -> MediaFile:
        """Download a file to ``media_dir``; Telethon always fetches the full
        range synchronously, so priority/offset/limit are advisory."""
        entry = self._files.get(file_id)
        if entry is None:
            raise RemoteCallError("download_file", f"unknown file id {file_id}")

        target = self.media_dir / entry.filename
        if target.exists():
            return MediaFile(file_id, entry.expected_size, LocalFile(str(target), True))

        logger.debug(
            "Downloading file %d (%s) priority=%d offset=%d limit=%d",
            file_id,
            entry.kind,
            priority,
            offset,
            limit,
        )
        if entry.kind == "avatar":
            result = await self._call(
                "download_file",
                self.client.download_profile_photo(
                    entry.source, file=str(target), download_big=False
                ),
            )
        else:
            result = await self._call(
                "download_file",
                self.client.download_media(entry.source, file=str(target), thumb=entry.thumb),
            )

        if result and Path(result).exists():
            return MediaFile(file_id, entry.expected_size, LocalFile(str(result), True))
        return MediaFile(file_id, entry.expected_size, LocalFile("", False))

    # -- decoding --

    def _register_file(
        self, key: Tuple, kind: str, source, thumb, filename: str, expected_size: int
    ) -> MediaFile:
        file_id = self._file_ids.get(key)
        if file_id is None:
            file_id = len(self._file_ids) + 1
            self._file_ids[key] = file_id
            self._files[file_id] = _FileEntry(kind, source, thumb, filename, expected_size)

        target = self.media_dir / filename
        local = LocalFile(str(target), True) if target.exists() else None
        return MediaFile(id=file_id, expected_size=expected_size, local=local)

    def _decode_chat(self, chat_id: int, entity) -> Chat:
        title = getattr(entity, "title", None)
        if getattr(entity, "broadcast", False):
            kind = ChatKind.channel
        elif getattr(entity, "megagroup", False):
            kind = ChatKind.supergroup
        elif title is not None:
            kind = ChatKind.basic_group
        else:
            kind = ChatKind.private
            title = self._decode_user(entity).display_name

        photo = None
        photo_id = getattr(getattr(entity, "photo", None), "photo_id", None)
        if photo_id:
            photo = self._register_file(
                ("avatar", chat_id, photo_id),
                "avatar",
                entity,
                None,
                f"avatar_{chat_id}_{photo_id}.jpg",
                0,
            )

        return Chat(id=chat_id, title=title or str(chat_id), kind=kind, photo=photo)

    def _decode_user(self, entity) -> User:
        primary = getattr(entity, "username", None)
        active = [primary] if primary else []
        for u in getattr(entity, "usernames", None) or []:
            if getattr(u, "active", False) and u.username and u.username not in active:
                active.append(u.username)
        return User(
            id=entity.id,
            first_name=getattr(entity, "first_name", None) or "",
            last_name=getattr(entity, "last_name", None) or "",
            active_usernames=tuple(active),
        )

    def _decode_sender(self, chat_id: int, peer) -> MessageSender:
        if isinstance(peer, PeerUser):
            return UserSender(peer.user_id)
        if isinstance(peer, (PeerChannel, PeerChat)):
            return ChatSender(get_peer_id(peer))
        # No from_id: the conversation posted as itself
        return ChatSender(chat_id)

    def _decode_photo_sizes(self, photo: Photo) -> Tuple[PhotoSize, ...]:
        sizes = []
        for size in getattr(photo, "sizes", None) or []:
            if isinstance(size, TlPhotoSize):
                expected = size.size
            elif isinstance(size, PhotoSizeProgressive):
                expected = max(size.sizes) if size.sizes else 0
            elif isinstance(size, PhotoCachedSize):
                expected = len(size.bytes or b"")
            else:
                # stripped / path thumbnails are not separate files
                continue
            file = self._register_file(
                ("photo", photo.id, size.type),
                "photo",
                photo,
                size,
                f"photo_{photo.id}_{size.type}.jpg",
                expected,
            )
            sizes.append(PhotoSize(size.type, size.w, size.h, file))
        return tuple(sizes)

    def _decode_content(self, message) -> MessageContent:
        media = getattr(message, "media", None)
        caption = getattr(message, "message", None) or ""
        if media is None:
            return TextContent(caption)

        if isinstance(media, MessageMediaPhoto):
            if isinstance(media.photo, Photo):
                return PhotoContent(self._decode_photo_sizes(media.photo), caption)
            return PhotoContent((), caption)

        if isinstance(media, MessageMediaDocument):
            attrs = getattr(getattr(media, "document", None), "attributes", []) or []
            if any(isinstance(a, DocumentAttributeSticker) for a in attrs):
                return OtherContent("MessageMediaSticker")
            if any(isinstance(a, DocumentAttributeAnimated) for a in attrs):
                return AnimationContent(caption)
            for attr in attrs:
                if isinstance(attr, DocumentAttributeAudio):
                    if getattr(attr, "voice", False):
                        return OtherContent("MessageMediaVoiceNote")
                    return AudioContent(caption)
            if any(isinstance(a, DocumentAttributeVideo) for a in attrs):
                return VideoContent(caption)

        return OtherContent(media.__class__.__name__)

    def _decode_reactions(self, message) -> Tuple[ReactionCount, ...]:
        results = getattr(getattr(message, "reactions", None), "results", None) or []
        decoded = []
        for rc in results:
            reaction = rc.reaction
            if isinstance(reaction, ReactionEmoji):
                kind = EmojiReaction(reaction.emoticon)
            elif isinstance(reaction, ReactionCustomEmoji):
                kind = CustomEmojiReaction(reaction.document_id)
            else:
                kind = OtherReaction(reaction.__class__.__name__)
            decoded.append(ReactionCount(kind, rc.count))
        return tuple(decoded)

    def _decode_reply_to(self, chat_id: int, header) -> Optional[int]:
        """
        Parent message id within ``chat_id``, or None.

        Quotes of another chat's message are not replies here. In forum
        topics every post carries the topic root as ``reply_to_msg_id``;
        only posts with ``reply_to_top_id`` set are explicit replies.
        """
        if header is None:
            return None
        reply_to = getattr(header, "reply_to_msg_id", None)
        if reply_to is None:
            return None
        peer = getattr(header, "reply_to_peer_id", None)
        if peer is not None and get_peer_id(peer) != chat_id:
            return None
        if getattr(header, "forum_topic", False) and getattr(header, "reply_to_top_id", None) is None:
            return None
        return reply_to

    def _decode_message(self, chat_id: int, message) -> Message:
        reply_to = self._decode_reply_to(chat_id, getattr(message, "reply_to", None))
        date = message.date
        return Message(
            id=message.id,
            chat_id=chat_id,
            sender=self._decode_sender(chat_id, getattr(message, "from_id", None)),
            date=int(date.timestamp()) if date else 0,
            content=self._decode_content(message),
            reply_to_message_id=reply_to,
            reactions=self._decode_reactions(message),
        )

"""Data models for Telegram Threads.

Remote objects are decoded once at the facade boundary into these frozen
dataclasses; sender, content and reaction kinds are closed unions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union


# ---------------------------------------------------------------------------
# Conversations and users
# ---------------------------------------------------------------------------


class ChatKind(str, Enum):
    """Kind of conversation."""

    basic_group = "basic_group"
    supergroup = "supergroup"
    channel = "channel"
    private = "private"


@dataclass(frozen=True)
class LocalFile:
    """Engine-side state of a file's local copy."""

    path: str = ""
    is_downloading_completed: bool = False


@dataclass(frozen=True)
class MediaFile:
    """A distinct binary known to the engine."""

    id: int
    expected_size: int = 0
    local: Optional[LocalFile] = None

    @property
    def completed_path(self) -> Optional[str]:
        """Local path if the download finished and the path is usable."""
        if self.local and self.local.is_downloading_completed and self.local.path.strip():
            return self.local.path
        return None


@dataclass(frozen=True)
class Chat:
    """Conversation snapshot."""

    id: int
    title: str
    kind: ChatKind
    photo: Optional[MediaFile] = None  # small avatar

    @property
    def is_group(self) -> bool:
        return self.kind in (ChatKind.basic_group, ChatKind.supergroup)


@dataclass(frozen=True)
class User:
    id: int
    first_name: str = ""
    last_name: str = ""
    active_usernames: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        """First + last name, else the first active username, else ''."""
        name = " ".join(p for p in (self.first_name, self.last_name) if p and p.strip())
        if name:
            return name
        return self.active_usernames[0] if self.active_usernames else ""


# ---------------------------------------------------------------------------
# Message sender
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserSender:
    user_id: int


@dataclass(frozen=True)
class ChatSender:
    """A conversation posting as itself (channels, anonymous admins)."""

    chat_id: int


MessageSender = Union[UserSender, ChatSender]


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhotoSize:
    type: str
    width: int
    height: int
    file: MediaFile


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class PhotoContent:
    sizes: Tuple[PhotoSize, ...] = ()
    caption: str = ""


@dataclass(frozen=True)
class VideoContent:
    caption: str = ""


@dataclass(frozen=True)
class AnimationContent:
    caption: str = ""


@dataclass(frozen=True)
class AudioContent:
    caption: str = ""


@dataclass(frozen=True)
class OtherContent:
    """Anything else; ``type_name`` is the engine's class name."""

    type_name: str


MessageContent = Union[
    TextContent, PhotoContent, VideoContent, AnimationContent, AudioContent, OtherContent
]


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmojiReaction:
    emoji: str


@dataclass(frozen=True)
class CustomEmojiReaction:
    custom_emoji_id: int


@dataclass(frozen=True)
class OtherReaction:
    type_name: str


ReactionKind = Union[EmojiReaction, CustomEmojiReaction, OtherReaction]


@dataclass(frozen=True)
class ReactionCount:
    kind: ReactionKind
    total_count: int


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """A chat message. ``id`` is monotonic within its conversation."""

    id: int
    chat_id: int
    sender: MessageSender
    date: int  # unix seconds
    content: MessageContent
    reply_to_message_id: Optional[int] = None
    reactions: Tuple[ReactionCount, ...] = ()


# ---------------------------------------------------------------------------
# Thread view models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reaction:
    """Reaction as shown to the reader."""

    label: str
    count: int


@dataclass(frozen=True)
class TextSpan:
    """Piece of enriched message text."""

    kind: str  # "text" | "mention" | "link"
    text: str
    url: Optional[str] = None


@dataclass(frozen=True)
class ThreadNode:
    """A reply inside a thread, flattened depth-first."""

    id: int
    chat_id: int
    sender_name: str
    text: str
    depth: int
    date: int
    rich_text: Optional[List[TextSpan]] = None
    photo_path: Optional[str] = None
    photo_file_id: Optional[int] = None
    reactions: List[Reaction] = field(default_factory=list)


@dataclass(frozen=True)
class ThreadView:
    """A thread root with its flattened replies."""

    id: int
    chat_id: int
    chat_title: str
    sender_name: str
    text: str
    reply_count: int
    date: int
    replies: List[ThreadNode] = field(default_factory=list)
    is_complete: bool = False
    rich_text: Optional[List[TextSpan]] = None
    chat_avatar_path: Optional[str] = None
    chat_avatar_file_id: Optional[int] = None
    photo_path: Optional[str] = None
    photo_file_id: Optional[int] = None
    reactions: List[Reaction] = field(default_factory=list)

    @property
    def key(self) -> Tuple[int, int]:
        """Identity across the merged list: (chat id, root message id)."""
        return (self.chat_id, self.id)

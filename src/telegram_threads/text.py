"""Message text extraction and mention/link enrichment."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from .enrichment import EnrichmentCache
from .models import (
    AnimationContent,
    AudioContent,
    MessageContent,
    OtherContent,
    PhotoContent,
    TextContent,
    TextSpan,
    VideoContent,
)


MENTION_RE = re.compile(r"@[A-Za-z0-9_]{3,}")
URL_RE = re.compile(r"\b(?:https?://|www\.)[^\s<>\"']+", re.IGNORECASE)
_URL_TRAILING = ".,;:!?)]}"

MEDIA_LABELS = (
    (PhotoContent, "Photo"),
    (VideoContent, "Video"),
    (AnimationContent, "Animation"),
    (AudioContent, "Audio"),
)


def message_text(content: MessageContent) -> str:
    """
    Plain text of a message.

    Text yields its literal string; captioned media yields the caption or a
    fixed label when the caption is blank; anything else yields its type name.
    """
    if isinstance(content, TextContent):
        return content.text or ""
    for content_type, label in MEDIA_LABELS:
        if isinstance(content, content_type):
            return content.caption if content.caption and content.caption.strip() else label
    if isinstance(content, OtherContent):
        return content.type_name
    return type(content).__name__


@dataclass(frozen=True)
class TextMatch:
    start: int
    end: int
    kind: str  # "mention" | "link"
    value: str  # username without "@", or the URL


def find_text_matches(text: str) -> List[TextMatch]:
    """Mentions and links in ``text``, sorted by position, without overlaps."""
    found = [
        TextMatch(m.start(), m.end(), "mention", m.group()[1:])
        for m in MENTION_RE.finditer(text)
    ]
    for m in URL_RE.finditer(text):
        url = m.group().rstrip(_URL_TRAILING)
        found.append(TextMatch(m.start(), m.start() + len(url), "link", url))

    # earliest first, longest first on ties
    found.sort(key=lambda t: (t.start, -(t.end - t.start)))
    matches: List[TextMatch] = []
    cursor = 0
    for match in found:
        if match.start >= cursor:
            matches.append(match)
            cursor = match.end
    return matches


async def enrich_message_text(text: str, cache: EnrichmentCache) -> List[TextSpan]:
    """Split text into plain, mention and link spans; mentions get display names."""
    if not text or not text.strip():
        return []

    matches = find_text_matches(text)
    if not matches:
        return [TextSpan("text", text)]

    spans: List[TextSpan] = []
    cursor = 0
    for match in matches:
        if cursor < match.start:
            spans.append(TextSpan("text", text[cursor : match.start]))
        if match.kind == "mention":
            display = await cache.resolve_mention_name(match.value)
            spans.append(TextSpan("mention", display))
        else:
            spans.append(TextSpan("link", match.value, url=match.value))
        cursor = match.end
    if cursor < len(text):
        spans.append(TextSpan("text", text[cursor:]))
    return spans

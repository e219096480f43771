"""Pure text helpers that decide what actually gets posted to a thread.

Messages flow both ways between the chat platform and the ticketing backend,
so the same text regularly comes back with extra formatting, a quoted
excerpt of the message it answers, or an ``Attachments:`` footer. These
helpers strip that noise and detect duplicates so a sync round-trip never
posts the same thing twice.

Key entrypoints:
 - ``is_duplicate_message``: exact and fuzzy duplicate detection
 - ``remove_attachment_section``: drop ``Attachments:`` footers
 - ``process_quoted_content``: turn a leading ``>`` quote into a reply reference

Examples
--------
>>> is_duplicate_message([PriorMessage(id="1", content="Hello world")], "  Hello world ")
True
>>> remove_attachment_section("Hello world\\n\\nAttachments: <https://x/y.png|y.png>")
'Hello world'
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from ticketbridge.models import PriorMessage


logger = logging.getLogger(__name__)

MIN_DUPLICATE_LENGTH = 5
MIN_FUZZY_LENGTH = 10
# shorter/longer length ratio required for a containment match to count
FUZZY_LENGTH_RATIO = 0.5

_WS = re.compile(r"\s+")
_ATTACHMENT_SECTION = re.compile(r"\n[ \t]*\nAttachments:")
_ATTACHMENT_MARKER = re.compile(r"(?:^|\n)\s*Attachments:", re.IGNORECASE)
_QUOTE_PREFIX = re.compile(r"^\s*>\s?")
_CHAT_CDN_ATTACHMENT = re.compile(
    r"Attachments: (?:<https://cdn\.discordapp\.com/attachments/\d+/\d+/[^>]+\|(?:image|video|file)_\d+>"
    r"|\[(?:image|video|file)_\d+\]\(?https://cdn\.discordapp\.com/attachments/\d+/\d+/[^\])]+\)?)",
    re.IGNORECASE,
)

_HTML_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    # Last, so "&amp;lt;" decodes to "&lt;" rather than "<"
    ("&amp;", "&"),
)

MessageLike = Union[PriorMessage, dict, str]


@dataclass
class QuotedContentResult:
    """Outcome of quote reconstruction for one inbound message."""

    content_to_send: str
    reply_reference: Optional[str] = None
    is_duplicate: bool = False
    quoted_lines: list[str] = field(default_factory=list)


def _content_of(message: MessageLike) -> str:
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return str(message.get("content") or "")
    return message.content or ""


def _id_of(message: MessageLike) -> Optional[str]:
    if isinstance(message, dict):
        value = message.get("id")
        return str(value) if value else None
    if isinstance(message, PriorMessage):
        return message.id
    return None


def _squash(text: str) -> str:
    return _WS.sub(" ", text).strip()


def is_duplicate_message(prior_messages: Iterable[MessageLike], content: Optional[str]) -> bool:
    """Return True if ``content`` already exists among ``prior_messages``.

    - Content shorter than 5 characters (after trimming) is never a duplicate.
    - An exact match after trimming both sides is a duplicate.
    - From 10 characters on, whitespace-normalized containment in either
      direction counts when the shorter text is at least half as long as the
      longer one.
    """
    if not content:
        return False
    trimmed = content.strip()
    if len(trimmed) < MIN_DUPLICATE_LENGTH:
        return False

    candidates = [_content_of(m) for m in prior_messages]
    if any(existing.strip() == trimmed for existing in candidates):
        logger.debug("Exact duplicate message detected")
        return True

    if len(trimmed) < MIN_FUZZY_LENGTH:
        return False

    new_text = _squash(trimmed)
    for existing in candidates:
        old_text = _squash(existing)
        if not old_text:
            continue
        shorter, longer = sorted((new_text, old_text), key=len)
        if shorter in longer and len(shorter) >= len(longer) * FUZZY_LENGTH_RATIO:
            logger.debug("Fuzzy duplicate message detected")
            return True
    return False


def remove_attachment_section(text: Optional[str]) -> str:
    """Cut the text at its first ``Attachments:`` section and trim the result.

    The section may use the angle-bracket (``<url|name>``), markdown
    (``[name](url)``) or free-form list form, and may repeat; everything from
    the first one on is dropped. Text without a section is returned unchanged.
    """
    if not text:
        return ""
    match = _ATTACHMENT_SECTION.search(text)
    if match is None:
        return text
    return text[:match.start()].strip()


def contains_attachment_marker(text: Optional[str]) -> bool:
    return bool(text) and bool(_ATTACHMENT_MARKER.search(text))


def contains_chat_attachments(text: Optional[str]) -> bool:
    """True when the text carries chat-platform CDN attachment links.

    Such messages originated from the chat side and were echoed back by the
    ticketing backend; posting them again would loop.
    """
    if not text:
        return False
    if _CHAT_CDN_ATTACHMENT.search(text):
        return True
    return (
        "Attachments:" in text
        and "cdn.discordapp.com/attachments/" in text
        and any(marker in text for marker in ("|image_", "|file_", "|video_"))
    )


def decode_html_entities(text: Optional[str]) -> str:
    """Decode the handful of entities the ticketing backend escapes in markdown.

    >>> decode_html_entities("Hello &amp; welcome! &lt;Click here&gt;")
    'Hello & welcome! <Click here>'
    """
    if not text:
        return ""
    for entity, char in _HTML_ENTITIES:
        text = text.replace(entity, char)
    return text


def process_quoted_content(text: Optional[str], prior_messages: Iterable[MessageLike]) -> QuotedContentResult:
    """Turn a leading ``>`` quote of a known message into a reply reference.

    Consecutive lines starting with ``>`` at the top of ``text`` form the
    candidate quote. When it equals (trimmed, footers ignored) a prior
    message that has an id, the result replies to that message and carries
    only the remaining text (``" "`` when nothing remains). The remainder is
    then checked against the prior messages to flag duplicate replies.

    Examples
    --------
    >>> prior = [PriorMessage(id="msg1", content="Original message content")]
    >>> r = process_quoted_content("> Original message content\\nMy reply", prior)
    >>> (r.reply_reference, r.content_to_send)
    ('msg1', 'My reply')
    """
    text = text or ""
    result = QuotedContentResult(content_to_send=text)
    prior = list(prior_messages)
    if not text or not prior:
        return result

    lines = text.split("\n")
    quoted: list[str] = []
    for line in lines:
        if not line.strip().startswith(">"):
            break
        quoted.append(line)
    if not quoted:
        return result

    result.quoted_lines = [_QUOTE_PREFIX.sub("", line).strip() for line in quoted]
    candidate = "\n".join(result.quoted_lines).strip()
    if not candidate or contains_attachment_marker(candidate):
        return result

    match = next(
        (m for m in prior if _id_of(m) and remove_attachment_section(_content_of(m)).strip() == candidate),
        None,
    )
    if match is None:
        return result

    remainder = "\n".join(lines[len(quoted):]).strip()
    result.reply_reference = _id_of(match)
    result.content_to_send = remainder or " "
    result.is_duplicate = is_duplicate_message(prior, remainder)
    return result

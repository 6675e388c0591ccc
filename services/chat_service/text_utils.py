"""Pure helpers for filenames, message content and mentions.

Nothing here touches the database, the object store or the network, so each
function can be tested on plain strings.
"""
import base64
import binascii
import logging
import re
import secrets
import time
import unicodedata
from typing import Iterable, List, Optional
from urllib.parse import quote, unquote

from config import CHAT_CONTENT_KEY
from models import MessageType

logger = logging.getLogger(__name__)

PERCENT_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")
# UTF-8 Vietnamese/Latin text that was decoded as Latin-1 on the way in
MOJIBAKE_MARKERS = re.compile("Ã|Â|Æ|Ä|Å|á»|áº")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
STORED_NAME_PREFIX = re.compile(r"^(?:\d+-)?\d+-[0-9a-f]{8}-")

ENCODED_PREFIX = "enc:"
PREVIEW_LENGTH = 100
PREVIEW_LABELS = {
    MessageType.IMAGE: "[Image]",
    MessageType.FILE: "[File]",
    MessageType.VOICE: "[Voice message]",
    MessageType.LINK: "[Link]",
}

MENTION_PATTERN = re.compile(r"@([^\s@]+)")
INLINE_MIME_PREFIXES = ("image/", "audio/", "video/", "text/")


def _repair_mojibake(text: str) -> str:
    if not MOJIBAKE_MARKERS.search(text):
        return text
    for codec in ("latin-1", "cp1252"):
        try:
            return text.encode(codec).decode("utf-8")
        except UnicodeError:
            continue
    return text


def normalize_filename(filename: Optional[str]) -> str:
    """Undo the usual ways an uploaded filename gets mangled.

    >>> normalize_filename("b%C3%A1o%20c%C3%A1o.docx")
    'báo cáo.docx'
    >>> normalize_filename("Tài liệu.pdf".encode("utf-8").decode("latin-1"))
    'Tài liệu.pdf'
    >>> normalize_filename("Café.txt")
    'Café.txt'
    """
    if not filename:
        return ""

    name = filename
    if PERCENT_ESCAPE.search(name):
        try:
            name = unquote(name, errors="strict")
        except UnicodeDecodeError:
            pass

    name = _repair_mojibake(name)
    name = unicodedata.normalize("NFC", name)
    return CONTROL_CHARS.sub("", name).strip()


def _millis() -> int:
    return int(time.time() * 1000)


def unique_object_name(prefix: str, filename: str) -> str:
    return f"{prefix}/{_millis()}-{secrets.token_hex(4)}-{filename}"


def attachment_object_name(conversation_id: int, user_id: int, filename: str) -> str:
    return f"chat/{conversation_id}/{user_id}-{_millis()}-{secrets.token_hex(4)}-{filename}"


def display_filename(object_name: str) -> str:
    base = object_name.rsplit("/", 1)[-1]
    return STORED_NAME_PREFIX.sub("", base) or base


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def encode_content(text: str, key: str = CHAT_CONTENT_KEY) -> str:
    raw = _xor(text.encode("utf-8"), key.encode("utf-8"))
    return ENCODED_PREFIX + base64.b64encode(raw).decode("ascii")


def decode_content(text: Optional[str], key: str = CHAT_CONTENT_KEY) -> Optional[str]:
    """Reverse the client-side XOR obfuscation; plain text passes through."""
    if not text or not text.startswith(ENCODED_PREFIX):
        return text
    try:
        raw = base64.b64decode(text[len(ENCODED_PREFIX):], validate=True)
        return _xor(raw, key.encode("utf-8")).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        logger.warning("Could not decode message content: %s", exc)
        return text


def message_preview(message_type: MessageType, content: Optional[str]) -> str:
    text = (decode_content(content) or "").strip()
    if not text:
        return PREVIEW_LABELS.get(message_type, "")
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


def classify_message_type(mime_type: Optional[str], has_text: bool) -> MessageType:
    if has_text:
        return MessageType.TEXT_WITH_FILE
    if (mime_type or "").startswith("image/"):
        return MessageType.IMAGE
    return MessageType.FILE


def content_disposition(filename: str, mime_type: Optional[str]) -> str:
    mime = (mime_type or "").split(";")[0].strip().lower()
    inline = mime.startswith(INLINE_MIME_PREFIXES) or mime == "application/pdf"
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "").strip() or "download"
    disposition = "inline" if inline else "attachment"
    return f"{disposition}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def fold(text: Optional[str]) -> str:
    """Lowercase, accent-free, alphanumeric-only form used for fuzzy matching."""
    if not text:
        return ""
    # đ has no combining decomposition
    text = text.replace("đ", "d").replace("Đ", "D")
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return "".join(ch for ch in stripped.casefold() if ch.isalnum())


def extract_mentions(text: Optional[str]) -> List[str]:
    tokens = []
    for match in MENTION_PATTERN.finditer(text or ""):
        token = match.group(1).rstrip(".,!?:;)")
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def match_mentions(tokens: Iterable[str], users: Iterable) -> List[int]:
    """Ids of users whose name or username fuzzily matches a mention token."""
    users = list(users)
    matched = []
    for token in tokens:
        needle = fold(token)
        if not needle:
            continue
        for user in users:
            words = (user.name or "").split()
            candidates = {fold(user.name), fold(user.username)}
            if words:
                candidates.update({fold(words[0]), fold(words[-1])})
            candidates.discard("")
            hit = needle in candidates or (len(needle) >= 3 and fold(user.name).startswith(needle))
            if hit and user.id not in matched:
                matched.append(user.id)
    return matched

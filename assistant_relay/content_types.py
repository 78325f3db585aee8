"""File-type rules shared by the upload endpoint, the relay and the client."""

from __future__ import annotations

import re
import time
from typing import Dict, Optional, Tuple

from assistant_relay.config import ALLOWED_MIME_TYPES

# (offset, signature) pairs that must all match. Text-like types carry no
# signature and are accepted on MIME type alone.
MAGIC_NUMBERS: Dict[str, Tuple[Tuple[int, bytes], ...]] = {
    "application/pdf": ((0, b"%PDF"),),
    "image/png": ((0, b"\x89PNG\r\n\x1a\n"),),
    "image/jpeg": ((0, b"\xff\xd8\xff"),),
    "image/jpg": ((0, b"\xff\xd8\xff"),),
    "image/webp": ((0, b"RIFF"), (8, b"WEBP")),
    "image/gif": ((0, b"GIF8"),),
}

SNIFF_PREFIX_BYTES = 16

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def normalize_mime(mime_type: Optional[str]) -> str:
    """Drop parameters (``; charset=...``) and lowercase."""
    return (mime_type or "").split(";", 1)[0].strip().lower()


def is_allowed_mime(mime_type: Optional[str]) -> bool:
    return normalize_mime(mime_type) in ALLOWED_MIME_TYPES


def tool_for(mime_type: str) -> str:
    return ALLOWED_MIME_TYPES[normalize_mime(mime_type)]


def sniff_matches(head: bytes, mime_type: Optional[str]) -> bool:
    """Check the leading bytes of a file against its declared type.

    Unknown types never match. Types without a signature always match.
    """
    mime = normalize_mime(mime_type)
    if mime not in ALLOWED_MIME_TYPES:
        return False
    for offset, signature in MAGIC_NUMBERS.get(mime, ()):
        if head[offset : offset + len(signature)] != signature:
            return False
    return True


def sanitize_file_name(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name or "")
    # leading dots would make hidden files
    cleaned = cleaned.lstrip(".")[:200]
    return cleaned or "file"


def object_path(user_id: str, name: str, *, timestamp_ms: Optional[int] = None) -> str:
    """Per-user object key: ``{user_id}/{timestamp}_{sanitized_name}``."""
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"{user_id}/{ts}_{sanitize_file_name(name)}"

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from assistant_relay.content_types import (
    SNIFF_PREFIX_BYTES,
    is_allowed_mime,
    normalize_mime,
    sniff_matches,
)

DEFAULT_MAX_FILES = 5
DEFAULT_MAX_BYTES = 10 * 1024 * 1024


class FileRejected(ValueError):
    def __init__(self, message: str, *, file_name: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.file_name = file_name


@dataclass
class LocalFile:
    name: str
    data: bytes
    type: str

    @property
    def size(self) -> int:
        return len(self.data)


def validate_files(
    files: Sequence[LocalFile],
    *,
    max_files: int = DEFAULT_MAX_FILES,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> None:
    """Reject a selection before anything is sent.

    Checks run in order: count, then per file type, size and signature.
    The first failure raises ``FileRejected``.
    """
    if len(files) > max_files:
        raise FileRejected(f"max {max_files} files per message")
    for item in files:
        mime = normalize_mime(item.type)
        if not is_allowed_mime(mime):
            raise FileRejected(f"file type not allowed: {item.type}", file_name=item.name)
        if item.size > max_bytes:
            raise FileRejected("file too large", file_name=item.name)
        if not sniff_matches(item.data[:SNIFF_PREFIX_BYTES], mime):
            raise FileRejected("invalid file", file_name=item.name)

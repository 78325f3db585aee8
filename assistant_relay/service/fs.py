from __future__ import annotations

import asyncio
from pathlib import Path


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    try:
        candidate = (base_resolved / rel_path).resolve()
    except ValueError as exc:
        # e.g. embedded NUL bytes
        raise PathTraversalError(f"invalid path: {exc}") from exc
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class LocalObjectStore:
    """Blob storage on the shared filesystem, keyed by ``{user_id}/...`` paths."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _owned_path(self, user_id: str, path: str) -> Path:
        user_dir = safe_join(self.root, user_id)
        # the key must live under the caller's own prefix
        if not path.startswith(f"{user_id}/"):
            raise PathTraversalError("object path outside caller prefix")
        target = safe_join(self.root, path)
        if user_dir not in target.parents:
            raise PathTraversalError("object path outside caller prefix")
        return target

    async def put(self, user_id: str, path: str, data: bytes) -> None:
        target = self._owned_path(user_id, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)

    async def get(self, user_id: str, path: str) -> bytes:
        target = self._owned_path(user_id, path)
        return await asyncio.to_thread(target.read_bytes)

    async def delete(self, user_id: str, path: str) -> None:
        target = self._owned_path(user_id, path)
        await asyncio.to_thread(target.unlink, True)

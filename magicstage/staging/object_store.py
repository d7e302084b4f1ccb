"""
Object store for room and staged images.

The orchestrator only needs get(ref) and put(data, key, content_type); the
local filesystem implementation keeps files under a root directory and
serves them under a public URL prefix.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._/-]")


class ObjectStoreError(Exception):
    """Object could not be read or written."""

    pass


class ObjectStore(Protocol):
    async def get(self, ref: str) -> bytes: ...

    async def put(self, data: bytes, key: str, content_type: str) -> str: ...


class LocalObjectStore:
    """
    Filesystem-backed object store.

    Refs are paths relative to root_path, optionally prefixed with the public
    base URL (so a URL returned by put can be fed back to get).
    """

    def __init__(self, root_path: str = "./data/uploads", public_base_url: str = "/uploads"):
        self.root_path = Path(root_path).resolve()
        self.public_base_url = public_base_url.rstrip("/")
        self.root_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, ref: str) -> Path:
        relative = ref
        if self.public_base_url and relative.startswith(self.public_base_url + "/"):
            relative = relative[len(self.public_base_url) + 1 :]
        relative = relative.lstrip("/")

        path = (self.root_path / relative).resolve()
        if not path.is_relative_to(self.root_path):
            raise ObjectStoreError(f"Object ref escapes the store root: {ref}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def get(self, ref: str) -> bytes:
        """
        Read an object.

        Raises:
            ObjectStoreError: If the ref is invalid or unreadable
        """
        path = self._resolve(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ObjectStoreError(f"Failed to read object {ref}: {e}") from e

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        """
        Write an object and return its public URL.

        Raises:
            ObjectStoreError: If the key is invalid or the write fails
        """
        safe_key = _UNSAFE_KEY_CHARS.sub("_", key).lower()
        path = self._resolve(safe_key)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise ObjectStoreError(f"Failed to write object {safe_key}: {e}") from e

        logger.debug(
            "Stored object",
            extra={"key": safe_key, "content_type": content_type, "size_bytes": len(data)},
        )
        return self.url_for(safe_key)

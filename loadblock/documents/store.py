"""
Content-addressed document storage.

Blobs are keyed by the sha256 of their bytes. ``put`` is idempotent:
storing bytes that are already present is a no-op that returns the same
hash. Store failures surface as ``StorageFailure`` so callers can retry
them separately from domain errors.
"""
import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Dict, Protocol, runtime_checkable

from loadblock.errors import NotFoundError, StorageFailure

logger = logging.getLogger(__name__)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@runtime_checkable
class DocumentStore(Protocol):
    async def put(self, data: bytes) -> str:
        ...

    async def get(self, digest: str) -> bytes:
        ...

    async def exists(self, digest: str) -> bool:
        ...


class InMemoryDocumentStore:
    """Dict-backed store for tests and single-process use."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self.put_count = 0  # physical writes, excluding dedup hits

    async def put(self, data: bytes) -> str:
        digest = content_hash(data)
        if digest not in self._blobs:
            self._blobs[digest] = bytes(data)
            self.put_count += 1
        return digest

    async def get(self, digest: str) -> bytes:
        try:
            return self._blobs[digest]
        except KeyError:
            raise NotFoundError("Document", digest)

    async def exists(self, digest: str) -> bool:
        return digest in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class FilesystemDocumentStore:
    """
    Blobs on disk in a two-level layout using the first 2 characters of the
    hash as the prefix:

        <root>/ab/ab1234...

    Writes go to a temp file and are renamed into place, so a blob is either
    fully present or absent.
    """

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def _write(self, digest: str, data: bytes) -> None:
        path = self._path(digest)
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f"{digest}.{os.getpid()}.tmp")
        temp_path.write_bytes(data)
        os.replace(temp_path, path)

    async def put(self, data: bytes) -> str:
        digest = content_hash(data)
        try:
            await asyncio.to_thread(self._write, digest, data)
        except OSError as e:
            raise StorageFailure("document store", "put", str(e))
        return digest

    async def get(self, digest: str) -> bytes:
        path = self._path(digest)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise NotFoundError("Document", digest)
        except OSError as e:
            raise StorageFailure("document store", "get", str(e))
        if content_hash(data) != digest:
            raise StorageFailure("document store", "get", f"blob {digest} is corrupt", retriable=False)
        return data

    async def exists(self, digest: str) -> bool:
        return await asyncio.to_thread(self._path(digest).exists)

"""
Directory-backed blob cache keyed by digest.

Layout under the cache root::

    blobs/sha256/<hex>   verified blob content
    tmp/                 in-progress writes, renamed into place when complete
    index.json           cache entries and source-file fingerprints
    index.lock           cross-process lock for index.json

The cache is advisory: every blob can be rebuilt from source files or
downloaded again, so eviction only affects performance.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    AsyncIterable,
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Union,
)

from cloudpack.config import FINGERPRINT_MEMO_SIZE, READ_CHUNK_SIZE
from cloudpack.core.digest import IncrementalDigest, hash_stream, parse_digest
from cloudpack.core.models import BlobDescriptor
from cloudpack.exceptions import BlobNotFoundError, IntegrityMismatchError
from cloudpack.utils.file_lock import locked_path
from cloudpack.utils.lru_cache import LRUCache

log = logging.getLogger(__name__)

BlobData = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes]]

INDEX_VERSION = 1


@dataclass
class CacheEntry:
    """Metadata for one cached blob."""

    digest: str
    path: Path
    size: int
    last_verified: float
    last_used: float


@dataclass(frozen=True)
class Fingerprint:
    """Identity of a source file version, used to skip re-hashing."""

    path: str
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, path: Path) -> "Fingerprint":
        stat = path.stat()
        return cls(
            path=str(path.resolve()), size=stat.st_size, mtime_ns=stat.st_mtime_ns
        )


def _iter_chunks(data: BlobData) -> Iterator[bytes]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        yield bytes(data)
    elif hasattr(data, "read"):
        while True:
            chunk = data.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    else:
        yield from data


class LocalCache:
    """Content-addressed blob store on the local filesystem.

    Safe for concurrent writers: content is streamed to a private temp file,
    verified, then moved onto its canonical path with ``os.replace``. A
    canonical path therefore never holds partial or unverified bytes.
    """

    def __init__(self, root: Path, max_bytes: Optional[int] = None):
        self.root = Path(root).expanduser()
        self.max_bytes = max_bytes
        self.blobs_dir = self.root / "blobs"
        self.tmp_dir = self.root / "tmp"
        self.index_file = self.root / "index.json"
        self.lock_file = self.root / "index.lock"
        self._index_lock = threading.Lock()
        self._fingerprints: LRUCache[Fingerprint, Dict[str, Any]] = LRUCache(
            FINGERPRINT_MEMO_SIZE
        )

        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

    # Lookup

    def path_for(self, digest: str) -> Path:
        """Canonical location of ``digest``; the file may not exist yet."""
        algorithm, hex_value = parse_digest(digest)
        return self.blobs_dir / algorithm / hex_value

    def has(self, digest: str) -> bool:
        return self.path_for(digest).is_file()

    def open_for_read(self, digest: str) -> BinaryIO:
        """Open a cached blob for reading.

        Raises:
            BlobNotFoundError: If the blob is not cached.
        """
        path = self.path_for(digest)
        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            raise BlobNotFoundError(digest, f"Blob not in cache: {digest}") from None
        self._touch(path)
        return handle

    def read_bytes(self, digest: str) -> bytes:
        with self.open_for_read(digest) as handle:
            return handle.read()

    # Writes

    def write(self, digest: str, data: BlobData) -> Path:
        """Store ``data`` under ``digest``.

        Idempotent: returns immediately if the digest is already cached.

        Raises:
            IntegrityMismatchError: If ``data`` does not hash to ``digest``.
        """
        target = self.path_for(digest)
        if target.is_file():
            self._touch(target)
            return target

        with self._staged(digest) as (handle, hasher):
            for chunk in _iter_chunks(data):
                hasher.update(chunk)
                handle.write(chunk)
        return target

    async def write_async(self, digest: str, chunks: AsyncIterable[bytes]) -> Path:
        """Store an async byte stream under ``digest``.

        The temp file is discarded if the stream fails, is cancelled or does
        not hash to ``digest``.
        """
        target = self.path_for(digest)
        if target.is_file():
            self._touch(target)
            return target

        async with self._staged_async(digest) as (handle, hasher):
            async for chunk in chunks:
                hasher.update(chunk)
                handle.write(chunk)
        return target

    def put_bytes(
        self,
        data: bytes,
        media_type: str,
        annotations: Optional[Dict[str, str]] = None,
    ) -> BlobDescriptor:
        """Describe and store an in-memory blob."""
        hasher = IncrementalDigest()
        hasher.update(data)
        self.write(hasher.digest, data)
        return BlobDescriptor(
            digest=hasher.digest,
            size=hasher.size,
            media_type=media_type,
            annotations=annotations or None,
        )

    def import_file(self, path: Path, media_type: str) -> BlobDescriptor:
        """Hash a source file and store it, reading it only once.

        Unchanged files (same size and mtime as last time) are not re-read.
        """
        path = Path(path)
        fingerprint = Fingerprint.of(path)

        known = self._lookup_fingerprint(fingerprint)
        if known is not None and self.has(known["digest"]):
            log.debug(f"Fingerprint hit for {path}: {known['digest']}")
            self._touch(self.path_for(known["digest"]))
            return BlobDescriptor(
                digest=known["digest"], size=known["size"], media_type=media_type
            )

        fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix="import-")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as tmp_handle, open(path, "rb") as source:
                file_digest, size = hash_stream(source, sink=tmp_handle.write)
                tmp_handle.flush()
                os.fsync(tmp_handle.fileno())

            target = self.path_for(file_digest)
            if target.is_file():
                self._touch(target)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(tmp_path, target)
                self._record_entry(file_digest, size)
                log.debug(f"Cached {path.name} as {file_digest} ({size} bytes)")
        finally:
            tmp_path.unlink(missing_ok=True)

        # Only trust the fingerprint if the file did not change while we read it
        if Fingerprint.of(path) == fingerprint:
            self._remember_fingerprint(fingerprint, file_digest, size)

        return BlobDescriptor(digest=file_digest, size=size, media_type=media_type)

    def _temp_file(self, digest: str):
        algorithm, hex_value = parse_digest(digest)
        fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix=f"{hex_value[:12]}-")
        return fd, Path(tmp_name), IncrementalDigest(algorithm)

    def _commit(self, digest: str, tmp_path: Path, hasher: IncrementalDigest) -> None:
        """Make a fully written temp file visible under ``digest``."""
        with open(tmp_path, "r+b") as handle:
            os.fsync(handle.fileno())

        if hasher.digest != digest:
            log.warning(f"Discarding {digest}: content hashes to {hasher.digest}")
            raise IntegrityMismatchError(digest, hasher.digest)

        target = self.path_for(digest)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(tmp_path, target)
        self._record_entry(digest, hasher.size)
        log.debug(f"Cached {digest} ({hasher.size} bytes)")

    @contextlib.contextmanager
    def _staged(self, digest: str):
        fd, tmp_path, hasher = self._temp_file(digest)
        try:
            with os.fdopen(fd, "wb") as handle:
                yield handle, hasher
            self._commit(digest, tmp_path, hasher)
        finally:
            tmp_path.unlink(missing_ok=True)

    @contextlib.asynccontextmanager
    async def _staged_async(self, digest: str):
        # fsync, rename and the index rewrite run off the event loop
        fd, tmp_path, hasher = self._temp_file(digest)
        try:
            with os.fdopen(fd, "wb") as handle:
                yield handle, hasher
            await asyncio.to_thread(self._commit, digest, tmp_path, hasher)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Maintenance

    def verify(self, digest: str) -> bool:
        """Re-hash a cached blob; drop it if its content no longer matches."""
        path = self.path_for(digest)
        if not path.is_file():
            return False

        with open(path, "rb") as handle:
            actual, size = hash_stream(handle)

        if actual != digest:
            log.warning(f"Cached blob {digest} is corrupt (hashes to {actual}); removing")
            self.remove(digest)
            return False

        self._record_entry(digest, size)
        return True

    def remove(self, digest: str) -> bool:
        path = self.path_for(digest)
        try:
            path.unlink()
        except FileNotFoundError:
            removed = False
        else:
            removed = True

        def drop(index: Dict[str, Any]) -> None:
            index["entries"].pop(digest, None)
            stale = [
                key
                for key, value in index["fingerprints"].items()
                if value.get("digest") == digest
            ]
            for key in stale:
                del index["fingerprints"][key]

        self._update_index(drop)
        return removed

    def entries(self) -> List[CacheEntry]:
        index = self._load_index()
        entries = []
        for path in self._iter_blob_paths():
            digest = f"{path.parent.name}:{path.name}"
            stat = path.stat()
            meta = index["entries"].get(digest, {})
            entries.append(
                CacheEntry(
                    digest=digest,
                    path=path,
                    size=stat.st_size,
                    last_verified=meta.get("last_verified", 0.0),
                    last_used=stat.st_mtime,
                )
            )
        return entries

    def total_size(self) -> int:
        return sum(path.stat().st_size for path in self._iter_blob_paths())

    def evict(
        self, max_bytes: Optional[int] = None, keep: Iterable[str] = ()
    ) -> List[str]:
        """Remove least recently used blobs until the cache fits ``max_bytes``.

        Digests in ``keep`` are never removed.

        Returns:
            Digests that were removed.
        """
        limit = self.max_bytes if max_bytes is None else max_bytes
        if limit is None:
            return []

        protected = set(keep)
        entries = sorted(self.entries(), key=lambda entry: entry.last_used)
        total = sum(entry.size for entry in entries)
        removed = []

        for entry in entries:
            if total <= limit:
                break
            if entry.digest in protected:
                continue
            self.remove(entry.digest)
            total -= entry.size
            removed.append(entry.digest)

        if removed:
            log.info(f"Evicted {len(removed)} blobs from cache ({total} bytes remain)")
        return removed

    def _iter_blob_paths(self) -> Iterator[Path]:
        for algorithm_dir in sorted(self.blobs_dir.iterdir()):
            if not algorithm_dir.is_dir():
                continue
            for path in sorted(algorithm_dir.iterdir()):
                if path.is_file():
                    yield path

    def _touch(self, path: Path) -> None:
        # mtime doubles as the LRU clock; content is never modified
        try:
            os.utime(path, None)
        except OSError:
            pass

    # Index

    def _lookup_fingerprint(
        self, fingerprint: Fingerprint
    ) -> Optional[Dict[str, Any]]:
        known = self._fingerprints.get(fingerprint)
        if known is not None:
            return known

        stored = self._load_index()["fingerprints"].get(fingerprint.path)
        if (
            stored
            and stored.get("size") == fingerprint.size
            and stored.get("mtime_ns") == fingerprint.mtime_ns
        ):
            self._fingerprints.set(fingerprint, stored)
            return stored
        return None

    def _remember_fingerprint(
        self, fingerprint: Fingerprint, digest: str, size: int
    ) -> None:
        record = {"size": size, "mtime_ns": fingerprint.mtime_ns, "digest": digest}
        self._fingerprints.set(fingerprint, record)

        def store(index: Dict[str, Any]) -> None:
            index["fingerprints"][fingerprint.path] = record

        self._update_index(store)

    def _record_entry(self, digest: str, size: int) -> None:
        def store(index: Dict[str, Any]) -> None:
            index["entries"][digest] = {"size": size, "last_verified": time.time()}

        self._update_index(store)

    def _load_index(self) -> Dict[str, Any]:
        empty = {"version": INDEX_VERSION, "entries": {}, "fingerprints": {}}
        if not self.index_file.exists():
            return empty

        try:
            with open(self.index_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.warning(f"Ignoring unreadable cache index {self.index_file}: {e}")
            return empty

        if not isinstance(data, dict) or data.get("version") != INDEX_VERSION:
            return empty
        data.setdefault("entries", {})
        data.setdefault("fingerprints", {})
        return data

    def _update_index(self, mutate: Callable[[Dict[str, Any]], None]) -> None:
        with self._index_lock, locked_path(self.lock_file):
            index = self._load_index()
            mutate(index)

            fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix="index-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(index, f, indent=2, sort_keys=True)
                os.replace(tmp_name, self.index_file)
            finally:
                Path(tmp_name).unlink(missing_ok=True)


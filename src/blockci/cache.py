# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import redis

from .errors import CacheError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# The cache is a keyed blob store shared by every job of every run.
# Keys are chosen by the pipeline author (usually a lockfile checksum).
#
#   store(key, blob)   last write wins, writes to one key are serialized
#   fetch(key)         blob or None; a miss is never an error
#
# Blobs are tar.gz archives of a directory inside the job workdir
# (see pack_path / unpack below).
# ---------------------------------------------------------------------


class KeyedLocks:
    """One lock per key, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


@dataclass(frozen=True)
class CacheEntry:
    key: str
    size: int
    stored_at: float


class CacheBackend:
    def fetch(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def entries(self) -> List[CacheEntry]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def prune(self, keep: int) -> List[str]:
        """Keep only the newest `keep` entries. Returns removed keys."""
        entries = sorted(self.entries(), key=lambda e: e.stored_at, reverse=True)
        removed = []
        for entry in entries[keep:]:
            self.delete(entry.key)
            removed.append(entry.key)
        return removed


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


class FileCacheStore(CacheBackend):
    """
    File-based cache store:
      root/
        <sha256(key)>.blob
        <sha256(key)>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks = KeyedLocks()

    def blob_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.blob"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.manifest.json"

    def fetch(self, key: str) -> Optional[bytes]:
        with self._locks(key):
            blob = self.blob_path(key)
            if not blob.exists():
                return None
            try:
                return blob.read_bytes()
            except OSError as e:
                raise CacheError(f"read failed for key={key!r}: {e}") from e

    def put(self, key: str, data: bytes) -> None:
        with self._locks(key):
            blob = self.blob_path(key)
            tmp = blob.with_suffix(f".tmp{threading.get_ident()}")
            try:
                # Write in tmp, then atomic rename
                tmp.write_bytes(data)
                tmp.replace(blob)
                manifest = {"key": key, "size": len(data), "stored_at": time.time()}
                self.manifest_path(key).write_text(json.dumps(manifest, sort_keys=True), encoding="utf-8")
            except OSError as e:
                raise CacheError(f"write failed for key={key!r}: {e}") from e
            finally:
                tmp.unlink(missing_ok=True)

    def entries(self) -> List[CacheEntry]:
        out = []
        for man in sorted(self.root.glob("*.manifest.json")):
            try:
                m = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            out.append(CacheEntry(key=m["key"], size=int(m["size"]), stored_at=float(m["stored_at"])))
        return out

    def delete(self, key: str) -> None:
        with self._locks(key):
            self.blob_path(key).unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)


class RedisCacheStore(CacheBackend):
    """Cache backed by Redis. Blob under `<prefix><key>`, metadata in a hash."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "blockci:cache:",
        client: Optional[redis.Redis] = None,
    ):
        self.url = url
        self.prefix = prefix
        self._client = client if client is not None else redis.Redis.from_url(url)
        self._locks = KeyedLocks()

    def _blob_key(self, key: str) -> str:
        return f"{self.prefix}blob:{key}"

    @property
    def _index_key(self) -> str:
        return f"{self.prefix}index"

    def fetch(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(self._blob_key(key))
        except redis.RedisError as e:
            raise CacheError(f"Redis GET failed for key={key!r}: {e}") from e

    def put(self, key: str, data: bytes) -> None:
        meta = json.dumps({"size": len(data), "stored_at": time.time()})
        with self._locks(key):
            try:
                pipe = self._client.pipeline()
                pipe.set(self._blob_key(key), data)
                pipe.hset(self._index_key, key, meta)
                pipe.execute()
            except redis.RedisError as e:
                raise CacheError(f"Redis SET failed for key={key!r}: {e}") from e

    def entries(self) -> List[CacheEntry]:
        try:
            raw = self._client.hgetall(self._index_key)
        except redis.RedisError as e:
            raise CacheError(f"Redis HGETALL failed: {e}") from e
        out = []
        for k, v in raw.items():
            key = k.decode("utf-8") if isinstance(k, bytes) else k
            meta = json.loads(v)
            out.append(CacheEntry(key=key, size=int(meta["size"]), stored_at=float(meta["stored_at"])))
        return sorted(out, key=lambda e: e.key)

    def delete(self, key: str) -> None:
        with self._locks(key):
            try:
                self._client.delete(self._blob_key(key))
                self._client.hdel(self._index_key, key)
            except redis.RedisError as e:
                raise CacheError(f"Redis DELETE failed for key={key!r}: {e}") from e


def make_cache(cache_dir: str | Path, redis_url: Optional[str] = None) -> CacheBackend:
    if redis_url:
        return RedisCacheStore(redis_url)
    return FileCacheStore(cache_dir)


# ---------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------

def _iter_files_under(root: Path) -> Iterator[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() or p.is_symlink():
            yield p


def pack_path(workdir: Path, rel: str) -> bytes:
    """tar.gz `rel` (file or directory) relative to workdir."""
    root = workdir.resolve()
    src = (root / rel).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if src.is_dir():
            for f in _iter_files_under(src):
                tar.add(str(f), arcname=f.relative_to(root).as_posix(), recursive=False)
        else:
            tar.add(str(src), arcname=src.relative_to(root).as_posix(), recursive=False)
    return buf.getvalue()


def unpack(data: bytes, workdir: Path) -> int:
    """Extract a pack_path() archive into workdir. Returns member count."""
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        members = tar.getmembers()
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(workdir), filter="data")
        else:
            tar.extractall(path=str(workdir))
    return len(members)

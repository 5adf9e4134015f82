"""
Cache stores - keyed blob persistence on local disk or in Valkey

Both stores make an entry visible only once its payload is fully written, so
an interrupted save never produces a readable partial entry.
"""
import hashlib
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote

import valkey
from valkey.exceptions import ValkeyError

from ..errors import CacheCorruptError, CacheError
from ..interfaces import ICacheStore
from ..models import CacheEntry

logger = logging.getLogger(__name__)


def _sha256(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class LocalCacheStore(ICacheStore):
    """Blob plus JSON metadata per key under a directory"""

    def __init__(self, root: str):
        self.root = Path(root)
        self.blob_dir = self.root / "blobs"
        self.meta_dir = self.root / "meta"
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self.meta_dir.mkdir(parents=True, exist_ok=True)

    def _name(self, key: str) -> str:
        return quote(key, safe='')

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def put(self, key: str, payload: bytes) -> CacheEntry:
        entry = CacheEntry(key=key, created_at=time.time(), size=len(payload), sha256=_sha256(payload))
        name = self._name(key)
        try:
            self._atomic_write(self.blob_dir / f"{name}.tar.gz", payload)
            # Metadata last: an entry without metadata does not exist
            self._atomic_write(self.meta_dir / f"{name}.json", json.dumps(entry.__dict__).encode())
        except OSError as e:
            raise CacheError(f"Failed to write cache entry {key}: {e}", component="cache")
        logger.debug(f"Stored {key} ({entry.size} bytes)")
        return entry

    def _load_entry(self, meta_path: Path) -> Optional[CacheEntry]:
        try:
            data = json.loads(meta_path.read_text())
            return CacheEntry(key=data['key'], created_at=float(data['created_at']),
                              size=int(data['size']), sha256=data['sha256'])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache metadata {meta_path.name}: {e}")
            return None

    def get(self, key: str) -> Optional[bytes]:
        name = self._name(key)
        meta_path = self.meta_dir / f"{name}.json"
        if not meta_path.exists():
            return None
        entry = self._load_entry(meta_path)
        if entry is None:
            raise CacheCorruptError(f"Cache entry {key} has unreadable metadata", component="cache")
        try:
            payload = (self.blob_dir / f"{name}.tar.gz").read_bytes()
        except OSError as e:
            raise CacheCorruptError(f"Cache entry {key} payload missing: {e}", component="cache")
        if _sha256(payload) != entry.sha256:
            raise CacheCorruptError(f"Cache entry {key} failed checksum verification", component="cache")
        return payload

    def entries(self, prefix: str = "") -> List[CacheEntry]:
        found = []
        for meta_path in self.meta_dir.glob("*.json"):
            if not unquote(meta_path.stem).startswith(prefix):
                continue
            entry = self._load_entry(meta_path)
            if entry is not None:
                found.append(entry)
        found.sort(key=lambda e: (e.created_at, e.key), reverse=True)
        return found

    def exists(self, key: str) -> bool:
        return (self.meta_dir / f"{self._name(key)}.json").exists()


@contextmanager
def valkey_client(host: str, port: int, timeout: float):
    client = None
    try:
        client = valkey.Valkey(
            host=host,
            port=port,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=False
        )
        yield client
    finally:
        if client is not None:
            try:
                client.close()
            except Exception:
                pass  # Ignore errors during cleanup


class ValkeyCacheStore(ICacheStore):
    """
    Blobs in Valkey with a sorted-set index scored by creation time.

    Layout under namespace ns:
      ns:blob:<key>  payload bytes
      ns:meta:<key>  hash of created_at, size, sha256
      ns:index       sorted set of keys
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 6379, namespace: str = "crossbroker",
                 timeout: float = 10.0, client=None):
        self.host = host
        self.port = port
        self.namespace = namespace
        self.timeout = timeout
        self._client = client

    def _blob(self, key: str) -> str:
        return f"{self.namespace}:blob:{key}"

    def _meta(self, key: str) -> str:
        return f"{self.namespace}:meta:{key}"

    @property
    def _index(self) -> str:
        return f"{self.namespace}:index"

    @contextmanager
    def _connection(self):
        try:
            if self._client is not None:
                yield self._client
            else:
                with valkey_client(self.host, self.port, self.timeout) as client:
                    yield client
        except ValkeyError as e:
            raise CacheError(f"Valkey cache store {self.host}:{self.port} unavailable: {e}", component="cache")

    def put(self, key: str, payload: bytes) -> CacheEntry:
        entry = CacheEntry(key=key, created_at=time.time(), size=len(payload), sha256=_sha256(payload))
        with self._connection() as client:
            pipe = client.pipeline(transaction=True)
            pipe.set(self._blob(key), payload)
            pipe.hset(self._meta(key), mapping={
                'created_at': repr(entry.created_at),
                'size': entry.size,
                'sha256': entry.sha256,
            })
            pipe.zadd(self._index, {key: entry.created_at})
            pipe.execute()
        logger.debug(f"Stored {key} in Valkey ({entry.size} bytes)")
        return entry

    @staticmethod
    def _text(value) -> str:
        return value.decode() if isinstance(value, bytes) else str(value)

    def _entry_from_meta(self, key: str, meta: dict) -> Optional[CacheEntry]:
        meta = {self._text(k): self._text(v) for k, v in meta.items()}
        try:
            return CacheEntry(key=key, created_at=float(meta['created_at']),
                              size=int(meta['size']), sha256=meta['sha256'])
        except (KeyError, ValueError):
            return None

    def get(self, key: str) -> Optional[bytes]:
        with self._connection() as client:
            meta = client.hgetall(self._meta(key))
            if not meta:
                return None
            payload = client.get(self._blob(key))
        entry = self._entry_from_meta(key, meta)
        if entry is None or payload is None:
            raise CacheCorruptError(f"Cache entry {key} is incomplete", component="cache")
        if _sha256(payload) != entry.sha256:
            raise CacheCorruptError(f"Cache entry {key} failed checksum verification", component="cache")
        return payload

    def entries(self, prefix: str = "") -> List[CacheEntry]:
        with self._connection() as client:
            indexed = client.zrevrange(self._index, 0, -1, withscores=True)
            keys = [self._text(key) for key, _ in indexed]
            keys = [key for key in keys if key.startswith(prefix)]
            if not keys:
                return []
            pipe = client.pipeline(transaction=False)
            for key in keys:
                pipe.hgetall(self._meta(key))
            metas = pipe.execute()

        found = []
        for key, meta in zip(keys, metas):
            entry = self._entry_from_meta(key, meta or {})
            if entry is not None:
                found.append(entry)
        found.sort(key=lambda e: (e.created_at, e.key), reverse=True)
        return found

    def exists(self, key: str) -> bool:
        with self._connection() as client:
            return bool(client.exists(self._meta(key)))


def open_store(config: dict) -> ICacheStore:
    """Build a store from the `store` section of a pipeline definition"""
    kind = config.get('type', 'local')
    if kind == 'local':
        return LocalCacheStore(config.get('path', '.crossbroker-cache'))
    if kind == 'valkey':
        return ValkeyCacheStore(
            host=config.get('host', '127.0.0.1'),
            port=int(config.get('port', 6379)),
            namespace=config.get('namespace', 'crossbroker'),
            timeout=float(config.get('timeout', 10.0)),
        )
    raise CacheError(f"Unknown cache store type '{kind}'", component="cache")

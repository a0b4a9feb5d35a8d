from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Protocol

import redis

from ..core.errors import StorageError


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class InMemoryKeyValueStore:
    """Process-local key-value medium.

    ``quota_bytes`` caps the total stored payload size the way a browser
    storage quota does; a write that would exceed it raises ``StorageError``.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: Dict[str, bytes] = {}
        self._quota = quota_bytes
        self._lock = RLock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            if self._quota is not None:
                used = sum(len(v) for k, v in self._data.items() if k != key)
                if used + len(value) > self._quota:
                    raise StorageError("Storage quota exceeded", details={"key": key, "quota": self._quota})
            self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class FileKeyValueStore:
    """JSON file-backed key-value medium for single-process persistence.

    Structure: one JSON object mapping key -> base64 payload. Unreadable files
    load as empty; failed writes raise ``StorageError`` and leave the
    in-memory copy intact.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        self._lock = RLock()
        default_path = Path.cwd() / "run" / "chatbox.json"
        self._path = Path(file_path or os.getenv("CHATBOX_KV_FILE", str(default_path)))
        self._data: Dict[str, bytes] = {}
        self._load()

    def _load(self) -> None:
        try:
            if not self._path.exists():
                return
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("kv_file_unreadable", extra={"path": str(self._path), "err": str(exc)})
            return
        if not isinstance(raw, dict):
            return
        for key, value in raw.items():
            try:
                self._data[str(key)] = base64.b64decode(value, validate=True)
            except (TypeError, ValueError):
                logger.warning("kv_file_entry_dropped", extra={"key": key})
                continue

    def _save(self) -> None:
        obj = {k: base64.b64encode(v).decode("ascii") for k, v in self._data.items()}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(obj), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise StorageError(f"Failed to write {self._path}: {exc}") from exc

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            previous = self._data.get(key)
            self._data[key] = bytes(value)
            try:
                self._save()
            except StorageError:
                if previous is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = previous
                raise

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class RedisKeyValueStore:
    def __init__(self, url: str) -> None:
        self._client = redis.Redis.from_url(url, socket_timeout=0.5)

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            logger.warning("kv_redis_read_failed", extra={"key": key, "err": str(exc)})
            return None

    def set(self, key: str, value: bytes) -> None:
        try:
            self._client.set(key, value)
        except redis.RedisError as exc:
            raise StorageError(f"Redis write failed: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise StorageError(f"Redis delete failed: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        try:
            found = self._client.scan_iter(match=f"{prefix}*")
            return sorted(k.decode("utf-8") if isinstance(k, bytes) else str(k) for k in found)
        except redis.RedisError as exc:
            logger.warning("kv_redis_scan_failed", extra={"prefix": prefix, "err": str(exc)})
            return []


_kv: KeyValueStore | None = None


def get_kv_store() -> KeyValueStore:
    global _kv
    if _kv is not None:
        return _kv
    impl = os.getenv("CHATBOX_KV_IMPL", "memory").lower()
    if impl == "file":
        _kv = FileKeyValueStore()
    elif impl == "redis":
        _kv = RedisKeyValueStore(os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    else:
        _kv = InMemoryKeyValueStore()
    return _kv

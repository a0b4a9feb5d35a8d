import pytest
import redis

from src.chatbox.core.errors import StorageError
from src.chatbox.infrastructure import kv_store


def test_inmemory_store_basic_ops():
    kv = kv_store.InMemoryKeyValueStore()
    kv.set("a:1", b"one")
    kv.set("a:2", b"two")
    kv.set("b:1", b"other")
    assert kv.get("a:1") == b"one"
    assert kv.keys("a:") == ["a:1", "a:2"]
    kv.remove("a:1")
    kv.remove("missing")
    assert kv.get("a:1") is None
    assert kv.keys() == ["a:2", "b:1"]


def test_inmemory_quota_rejects_oversized_write_and_keeps_old_value():
    kv = kv_store.InMemoryKeyValueStore(quota_bytes=10)
    kv.set("k", b"12345")
    with pytest.raises(StorageError):
        kv.set("j", b"1234567")
    assert kv.get("j") is None
    # Overwriting a key only counts its new size
    kv.set("k", b"1234567890")
    assert kv.get("k") == b"1234567890"


def test_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "kv.json"
    kv = kv_store.FileKeyValueStore(str(path))
    kv.set("chatbox:x", "héllo".encode("utf-8"))
    again = kv_store.FileKeyValueStore(str(path))
    assert again.get("chatbox:x").decode("utf-8") == "héllo"
    again.remove("chatbox:x")
    assert kv_store.FileKeyValueStore(str(path)).keys() == []


def test_file_store_tolerates_garbage_file(tmp_path):
    path = tmp_path / "kv.json"
    path.write_text("{not json", encoding="utf-8")
    kv = kv_store.FileKeyValueStore(str(path))
    assert kv.keys() == []


def test_file_store_write_failure_raises_and_rolls_back(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    kv = kv_store.FileKeyValueStore(str(blocker / "sub" / "kv.json"))
    with pytest.raises(StorageError):
        kv.set("k", b"v")
    assert kv.get("k") is None


class _BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("down")

    def set(self, key, value):
        raise redis.ConnectionError("down")

    def delete(self, key):
        raise redis.ConnectionError("down")

    def scan_iter(self, match=None):
        raise redis.ConnectionError("down")


def test_redis_store_reads_degrade_and_writes_raise(monkeypatch):
    monkeypatch.setattr(kv_store.redis.Redis, "from_url", classmethod(lambda cls, url, **kw: _BrokenRedis()))
    kv = kv_store.RedisKeyValueStore("redis://localhost:6379/0")
    assert kv.get("k") is None
    assert kv.keys("chatbox:") == []
    with pytest.raises(StorageError):
        kv.set("k", b"v")
    with pytest.raises(StorageError):
        kv.remove("k")


def test_get_kv_store_factory(monkeypatch, tmp_path):
    assert isinstance(kv_store.get_kv_store(), kv_store.InMemoryKeyValueStore)
    assert kv_store.get_kv_store() is kv_store.get_kv_store()

    monkeypatch.setattr(kv_store, "_kv", None)
    monkeypatch.setenv("CHATBOX_KV_IMPL", "file")
    monkeypatch.setenv("CHATBOX_KV_FILE", str(tmp_path / "kv.json"))
    assert isinstance(kv_store.get_kv_store(), kv_store.FileKeyValueStore)

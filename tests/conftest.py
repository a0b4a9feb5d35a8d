import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Each test gets a known API key, an in-memory store and no cached controller."""
    from src.chatbox.api.routers import chat as chat_router
    from src.chatbox.infrastructure import kv_store

    monkeypatch.setenv("DEEPSEEK_API_KEY", "test-key")
    for name in ("CHATBOX_API_KEY", "CHATBOX_API_BASE_URL", "CHATBOX_KV_IMPL", "CHATBOX_KV_FILE", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(kv_store, "_kv", None)
    monkeypatch.setattr(chat_router, "_controller", None)
    monkeypatch.setattr(chat_router, "_prompt_library", None)

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..domain.chat_models import ChatSession, ChatSettings
from .kv_store import KeyValueStore, get_kv_store


logger = logging.getLogger(__name__)

SESSION_PREFIX = "chatbox:session:"
CURRENT_SESSION_KEY = "chatbox:current-session"
SETTINGS_KEY = "chatbox:settings"
RECORD_VERSION = 1
MAX_SESSIONS = int(os.getenv("CHATBOX_MAX_SESSIONS", "50"))

_LEGACY_SESSION_FIELDS = {"createdAt": "created_at", "updatedAt": "updated_at"}
_LEGACY_SETTINGS_FIELDS = {"maxTokens": "max_tokens", "systemMessage": "system_message"}


def _session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def _from_epoch_ms(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, UTC)
    return value


def _migrate_legacy_session(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a version-0 (camelCase, epoch-millisecond) record to the current shape."""
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        out[_LEGACY_SESSION_FIELDS.get(key, key)] = value
    for key in ("created_at", "updated_at"):
        if key in out:
            out[key] = _from_epoch_ms(out[key])
    settings = out.get("settings")
    if isinstance(settings, dict):
        out["settings"] = {
            _LEGACY_SETTINGS_FIELDS.get(k, k): v for k, v in settings.items() if k != "apiKey"
        }
    messages = out.get("messages")
    if isinstance(messages, list):
        migrated = []
        for msg in messages:
            if isinstance(msg, dict):
                msg = dict(msg)
                msg["timestamp"] = _from_epoch_ms(msg.get("timestamp"))
                if msg.get("timestamp") is None:
                    msg.pop("timestamp")
            migrated.append(msg)
        out["messages"] = migrated
    return out


def decode_session(payload: Optional[bytes]) -> Optional[ChatSession]:
    """Decode one stored record, returning None for anything unusable."""
    if not payload:
        return None
    try:
        raw = json.loads(payload.decode("utf-8"))
        if not isinstance(raw, dict):
            return None
        version = raw.get("version")
        if version is None:
            raw = _migrate_legacy_session(raw)
        elif version == RECORD_VERSION and isinstance(raw.get("session"), dict):
            raw = raw["session"]
        else:
            return None
        if not isinstance(raw.get("id"), str) or not raw["id"]:
            return None
        return ChatSession.model_validate(raw)
    except (UnicodeDecodeError, ValueError, TypeError, ValidationError):
        return None


def encode_session(session: ChatSession) -> bytes:
    record = {"version": RECORD_VERSION, "session": session.model_dump(mode="json")}
    return json.dumps(record, ensure_ascii=False).encode("utf-8")


def decode_legacy_dump(payload: bytes) -> List[ChatSession]:
    """Parse a browser-era dump: one JSON array of version-0 session objects.

    Unusable entries are skipped; an unreadable payload yields an empty list.
    """
    try:
        items = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return []
    if not isinstance(items, list):
        return []
    out: List[ChatSession] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        sess = decode_session(json.dumps(item).encode("utf-8"))
        if sess is not None:
            out.append(sess)
    return out


class ChatStore:
    """Durable session records over a key-value medium.

    Reads never raise: missing or malformed records are skipped. Writes raise
    ``StorageError`` when the medium refuses them.
    """

    def __init__(self, kv: Optional[KeyValueStore] = None, max_sessions: int = MAX_SESSIONS) -> None:
        self._kv = kv if kv is not None else get_kv_store()
        self._max_sessions = max_sessions

    def list_sessions(self) -> List[ChatSession]:
        out: List[ChatSession] = []
        for key in self._kv.keys(SESSION_PREFIX):
            sess = decode_session(self._kv.get(key))
            if sess is None or _session_key(sess.id) != key:
                logger.warning("chat_store_record_dropped", extra={"key": key})
                continue
            out.append(sess)
        # Newest first
        return sorted(out, key=lambda s: s.updated_at, reverse=True)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return decode_session(self._kv.get(_session_key(session_id)))

    def save_session(self, session: ChatSession) -> None:
        self._kv.set(_session_key(session.id), encode_session(session))
        self._prune(keep=session.id)

    def delete_session(self, session_id: str) -> None:
        self._kv.remove(_session_key(session_id))

    def clear(self) -> None:
        for key in self._kv.keys(SESSION_PREFIX):
            self._kv.remove(key)
        self._kv.remove(CURRENT_SESSION_KEY)

    def get_current_session_id(self) -> Optional[str]:
        raw = self._kv.get(CURRENT_SESSION_KEY)
        if not raw:
            return None
        try:
            value = raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            return None
        return value or None

    def set_current_session_id(self, session_id: Optional[str]) -> None:
        if session_id:
            self._kv.set(CURRENT_SESSION_KEY, session_id.encode("utf-8"))
        else:
            self._kv.remove(CURRENT_SESSION_KEY)

    def load_settings(self) -> Optional[ChatSettings]:
        raw = self._kv.get(SETTINGS_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
            if data.get("version") != RECORD_VERSION:
                return None
            return ChatSettings.model_validate(data.get("settings") or {})
        except (UnicodeDecodeError, ValueError, TypeError, AttributeError, ValidationError):
            logger.warning("chat_store_settings_dropped")
            return None

    def save_settings(self, settings: ChatSettings) -> None:
        record = {"version": RECORD_VERSION, "settings": settings.model_dump(mode="json")}
        self._kv.set(SETTINGS_KEY, json.dumps(record, ensure_ascii=False).encode("utf-8"))

    def _prune(self, keep: str) -> None:
        keys = self._kv.keys(SESSION_PREFIX)
        if len(keys) <= self._max_sessions:
            return
        protected = {keep, self.get_current_session_id()}
        sessions = self.list_sessions()
        # Oldest first
        for sess in reversed(sessions):
            if len(keys) <= self._max_sessions:
                break
            if sess.id in protected:
                continue
            key = _session_key(sess.id)
            self._kv.remove(key)
            keys.remove(key)
            logger.info("chat_store_pruned", extra={"session_id": sess.id})

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.errors import SessionNotFoundError, SettingsError, StorageError
from ..core.state_machine import IDLE, next_state
from ..domain.chat_models import (
    ChatMessage,
    ChatSession,
    ChatSettings,
    generate_session_title,
)
from ..infrastructure.chat_store import ChatStore, decode_legacy_dump
from .chat_export import export_messages_to_markdown
from .model_catalog import (
    MAX_TOKENS_MAX,
    MAX_TOKENS_MIN,
    MODEL_CONFIGS,
    TEMPERATURE_MAX,
    TEMPERATURE_MIN,
    clamp_max_tokens,
    clamp_temperature,
    resolve_model,
    supports_reasoning,
)
from .streaming import CancellationToken, ChatStreamConsumer, StreamHandlers


logger = logging.getLogger(__name__)

_SETTINGS_FIELDS = ("model", "temperature", "max_tokens", "system_message")

# Receives (channel, delta) for one send; channel is "content" or "reasoning".
DeltaSink = Callable[[str, str], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StreamingState:
    """Transient text of the reply being streamed; never persisted."""

    session_id: Optional[str] = None
    content: str = ""
    reasoning: str = ""
    active: bool = False


@dataclass(frozen=True)
class SendResult:
    status: str  # completed | failed | cancelled | ignored
    session_id: Optional[str] = None
    message: Optional[ChatMessage] = None
    error: Optional[str] = None
    storage_error: Optional[str] = None


@dataclass
class ChatContext:
    """Everything the controller owns for one process: store, cache, pointer, settings."""

    store: ChatStore
    consumer: ChatStreamConsumer
    settings: ChatSettings = field(default_factory=ChatSettings)
    sessions: Dict[str, ChatSession] = field(default_factory=dict)
    current_session_id: Optional[str] = None
    streaming: StreamingState = field(default_factory=StreamingState)
    last_error: Optional[str] = None
    storage_degraded: bool = False

    @classmethod
    def load(cls, store: Optional[ChatStore] = None, consumer: Optional[ChatStreamConsumer] = None) -> "ChatContext":
        store = store or ChatStore()
        sessions = {s.id: s for s in store.list_sessions()}
        current = store.get_current_session_id()
        if current not in sessions:
            ordered = sorted(sessions.values(), key=lambda s: s.updated_at, reverse=True)
            current = ordered[0].id if ordered else None
        return cls(
            store=store,
            consumer=consumer or ChatStreamConsumer(),
            settings=store.load_settings() or ChatSettings(),
            sessions=sessions,
            current_session_id=current,
        )


@dataclass
class _ActiveStream:
    token: CancellationToken = field(default_factory=CancellationToken)


class ChatController:
    """Orchestrates sessions, sends and streamed replies over a ``ChatContext``."""

    def __init__(self, context: ChatContext) -> None:
        self.ctx = context
        self._active: Dict[str, _ActiveStream] = {}
        self._states: Dict[str, str] = {}
        self._listeners: List[Callable[[StreamingState], None]] = []
        self._pending_storage_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_sessions(self) -> List[ChatSession]:
        return sorted(self.ctx.sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self.ctx.sessions.get(session_id)

    @property
    def current_session(self) -> Optional[ChatSession]:
        if not self.ctx.current_session_id:
            return None
        return self.ctx.sessions.get(self.ctx.current_session_id)

    @property
    def current_session_id(self) -> Optional[str]:
        return self.ctx.current_session_id

    @property
    def streaming(self) -> StreamingState:
        return self.ctx.streaming

    def session_state(self, session_id: str) -> str:
        return self._states.get(session_id, IDLE)

    def subscribe(self, listener: Callable[[StreamingState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def create_session(self) -> ChatSession:
        session = ChatSession(settings=self.ctx.settings)
        self.ctx.sessions[session.id] = session
        self._write(self.ctx.store.save_session, session)
        self._set_current(session.id)
        logger.info("chat_session_created", extra={"session_id": session.id})
        return session

    def select_session(self, session_id: str) -> ChatSession:
        session = self._require(session_id)
        previous = self.ctx.current_session_id
        if previous and previous != session_id:
            self._cancel_active(previous)
        self._set_current(session_id)
        self.ctx.last_error = None
        return session

    def delete_session(self, session_id: str) -> bool:
        if session_id not in self.ctx.sessions:
            return False
        self._cancel_active(session_id)
        del self.ctx.sessions[session_id]
        self._states.pop(session_id, None)
        self._write(self.ctx.store.delete_session, session_id)
        if self.ctx.current_session_id == session_id:
            remaining = self.list_sessions()
            self._set_current(remaining[0].id if remaining else None)
        logger.info("chat_session_deleted", extra={"session_id": session_id})
        return True

    def clear_sessions(self) -> None:
        for session_id in list(self._active):
            self._cancel_active(session_id)
        self.ctx.sessions.clear()
        self._states.clear()
        self.ctx.current_session_id = None
        self.ctx.last_error = None
        self._write(self.ctx.store.clear)

    def export_session(self, session_id: str) -> str:
        return export_messages_to_markdown(self._require(session_id).messages)

    def import_sessions(self, payload: bytes) -> List[ChatSession]:
        """Import a browser-era JSON dump; sessions with an active stream are left alone."""
        imported: List[ChatSession] = []
        for session in decode_legacy_dump(payload):
            if session.id in self._active:
                logger.info("chat_import_skipped_streaming", extra={"session_id": session.id})
                continue
            self.ctx.sessions[session.id] = session
            self._write(self.ctx.store.save_session, session)
            imported.append(session)
        if imported and self.current_session is None:
            self._set_current(max(imported, key=lambda s: s.updated_at).id)
        logger.info("chat_sessions_imported", extra={"count": len(imported)})
        return imported

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def update_settings(self, apply_to_current: bool = False, **changes: Any) -> ChatSettings:
        """Update the global defaults used by new sessions.

        With ``apply_to_current`` the current session's snapshot receives the
        same changes.
        """
        self._validate_settings(changes)
        self.ctx.settings = self.ctx.settings.model_copy(update=changes)
        self._write(self.ctx.store.save_settings, self.ctx.settings)
        session = self.current_session
        if apply_to_current and session is not None:
            self._commit(session.model_copy(update={"settings": session.settings.model_copy(update=changes)}))
        return self.ctx.settings

    def update_session_settings(self, session_id: str, **changes: Any) -> ChatSettings:
        self._validate_settings(changes)
        session = self._require(session_id)
        session = self._commit(session.model_copy(update={"settings": session.settings.model_copy(update=changes)}))
        return session.settings

    @staticmethod
    def _validate_settings(changes: Dict[str, Any]) -> None:
        unknown = set(changes) - set(_SETTINGS_FIELDS)
        if unknown:
            raise SettingsError(f"Unknown settings: {', '.join(sorted(unknown))}")
        if "model" in changes and changes["model"] not in MODEL_CONFIGS:
            raise SettingsError(f"Unknown model: {changes['model']}")
        if "temperature" in changes:
            value = changes["temperature"]
            if not isinstance(value, (int, float)) or not TEMPERATURE_MIN <= value <= TEMPERATURE_MAX:
                raise SettingsError(f"temperature must be between {TEMPERATURE_MIN} and {TEMPERATURE_MAX}")
        if "max_tokens" in changes:
            value = changes["max_tokens"]
            if not isinstance(value, int) or not MAX_TOKENS_MIN <= value <= MAX_TOKENS_MAX:
                raise SettingsError(f"max_tokens must be between {MAX_TOKENS_MIN} and {MAX_TOKENS_MAX}")
        if "system_message" in changes and not isinstance(changes["system_message"], str):
            raise SettingsError("system_message must be a string")

    @staticmethod
    def resolve_settings(base: ChatSettings, use_reasoning: bool, system_prompt: Optional[str] = None) -> ChatSettings:
        update: Dict[str, Any] = {
            "model": resolve_model(base.model, use_reasoning),
            "temperature": clamp_temperature(base.temperature),
            "max_tokens": clamp_max_tokens(base.max_tokens),
        }
        if system_prompt:
            update["system_message"] = system_prompt
        return base.model_copy(update=update)

    # ------------------------------------------------------------------
    # Chat operations
    # ------------------------------------------------------------------
    async def send(
        self,
        session_id: Optional[str],
        text: str,
        use_reasoning: bool = False,
        system_prompt: Optional[str] = None,
        on_delta: Optional[DeltaSink] = None,
    ) -> SendResult:
        if not text or not text.strip():
            return SendResult(status="ignored", session_id=session_id)
        session = self._resolve_session(session_id)
        self._cancel_active(session.id)

        settings = self.resolve_settings(session.settings, use_reasoning, system_prompt)
        user_msg = ChatMessage(role="user", content=text, timestamp=self._next_timestamp(session.messages))
        session = self._commit(
            session.model_copy(
                update={
                    "messages": [*session.messages, user_msg],
                    "title": session.title or generate_session_title(text),
                    "settings": settings,
                }
            )
        )
        storage_error = self._take_storage_error()
        return await self._stream_reply(session.id, list(session.messages), settings, storage_error, on_delta)

    async def regenerate(self, session_id: Optional[str] = None, on_delta: Optional[DeltaSink] = None) -> SendResult:
        """Re-stream the latest user turn, replacing the reply that followed it.

        The reasoning flag and system message come from the session settings, so
        a session that used reasoning mode regenerates in reasoning mode.
        """
        session = self._require(session_id or self.ctx.current_session_id)
        last_user = next((i for i in range(len(session.messages) - 1, -1, -1) if session.messages[i].role == "user"), None)
        if last_user is None:
            return SendResult(status="ignored", session_id=session.id)
        self._cancel_active(session.id)

        messages = list(session.messages)
        if last_user + 1 < len(messages) and messages[last_user + 1].role == "assistant":
            del messages[last_user + 1]
        use_reasoning = supports_reasoning(session.settings.model)
        settings = self.resolve_settings(session.settings, use_reasoning)
        session = self._commit(session.model_copy(update={"messages": messages, "settings": settings}))
        storage_error = self._take_storage_error()
        logger.info("chat_regenerate", extra={"session_id": session.id, "reasoning": use_reasoning})
        return await self._stream_reply(session.id, messages[: last_user + 1], settings, storage_error, on_delta)

    def stop(self, session_id: Optional[str] = None) -> bool:
        sid = session_id or self.ctx.current_session_id
        if not sid:
            return False
        return self._cancel_active(sid)

    def delete_message(self, message_id: str, session_id: Optional[str] = None) -> bool:
        session = self._require(session_id or self.ctx.current_session_id)
        messages = [m for m in session.messages if m.id != message_id]
        if len(messages) == len(session.messages):
            return False
        self._commit(session.model_copy(update={"messages": messages}))
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _stream_reply(
        self,
        session_id: str,
        history: Sequence[ChatMessage],
        settings: ChatSettings,
        storage_error: Optional[str],
        on_delta: Optional[DeltaSink] = None,
    ) -> SendResult:
        active = _ActiveStream()
        self._active[session_id] = active
        self._transition(session_id, "send")
        self.ctx.last_error = None
        self._set_streaming(StreamingState(session_id=session_id, active=True))
        result: Dict[str, Any] = {}

        def live() -> bool:
            return self._active.get(session_id) is active and not active.token.cancelled

        def on_content(delta: str) -> None:
            if not live():
                return
            if on_delta is not None:
                on_delta("content", delta)
            if self.ctx.streaming.session_id == session_id:
                self._set_streaming(replace(self.ctx.streaming, content=self.ctx.streaming.content + delta))

        def on_reasoning(delta: str) -> None:
            if not live():
                return
            if on_delta is not None:
                on_delta("reasoning", delta)
            if self.ctx.streaming.session_id == session_id:
                self._set_streaming(replace(self.ctx.streaming, reasoning=self.ctx.streaming.reasoning + delta))

        def on_complete(message: ChatMessage) -> None:
            if live():
                result["message"] = message

        def on_error(error: str) -> None:
            if live():
                result["error"] = error

        handlers = StreamHandlers(on_content=on_content, on_reasoning=on_reasoning, on_complete=on_complete, on_error=on_error)
        try:
            await self.ctx.consumer.stream_chat(history, settings, handlers, active.token)
        except BaseException:
            if self._active.get(session_id) is active:
                self._cancel_active(session_id)
            raise
        owned = self._active.get(session_id) is active
        if owned:
            del self._active[session_id]
            self._clear_streaming(session_id)

        session = self.ctx.sessions.get(session_id)
        if not owned or active.token.cancelled or session is None or not result:
            # A superseding send or stop() already moved the state machine.
            if owned:
                self._transition(session_id, "cancelled")
            return SendResult(status="cancelled", session_id=session_id, storage_error=storage_error)

        if "error" in result:
            self._transition(session_id, "failed")
            self.ctx.last_error = result["error"]
            logger.warning("chat_send_failed", extra={"session_id": session_id, "err": result["error"]})
            return SendResult(status="failed", session_id=session_id, error=result["error"], storage_error=storage_error)

        message: ChatMessage = result["message"]
        message = message.model_copy(update={"timestamp": self._next_timestamp(session.messages, message.timestamp)})
        self._commit(session.model_copy(update={"messages": [*session.messages, message]}))
        self._transition(session_id, "completed")
        return SendResult(
            status="completed",
            session_id=session_id,
            message=message,
            storage_error=storage_error or self._take_storage_error(),
        )

    def _transition(self, session_id: str, event: str) -> None:
        current = self.session_state(session_id)
        target = next_state(current, event)
        if target is None:
            logger.debug("chat_state_ignored", extra={"session_id": session_id, "state": current, "event": event})
            return
        if target == IDLE:
            self._states.pop(session_id, None)
        else:
            self._states[session_id] = target

    def _cancel_active(self, session_id: str) -> bool:
        active = self._active.pop(session_id, None)
        if active is None:
            return False
        active.token.cancel()
        self._transition(session_id, "cancelled")
        self._clear_streaming(session_id)
        logger.info("chat_stream_stopped", extra={"session_id": session_id})
        return True

    def _resolve_session(self, session_id: Optional[str]) -> ChatSession:
        if session_id:
            return self._require(session_id)
        current = self.current_session
        if current is not None:
            return current
        return self.create_session()

    def _require(self, session_id: Optional[str]) -> ChatSession:
        session = self.ctx.sessions.get(session_id or "")
        if session is None:
            raise SessionNotFoundError("Session not found", details={"session_id": session_id})
        return session

    def _commit(self, session: ChatSession) -> ChatSession:
        previous = self.ctx.sessions.get(session.id)
        now = _utcnow()
        if previous is not None and previous.updated_at > now:
            now = previous.updated_at
        session = session.model_copy(update={"updated_at": now})
        self.ctx.sessions[session.id] = session
        self._write(self.ctx.store.save_session, session)
        return session

    def _set_current(self, session_id: Optional[str]) -> None:
        self.ctx.current_session_id = session_id
        self._write(self.ctx.store.set_current_session_id, session_id)

    def _write(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except StorageError as exc:
            if not self.ctx.storage_degraded:
                self.ctx.storage_degraded = True
                self.ctx.last_error = exc.message
                self._pending_storage_error = exc.message
            logger.warning("chat_store_write_failed", extra={"err": exc.message})
            return
        self.ctx.storage_degraded = False

    def _take_storage_error(self) -> Optional[str]:
        error = self._pending_storage_error
        self._pending_storage_error = None
        return error

    @staticmethod
    def _next_timestamp(messages: Sequence[ChatMessage], candidate: Optional[datetime] = None) -> datetime:
        ts = candidate or _utcnow()
        if messages and messages[-1].timestamp > ts:
            return messages[-1].timestamp
        return ts

    def _set_streaming(self, state: StreamingState) -> None:
        self.ctx.streaming = state
        for listener in list(self._listeners):
            listener(state)

    def _clear_streaming(self, session_id: str) -> None:
        if self.ctx.streaming.session_id == session_id:
            self._set_streaming(StreamingState())

"""Streaming chat-completion consumer.

Turns the upstream server-sent-event byte stream into ordered content and
reasoning deltas plus exactly one terminal event (completed or failed).
Cancellation is cooperative: a ``CancellationToken`` is checked before every
read and before every delta, and a pending read is abandoned as soon as the
token fires.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from ..domain.chat_models import ChatMessage, ChatSettings, TokenUsage
from ..observability.metrics import STREAM_OUTCOMES
from .model_catalog import UpstreamConfig, upstream_config


LOG = logging.getLogger("chatbox.llm")

DONE_SENTINEL = "[DONE]"
_CONNECT_TIMEOUT = float(os.getenv("CHATBOX_LLM_CONNECT_TIMEOUT", "10"))
_IDLE_TIMEOUT = float(os.getenv("CHATBOX_STREAM_IDLE_TIMEOUT", "120"))


class CancellationToken:
    """One-shot cancellation flag shared between a caller and a running stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class StreamFrame:
    """One decoded SSE frame. ``done`` marks the terminal sentinel."""

    content: str = ""
    reasoning: str = ""
    usage: Optional[TokenUsage] = None
    done: bool = False


def decode_increment(parsed: Any) -> Optional[StreamFrame]:
    """Map one chat-completion chunk object to a frame; None if it is not an object."""
    if not isinstance(parsed, dict):
        return None
    content = ""
    reasoning = ""
    choices = parsed.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            if isinstance(delta.get("content"), str):
                content = delta["content"]
            if isinstance(delta.get("reasoning_content"), str):
                reasoning = delta["reasoning_content"]
    usage = None
    if isinstance(parsed.get("usage"), dict):
        try:
            usage = TokenUsage.model_validate(parsed["usage"])
        except ValidationError:
            LOG.debug("stream_usage_unparsed", extra={"usage": parsed["usage"]})
    return StreamFrame(content=content, reasoning=reasoning, usage=usage)


class SSEFrameDecoder:
    """Incremental SSE parser.

    Input may be split anywhere, including inside a multi-byte character; a
    line is interpreted only once its ``\\n`` delimiter has arrived. After the
    ``[DONE]`` sentinel every further byte is ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.finished = False
        self.malformed = 0

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        if self.finished:
            return []
        # Split once per chunk; the last piece is an incomplete line kept for later.
        *lines, self._buffer = (self._buffer + self._decoder.decode(chunk)).split("\n")
        frames: List[StreamFrame] = []
        for line in lines:
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
            if self.finished:
                self._buffer = ""
                break
        return frames

    def close(self) -> List[StreamFrame]:
        """Interpret a trailing line that was never newline-terminated."""
        if self.finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        frame = self._parse_line(line)
        return [frame] if frame is not None else []

    def _parse_line(self, line: str) -> Optional[StreamFrame]:
        line = line.rstrip("\r")
        if not line.strip() or line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if name != "data":
            return None
        data = value.strip()
        if data == DONE_SENTINEL:
            self.finished = True
            return StreamFrame(done=True)
        try:
            frame = decode_increment(json.loads(data))
        except ValueError:
            frame = None
        if frame is None:
            self.malformed += 1
            LOG.debug("stream_frame_skipped", extra={"data": data[:200]})
        return frame


@dataclass
class StreamHandlers:
    on_content: Callable[[str], None]
    on_reasoning: Callable[[str], None]
    on_complete: Callable[[ChatMessage], None]
    on_error: Callable[[str], None]


@dataclass
class _Accumulator:
    model: str
    content: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)
    usage: Optional[TokenUsage] = None

    def has_text(self) -> bool:
        return bool(self.content or self.reasoning)

    def finish(self) -> ChatMessage:
        reasoning = "".join(self.reasoning)
        return ChatMessage(
            role="assistant",
            content="".join(self.content),
            reasoning_content=reasoning or None,
            model=self.model,
            usage=self.usage,
        )


@dataclass(frozen=True)
class _Outcome:
    kind: str
    message: Optional[ChatMessage] = None
    error: Optional[str] = None


_CANCELLED = _Outcome("cancelled")


def build_request_messages(messages: Sequence[ChatMessage], settings: ChatSettings) -> List[Dict[str, str]]:
    out = [{"role": m.role, "content": m.content} for m in messages]
    if settings.system_message and (not out or out[0]["role"] != "system"):
        out.insert(0, {"role": "system", "content": settings.system_message})
    return out


def build_payload(messages: Sequence[ChatMessage], settings: ChatSettings) -> Dict[str, Any]:
    return {
        "model": settings.model,
        "messages": build_request_messages(messages, settings),
        "stream": True,
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
    }


def _error_message(status_code: int, body: bytes) -> str:
    fallback = f"HTTP {status_code}"
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return fallback
    if not isinstance(data, dict):
        return fallback
    err = data.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str) and err:
        return err
    return fallback


class ChatStreamConsumer:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        upstream: Optional[UpstreamConfig] = None,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._upstream = upstream
        self._idle_timeout = _IDLE_TIMEOUT if idle_timeout is None else idle_timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(_CONNECT_TIMEOUT, read=None))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        settings: ChatSettings,
        handlers: StreamHandlers,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Stream one reply, firing deltas then exactly one terminal handler.

        Nothing fires after cancellation, not even a terminal handler.
        Exceptions raised by the handlers themselves propagate to the caller.
        """
        token = token or CancellationToken()
        if token.cancelled:
            return
        upstream = self._upstream or upstream_config()
        if not upstream.api_key:
            STREAM_OUTCOMES.labels(outcome="failed").inc()
            handlers.on_error("API key not configured; set DEEPSEEK_API_KEY")
            return

        acc = _Accumulator(model=settings.model)
        reader = asyncio.ensure_future(self._read_stream(upstream, build_payload(messages, settings), handlers, token, acc))
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            reader.cancel()
            raise
        finally:
            waiter.cancel()

        if reader not in done:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            outcome = _CANCELLED
        else:
            outcome = reader.result()
            if token.cancelled:
                outcome = _CANCELLED

        STREAM_OUTCOMES.labels(outcome=outcome.kind).inc()
        if outcome.kind == "cancelled":
            LOG.info("stream_cancelled", extra={"model": settings.model})
        elif outcome.kind == "completed" and outcome.message is not None:
            LOG.debug("stream_completed", extra={"model": settings.model, "chars": len(outcome.message.content)})
            handlers.on_complete(outcome.message)
        else:
            LOG.warning("stream_failed", extra={"model": settings.model, "err": outcome.error})
            handlers.on_error(outcome.error or "Unknown error occurred")

    async def _read_stream(
        self,
        upstream: UpstreamConfig,
        payload: Dict[str, Any],
        handlers: StreamHandlers,
        token: CancellationToken,
        acc: _Accumulator,
    ) -> _Outcome:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {upstream.api_key}",
            "Accept": "text/event-stream",
        }
        LOG.debug("stream_open", extra={"model": payload["model"], "url": upstream.chat_url})
        try:
            async with self._get_client().stream("POST", upstream.chat_url, headers=headers, json=payload) as response:
                if not response.is_success:
                    body = await response.aread()
                    return _Outcome("failed", error=_error_message(response.status_code, body))
                decoder = SSEFrameDecoder()
                chunks = response.aiter_bytes()
                while True:
                    if token.cancelled:
                        return _CANCELLED
                    try:
                        async with asyncio.timeout(self._idle_timeout or None):
                            chunk = await chunks.__anext__()
                    except StopAsyncIteration:
                        break
                    except TimeoutError:
                        LOG.warning("stream_idle_timeout", extra={"timeout_s": self._idle_timeout})
                        return self._partial(acc, "Upstream stream stalled")
                    outcome = self._dispatch(decoder.feed(chunk), handlers, token, acc)
                    if outcome is not None:
                        return outcome
                outcome = self._dispatch(decoder.close(), handlers, token, acc)
                if outcome is not None:
                    return outcome
                LOG.info("stream_closed_without_sentinel", extra={"malformed": decoder.malformed})
                return _Outcome("completed", message=acc.finish())
        except httpx.HTTPError as exc:
            LOG.warning("stream_transport_error", extra={"err": str(exc)})
            return self._partial(acc, f"Request failed: {exc}")

    @staticmethod
    def _partial(acc: _Accumulator, error: str) -> _Outcome:
        if acc.has_text():
            return _Outcome("completed", message=acc.finish())
        return _Outcome("failed", error=error)

    @staticmethod
    def _dispatch(
        frames: List[StreamFrame],
        handlers: StreamHandlers,
        token: CancellationToken,
        acc: _Accumulator,
    ) -> Optional[_Outcome]:
        for frame in frames:
            if token.cancelled:
                return _CANCELLED
            if frame.done:
                return _Outcome("completed", message=acc.finish())
            if frame.usage is not None:
                acc.usage = frame.usage
            if frame.reasoning:
                acc.reasoning.append(frame.reasoning)
                handlers.on_reasoning(frame.reasoning)
            if frame.content:
                acc.content.append(frame.content)
                handlers.on_content(frame.content)
        return None

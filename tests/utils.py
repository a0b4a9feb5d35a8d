from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from src.chatbox.infrastructure.chat_store import ChatStore
from src.chatbox.infrastructure.kv_store import InMemoryKeyValueStore, KeyValueStore
from src.chatbox.services.chat_controller import ChatContext, ChatController
from src.chatbox.services.model_catalog import UpstreamConfig
from src.chatbox.services.streaming import ChatStreamConsumer, StreamHandlers


UPSTREAM = UpstreamConfig(base_url="https://llm.test", api_key="test-key")


def chunk(content: Optional[str] = None, reasoning: Optional[str] = None, usage: Optional[Dict[str, int]] = None) -> bytes:
    """One ``data:`` line carrying a chat-completion delta."""
    delta: Dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    payload: Dict[str, Any] = {"choices": [{"index": 0, "delta": delta}]}
    if usage is not None:
        payload["usage"] = usage
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


DONE = b"data: [DONE]\n\n"


class FakeUpstream:
    """MockTransport handler that records request payloads and replays canned bodies."""

    def __init__(self, *bodies: Any, status_code: int = 200) -> None:
        self._bodies: List[Any] = list(bodies)
        self.status_code = status_code
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content.decode("utf-8")))
        body = self._bodies.pop(0) if len(self._bodies) > 1 else (self._bodies[0] if self._bodies else b"")
        if callable(body):
            body = body()
        if isinstance(body, (list, tuple)):
            body = b"".join(body)
        return httpx.Response(self.status_code, content=body)


def hanging_body(*first: bytes) -> Callable[[], AsyncIterator[bytes]]:
    """Body factory that emits ``first`` and then never yields again."""

    def factory() -> AsyncIterator[bytes]:
        async def gen() -> AsyncIterator[bytes]:
            for piece in first:
                yield piece
            await asyncio.sleep(3600)
            yield b""

        return gen()

    return factory


def gated_body(gate: asyncio.Event, first: List[bytes], rest: List[bytes]) -> Callable[[], AsyncIterator[bytes]]:
    """Body factory that emits ``first``, waits for ``gate``, then emits ``rest``."""

    def factory() -> AsyncIterator[bytes]:
        async def gen() -> AsyncIterator[bytes]:
            for piece in first:
                yield piece
            await gate.wait()
            for piece in rest:
                yield piece

        return gen()

    return factory


def make_consumer(handler: Callable[[httpx.Request], httpx.Response], idle_timeout: float = 0) -> ChatStreamConsumer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatStreamConsumer(client=client, upstream=UPSTREAM, idle_timeout=idle_timeout)


def make_controller(handler: Callable[[httpx.Request], httpx.Response], kv: Optional[KeyValueStore] = None) -> ChatController:
    store = ChatStore(kv if kv is not None else InMemoryKeyValueStore())
    return ChatController(ChatContext.load(store, make_consumer(handler)))


class Recorder:
    """StreamHandlers that keep every callback in arrival order."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    @property
    def handlers(self) -> StreamHandlers:
        return StreamHandlers(
            on_content=lambda d: self.events.append(("content", d)),
            on_reasoning=lambda d: self.events.append(("reasoning", d)),
            on_complete=lambda m: self.events.append(("complete", m)),
            on_error=lambda e: self.events.append(("error", e)),
        )

    def kinds(self) -> List[str]:
        return [e[0] for e in self.events]

    def terminal(self) -> List[tuple]:
        return [e for e in self.events if e[0] in ("complete", "error")]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def parse_sse(text: str) -> List[Dict[str, Any]]:
    return [json.loads(line[len("data: ") :]) for line in text.splitlines() if line.startswith("data: ")]



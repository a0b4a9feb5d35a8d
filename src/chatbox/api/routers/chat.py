from __future__ import annotations

import asyncio
import json
from urllib.parse import quote
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from ...core.errors import PromptNotFoundError, PromptTemplateError, SessionNotFoundError, SettingsError
from ...domain.chat_models import (
    ChatModelOption,
    ChatSendRequest,
    ChatSession,
    ChatSessionImportResult,
    ChatSessionList,
    ChatSessionSettingsUpdate,
    ChatSettings,
    ChatSettingsUpdate,
    PromptCategory,
    PromptImportResult,
    PromptTemplate,
    PromptTemplateCreate,
    PromptTemplateUpdate,
)
from ...infrastructure.chat_store import ChatStore
from ...infrastructure.kv_store import get_kv_store
from ...services.balance import BalanceError, fetch_balance
from ...services.chat_controller import ChatContext, ChatController, DeltaSink, SendResult
from ...services.chat_export import export_filename
from ...services.model_catalog import MODEL_CONFIGS
from ...services.prompt_library import PromptLibrary


_controller: ChatController | None = None
_prompt_library: PromptLibrary | None = None


def get_controller() -> ChatController:
    global _controller
    if _controller is None:
        _controller = ChatController(ChatContext.load(ChatStore(get_kv_store())))
    return _controller


def get_prompt_library() -> PromptLibrary:
    global _prompt_library
    if _prompt_library is None:
        _prompt_library = PromptLibrary(get_kv_store())
    return _prompt_library


async def shutdown_controller() -> None:
    """Close the upstream HTTP client of the process controller, if one was built."""
    if _controller is not None:
        await _controller.ctx.consumer.aclose()


router = APIRouter(prefix="/chat", tags=["chat"])


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps({'type': event, **payload}, ensure_ascii=False)}\n\n"


def _terminal_event(result: SendResult) -> str:
    base: Dict[str, Any] = {"session_id": result.session_id}
    if result.storage_error:
        base["storage_error"] = result.storage_error
    if result.status == "completed" and result.message is not None:
        return _sse("done", {**base, "message": result.message.model_dump(mode="json")})
    if result.status == "failed":
        return _sse("error", {**base, "error": result.error})
    return _sse(result.status, base)


async def _stream_events(run: Callable[[DeltaSink], Awaitable[SendResult]]) -> AsyncIterator[str]:
    """Relay the deltas of one send as SSE events, then its terminal event.

    ``run`` starts the send with a sink bound to this response only, so
    concurrent streams on other sessions never leak into it.
    """
    queue: asyncio.Queue = asyncio.Queue()

    def sink(kind: str, delta: str) -> None:
        queue.put_nowait((kind, delta))

    task = asyncio.ensure_future(run(sink))
    task.add_done_callback(lambda _t: queue.put_nowait(None))
    try:
        while True:
            item = await queue.get()
            if item is None:
                break
            kind, delta = item
            yield _sse(kind, {"delta": delta})
        yield _terminal_event(task.result())
    finally:
        if not task.done():
            # Client went away mid-stream; cancelling the send cancels its upstream read
            task.cancel()


@router.get("/models", response_model=List[ChatModelOption])
async def list_models() -> List[ChatModelOption]:
    return [
        ChatModelOption(
            model=info.model,
            name=info.name,
            description=info.description,
            max_tokens=info.max_tokens,
            supports_reasoning=info.supports_reasoning,
        )
        for info in MODEL_CONFIGS.values()
    ]


@router.get("/settings", response_model=ChatSettings)
async def get_settings(controller: ChatController = Depends(get_controller)) -> ChatSettings:
    return controller.ctx.settings


@router.put("/settings", response_model=ChatSettings)
async def update_settings(req: ChatSettingsUpdate, controller: ChatController = Depends(get_controller)) -> ChatSettings:
    changes = req.model_dump(exclude_none=True, exclude={"apply_to_current"})
    try:
        return controller.update_settings(apply_to_current=req.apply_to_current, **changes)
    except SettingsError as exc:
        raise HTTPException(status_code=422, detail=exc.message)


@router.get("/sessions", response_model=ChatSessionList)
async def list_sessions(controller: ChatController = Depends(get_controller)) -> ChatSessionList:
    return ChatSessionList(current_session_id=controller.current_session_id, sessions=controller.list_sessions())


@router.post("/sessions", response_model=ChatSession, status_code=status.HTTP_201_CREATED)
async def create_session(controller: ChatController = Depends(get_controller)) -> ChatSession:
    return controller.create_session()


@router.delete("/sessions")
async def clear_sessions(controller: ChatController = Depends(get_controller)) -> Dict[str, Any]:
    controller.clear_sessions()
    return {"cleared": True}


@router.post("/sessions/import", response_model=ChatSessionImportResult)
async def import_sessions(request: Request, controller: ChatController = Depends(get_controller)) -> ChatSessionImportResult:
    imported = controller.import_sessions(await request.body())
    return ChatSessionImportResult(
        imported=len(imported),
        session_ids=[s.id for s in imported],
        current_session_id=controller.current_session_id,
    )


@router.get("/sessions/{session_id}", response_model=ChatSession)
async def get_session(session_id: str, controller: ChatController = Depends(get_controller)) -> ChatSession:
    sess = controller.get_session(session_id)
    if not sess:
        raise HTTPException(status_code=404, detail="Session not found")
    return sess


@router.post("/sessions/{session_id}/select", response_model=ChatSession)
async def select_session(session_id: str, controller: ChatController = Depends(get_controller)) -> ChatSession:
    try:
        return controller.select_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


@router.put("/sessions/{session_id}/settings", response_model=ChatSettings)
async def update_session_settings(
    session_id: str,
    req: ChatSessionSettingsUpdate,
    controller: ChatController = Depends(get_controller),
) -> ChatSettings:
    try:
        return controller.update_session_settings(session_id, **req.model_dump(exclude_none=True))
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except SettingsError as exc:
        raise HTTPException(status_code=422, detail=exc.message)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, controller: ChatController = Depends(get_controller)) -> Dict[str, Any]:
    if not controller.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"deleted": True, "current_session_id": controller.current_session_id}


@router.get("/sessions/{session_id}/export", response_class=PlainTextResponse)
async def export_session(session_id: str, controller: ChatController = Depends(get_controller)) -> PlainTextResponse:
    sess = controller.get_session(session_id)
    if not sess:
        raise HTTPException(status_code=404, detail="Session not found")
    filename = export_filename(sess)
    return PlainTextResponse(
        controller.export_session(session_id),
        media_type="text/markdown",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@router.post("/messages")
async def send_message(
    req: ChatSendRequest,
    controller: ChatController = Depends(get_controller),
    library: PromptLibrary = Depends(get_prompt_library),
) -> StreamingResponse:
    if req.session_id and not controller.get_session(req.session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    system_prompt = req.system_prompt
    if system_prompt is None and req.prompt_id:
        try:
            system_prompt = library.get(req.prompt_id).prompt
        except PromptNotFoundError:
            raise HTTPException(status_code=404, detail="Prompt template not found")

    def run(sink: DeltaSink) -> Awaitable[SendResult]:
        return controller.send(req.session_id, req.content, req.use_reasoning, system_prompt, on_delta=sink)

    return StreamingResponse(_stream_events(run), media_type="text/event-stream")


@router.post("/sessions/{session_id}/regenerate")
async def regenerate(session_id: str, controller: ChatController = Depends(get_controller)) -> StreamingResponse:
    if not controller.get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return StreamingResponse(
        _stream_events(lambda sink: controller.regenerate(session_id, on_delta=sink)),
        media_type="text/event-stream",
    )


@router.post("/sessions/{session_id}/stop")
async def stop(session_id: str, controller: ChatController = Depends(get_controller)) -> Dict[str, Any]:
    return {"stopped": controller.stop(session_id)}


@router.delete("/sessions/{session_id}/messages/{message_id}")
async def delete_message(
    session_id: str,
    message_id: str,
    controller: ChatController = Depends(get_controller),
) -> Dict[str, Any]:
    try:
        deleted = controller.delete_message(message_id, session_id=session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    if not deleted:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"deleted": True}


@router.get("/prompts", response_model=List[PromptTemplate])
async def list_prompts(
    category: Optional[str] = None,
    q: Optional[str] = None,
    library: PromptLibrary = Depends(get_prompt_library),
) -> List[PromptTemplate]:
    return library.list_templates(category=category, query=q)


@router.get("/prompts/categories", response_model=List[PromptCategory])
async def list_prompt_categories(library: PromptLibrary = Depends(get_prompt_library)) -> List[PromptCategory]:
    return library.categories()


@router.get("/prompts/export")
async def export_prompts(library: PromptLibrary = Depends(get_prompt_library)) -> Response:
    return Response(
        library.export_json(),
        media_type="application/json",
        headers={"Content-Disposition": "attachment; filename=prompts.json"},
    )


@router.post("/prompts/import", response_model=PromptImportResult)
async def import_prompts(request: Request, library: PromptLibrary = Depends(get_prompt_library)) -> PromptImportResult:
    try:
        return library.import_json(await request.body())
    except PromptTemplateError as exc:
        raise HTTPException(status_code=422, detail=exc.message)


@router.post("/prompts", response_model=PromptTemplate, status_code=status.HTTP_201_CREATED)
async def create_prompt(req: PromptTemplateCreate, library: PromptLibrary = Depends(get_prompt_library)) -> PromptTemplate:
    try:
        return library.add(req)
    except PromptTemplateError as exc:
        raise HTTPException(status_code=409, detail=exc.message)


@router.get("/prompts/{template_id}", response_model=PromptTemplate)
async def get_prompt(template_id: str, library: PromptLibrary = Depends(get_prompt_library)) -> PromptTemplate:
    try:
        return library.get(template_id)
    except PromptNotFoundError:
        raise HTTPException(status_code=404, detail="Prompt template not found")


@router.put("/prompts/{template_id}", response_model=PromptTemplate)
async def update_prompt(
    template_id: str,
    req: PromptTemplateUpdate,
    library: PromptLibrary = Depends(get_prompt_library),
) -> PromptTemplate:
    try:
        return library.update(template_id, req)
    except PromptNotFoundError:
        raise HTTPException(status_code=404, detail="Prompt template not found")
    except PromptTemplateError as exc:
        raise HTTPException(status_code=409, detail=exc.message)


@router.delete("/prompts/{template_id}")
async def delete_prompt(template_id: str, library: PromptLibrary = Depends(get_prompt_library)) -> Dict[str, Any]:
    try:
        library.delete(template_id)
    except PromptNotFoundError:
        raise HTTPException(status_code=404, detail="Prompt template not found")
    return {"deleted": True}


@router.get("/balance")
def get_balance() -> Dict[str, Any]:
    try:
        return fetch_balance()
    except BalanceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

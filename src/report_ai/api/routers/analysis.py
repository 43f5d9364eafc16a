from __future__ import annotations

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from ...domain.analysis_models import (
    AnalyzeTextRequest,
    AnalyzeTextResponse,
    ChatRequest,
    ChatResponse,
    ConversationMessageView,
    ConversationRequest,
    ConversationResponse,
    FieldAnalyzeRequest,
    FieldAnalyzeResponse,
    FieldStateView,
    FollowUpRequest,
    ProviderStatus,
    ReportFieldView,
    SessionAISettings,
    SummarizeRequest,
    SummarizeResponse,
    SystemAISettings,
    TokenUsageView,
)
from ...domain.errors import AnalysisValidationError
from ...domain.field_types import list_fields
from ...providers.base import AIResponse, ProviderClient, ProviderConfigError, ProviderError
from ...security.auth_gate import JwtAuthGate, SessionExpiredError, User, get_current_user
from ...services import analysis_pipeline
from ...services.analysis_engine import AnalysisEngine, EngineRegistry, get_engine_registry
from ...services.field_session import FieldSnapshot
from ...services.provider_resolver import ProviderResolver, get_provider_resolver
from ...services.settings_provider import SettingsProvider, get_settings_provider

logger = logging.getLogger("report_ai.api")

router = APIRouter(prefix="/ai", tags=["ai"])

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _session_id(user: User) -> str:
    return user.session_id or user.id


def _client(resolver: ProviderResolver, user: User, setting_type: str = "realtime") -> ProviderClient:
    try:
        return resolver.resolve(_session_id(user), setting_type)
    except ProviderConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def _engine(user: User, registry: EngineRegistry) -> AnalysisEngine:
    engine = registry.get(_session_id(user))
    engine.bind_auth_gate(JwtAuthGate(user))
    return engine


def _unauthenticated(exc: SessionExpiredError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": str(exc), "error_kind": "unauthenticated"},
    )


def _chat_response(resp: AIResponse) -> ChatResponse:
    usage = None
    if resp.usage is not None:
        usage = TokenUsageView(
            prompt_tokens=resp.usage.prompt_tokens,
            completion_tokens=resp.usage.completion_tokens,
            total_tokens=resp.usage.total_tokens,
        )
    return ChatResponse(
        content=resp.content,
        provider=resp.provider,
        request_id=resp.request_id,
        duration_ms=resp.duration_ms,
        usage=usage,
    )


def _state_view(snap: Optional[FieldSnapshot]) -> Optional[FieldStateView]:
    if snap is None:
        return None
    return FieldStateView(
        field_name=snap.field_name,
        status=snap.status.value,
        current_text=snap.current_text,
        has_run_once=snap.has_run_once,
        last_analyzed_snapshot=snap.last_analyzed_snapshot,
        analysis=snap.analysis,
        error=snap.error,
        error_kind=snap.error_kind,
        conversation=[
            ConversationMessageView(id=m.id, role=m.role, content=m.content, timestamp=m.timestamp)
            for m in snap.conversation
        ],
        conversation_loading=snap.conversation_loading,
    )


# ----------------------------------------------------------------------
# Stateless analysis
# ----------------------------------------------------------------------
@router.post("/analyze-text", response_model=AnalyzeTextResponse)
async def analyze_text(
    req: AnalyzeTextRequest,
    user: User = Depends(get_current_user),
    resolver: ProviderResolver = Depends(get_provider_resolver),
) -> AnalyzeTextResponse:
    client = _client(resolver, user)
    content = await analysis_pipeline.analyze_text(
        client,
        req.field_type,
        req.content,
        req.original_content,
        req.previous_report_content,
        caller_id=user.id,
    )
    return AnalyzeTextResponse(content=content, provider=client.provider_id, model=client.model)


@router.post("/analyze-text/stream", response_class=StreamingResponse)
async def analyze_text_stream(
    req: AnalyzeTextRequest,
    user: User = Depends(get_current_user),
    resolver: ProviderResolver = Depends(get_provider_resolver),
    settings: SettingsProvider = Depends(get_settings_provider),
):
    client = _client(resolver, user)
    streaming_enabled = settings.streaming_enabled()

    async def event_stream():
        try:
            async for fragment in analysis_pipeline.analyze_text_stream(
                client,
                req.field_type,
                req.content,
                req.original_content,
                req.previous_report_content,
                streaming_enabled=streaming_enabled,
                caller_id=user.id,
            ):
                yield f"data: {json.dumps({'token': fragment})}\n\n"
        except ProviderError as exc:
            logger.warning("analysis_stream_failed", extra={"provider": exc.provider_id, "error": exc.message})
            yield f"data: {json.dumps({'error': str(exc)})}\n\n"
        yield f"data: {json.dumps({'done': True})}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/conversation", response_model=ConversationResponse)
async def conversation(
    req: ConversationRequest,
    user: User = Depends(get_current_user),
    resolver: ProviderResolver = Depends(get_provider_resolver),
) -> ConversationResponse:
    client = _client(resolver, user)
    history = [{"role": t.role, "content": t.content} for t in req.conversations]
    try:
        reply = await analysis_pipeline.follow_up(
            client,
            req.field_type,
            req.original_content,
            req.ai_analysis,
            history,
            req.user_message,
            caller_id=user.id,
        )
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return ConversationResponse(content=reply)


@router.post("/chat", response_model=ChatResponse)
async def chat(
    req: ChatRequest,
    user: User = Depends(get_current_user),
    resolver: ProviderResolver = Depends(get_provider_resolver),
) -> ChatResponse:
    client = _client(resolver, user, "basic")
    try:
        resp = await analysis_pipeline.chat(client, [t.model_dump() for t in req.messages], caller_id=user.id)
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return _chat_response(resp)


@router.post("/summarize", response_model=SummarizeResponse)
async def summarize(
    req: SummarizeRequest,
    user: User = Depends(get_current_user),
    resolver: ProviderResolver = Depends(get_provider_resolver),
) -> SummarizeResponse:
    client = _client(resolver, user, "basic")
    try:
        resp = await analysis_pipeline.summarize(client, req.text, caller_id=user.id)
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return SummarizeResponse(summary=resp.content)


@router.get("/status", response_model=ProviderStatus)
def provider_status(
    user: User = Depends(get_current_user),
    resolver: ProviderResolver = Depends(get_provider_resolver),
) -> ProviderStatus:
    sid = _session_id(user)
    live = resolver.read_settings(sid)
    handle = resolver.cached_handle(sid)
    return ProviderStatus(
        provider=live.provider_id,
        model=live.model_id,
        streaming_enabled=live.streaming_enabled,
        source=live.source,
        cache_key=handle.cache_key if handle else None,
        isolated=resolver.isolate_by_session,
    )


@router.get("/field-types", response_model=List[ReportFieldView])
def field_types(user: User = Depends(get_current_user)) -> List[ReportFieldView]:
    return [ReportFieldView(key=f.key, label=f.label, layout_requirements=f.layout_requirements) for f in list_fields()]


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------
@router.get("/session-settings", response_model=Optional[SessionAISettings])
def get_session_settings(
    user: User = Depends(get_current_user),
    settings: SettingsProvider = Depends(get_settings_provider),
) -> Optional[SessionAISettings]:
    override = settings.session_override(_session_id(user))
    if override is None:
        return None
    return SessionAISettings(realtime_provider=override.provider, models=dict(override.models))


@router.put("/session-settings", response_model=ProviderStatus)
def put_session_settings(
    req: SessionAISettings,
    user: User = Depends(get_current_user),
    settings: SettingsProvider = Depends(get_settings_provider),
) -> ProviderStatus:
    try:
        live = settings.update_session_settings(_session_id(user), req.realtime_provider, req.models)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ProviderStatus(
        provider=live.provider_id, model=live.model_id, streaming_enabled=live.streaming_enabled, source=live.source
    )


@router.delete("/session-settings", status_code=status.HTTP_204_NO_CONTENT)
def delete_session_settings(
    user: User = Depends(get_current_user),
    settings: SettingsProvider = Depends(get_settings_provider),
) -> None:
    settings.clear_session_settings(_session_id(user))


@router.put("/settings", response_model=ProviderStatus)
def put_system_settings(
    req: SystemAISettings,
    user: User = Depends(get_current_user),
    settings: SettingsProvider = Depends(get_settings_provider),
) -> ProviderStatus:
    if "admin" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    try:
        live = settings.update_system_settings(req.setting_type, req.provider, req.models, req.streaming_enabled)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ProviderStatus(
        provider=live.provider_id, model=live.model_id, streaming_enabled=live.streaming_enabled, source=live.source
    )


# ----------------------------------------------------------------------
# Field sessions
# ----------------------------------------------------------------------
@router.get("/fields", response_model=List[FieldStateView])
async def list_field_states(
    user: User = Depends(get_current_user),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> List[FieldStateView]:
    return [_state_view(s) for s in _engine(user, registry).list_states()]


@router.post("/fields/{field_name}/analyze", response_model=FieldAnalyzeResponse)
async def analyze_field(
    field_name: str,
    req: FieldAnalyzeRequest,
    user: User = Depends(get_current_user),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> FieldAnalyzeResponse:
    engine = _engine(user, registry)
    try:
        result = await engine.analyze(
            field_name, req.content, req.original_content, req.previous_report_content, force=req.force
        )
    except SessionExpiredError as exc:
        raise _unauthenticated(exc) from exc
    except ProviderConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return FieldAnalyzeResponse(result=result, state=_state_view(engine.get_state(field_name)))


@router.post("/fields/{field_name}/regenerate", response_model=FieldAnalyzeResponse)
async def regenerate_field(
    field_name: str,
    user: User = Depends(get_current_user),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> FieldAnalyzeResponse:
    engine = _engine(user, registry)
    try:
        result = await engine.regenerate(field_name)
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SessionExpiredError as exc:
        raise _unauthenticated(exc) from exc
    except ProviderConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return FieldAnalyzeResponse(result=result, state=_state_view(engine.get_state(field_name)))


@router.post("/fields/{field_name}/follow-up", response_model=FieldAnalyzeResponse)
async def follow_up_field(
    field_name: str,
    req: FollowUpRequest,
    user: User = Depends(get_current_user),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> FieldAnalyzeResponse:
    engine = _engine(user, registry)
    try:
        reply = await engine.send_follow_up(field_name, req.message)
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SessionExpiredError as exc:
        raise _unauthenticated(exc) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return FieldAnalyzeResponse(result=reply, state=_state_view(engine.get_state(field_name)))


@router.delete("/fields/{field_name}/conversation", status_code=status.HTTP_204_NO_CONTENT)
async def clear_field_conversation(
    field_name: str,
    user: User = Depends(get_current_user),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> None:
    _engine(user, registry).clear_conversation(field_name)


@router.delete("/fields/{field_name}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_field(
    field_name: str,
    user: User = Depends(get_current_user),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> None:
    if not _engine(user, registry).clear(field_name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Field not found")

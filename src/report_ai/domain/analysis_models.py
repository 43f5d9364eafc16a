from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]


class ChatTurn(BaseModel):
    role: Role
    content: str


class AnalyzeTextRequest(BaseModel):
    content: str = Field(min_length=1)
    field_type: str = Field(min_length=1)
    original_content: Optional[str] = None
    previous_report_content: Optional[str] = None


class AnalyzeTextResponse(BaseModel):
    content: str
    provider: str
    model: str


class ConversationRequest(BaseModel):
    field_type: str = Field(min_length=1)
    original_content: str = ""
    ai_analysis: str = Field(min_length=1)
    conversations: List[ChatTurn] = Field(default_factory=list)
    user_message: str = Field(min_length=1)


class ConversationResponse(BaseModel):
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(min_length=1)


class TokenUsageView(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatResponse(BaseModel):
    content: str
    provider: Optional[str] = None
    request_id: Optional[str] = None
    duration_ms: Optional[int] = None
    usage: Optional[TokenUsageView] = None


class SummarizeRequest(BaseModel):
    text: str = Field(min_length=10)


class SummarizeResponse(BaseModel):
    summary: str


class ProviderStatus(BaseModel):
    provider: str
    model: str
    streaming_enabled: bool
    source: str
    cache_key: Optional[str] = None
    isolated: bool = False


class SessionAISettings(BaseModel):
    realtime_provider: str
    models: Dict[str, str] = Field(default_factory=dict)


class SystemAISettings(BaseModel):
    setting_type: Literal["basic", "realtime"] = "realtime"
    provider: str
    models: Dict[str, str] = Field(default_factory=dict)
    streaming_enabled: Optional[bool] = None


class FieldAnalyzeRequest(BaseModel):
    content: str
    original_content: Optional[str] = None
    previous_report_content: Optional[str] = None
    force: bool = False


class FollowUpRequest(BaseModel):
    message: str


class ConversationMessageView(BaseModel):
    id: str
    role: str
    content: str
    timestamp: str


class FieldStateView(BaseModel):
    field_name: str
    status: str
    current_text: str
    has_run_once: bool
    last_analyzed_snapshot: Optional[str] = None
    analysis: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    conversation: List[ConversationMessageView] = Field(default_factory=list)
    conversation_loading: bool = False


class FieldAnalyzeResponse(BaseModel):
    result: Optional[str] = None
    state: Optional[FieldStateView] = None


class ReportFieldView(BaseModel):
    key: str
    label: str
    layout_requirements: str

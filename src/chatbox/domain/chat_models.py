from __future__ import annotations

import math
import re
import uuid
from datetime import UTC, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["system", "user", "assistant"]

CHAT_MODEL = "deepseek-chat"
REASONING_MODEL = "deepseek-reasoner"

DEFAULT_TEMPERATURE = 1.3
DEFAULT_MAX_TOKENS = 4096
DEFAULT_SYSTEM_MESSAGE = (
    "You are a senior full-stack architect with more than twenty years of hands-on experience. "
    "Give precise technical advice and working code."
)
DEFAULT_SESSION_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 30

_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def generate_id() -> str:
    return uuid.uuid4().hex


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    prompt_cache_hit_tokens: Optional[int] = None
    prompt_cache_miss_tokens: Optional[int] = None


class ChatMessage(BaseModel):
    """One committed turn of a conversation. Never mutated after commit."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    role: Role
    content: str = ""
    reasoning_content: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None


class ChatSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = CHAT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    system_message: str = DEFAULT_SYSTEM_MESSAGE


class ChatSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    title: str = ""
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    settings: ChatSettings = Field(default_factory=ChatSettings)


def generate_session_title(first_message: str) -> str:
    text = (first_message or "").strip()
    if not text:
        return DEFAULT_SESSION_TITLE
    title = text[:TITLE_MAX_LENGTH].rstrip()
    if len(text) > TITLE_MAX_LENGTH:
        title += "..."
    return title


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~0.6 per CJK character, ~0.3 per other character."""
    text = text or ""
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk * 0.6 + other * 0.3)


def format_token_usage(usage: Optional[TokenUsage]) -> str:
    if usage is None:
        return ""
    parts = [
        f"Total: {usage.total_tokens}",
        f"Prompt: {usage.prompt_tokens}",
        f"Completion: {usage.completion_tokens}",
    ]
    if usage.prompt_cache_hit_tokens:
        parts.append(f"Cache hit: {usage.prompt_cache_hit_tokens}")
    return " | ".join(parts)


class ChatSendRequest(BaseModel):
    content: str = Field(min_length=1)
    session_id: Optional[str] = None
    use_reasoning: bool = False
    system_prompt: Optional[str] = None
    # Template whose prompt becomes the system prompt; ignored when system_prompt is set
    prompt_id: Optional[str] = None


class ChatSessionSettingsUpdate(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_message: Optional[str] = None


class ChatSettingsUpdate(ChatSessionSettingsUpdate):
    apply_to_current: bool = False


class ChatSessionList(BaseModel):
    current_session_id: Optional[str] = None
    sessions: List[ChatSession]


class ChatModelOption(BaseModel):
    model: str
    name: str
    description: str
    max_tokens: int
    supports_reasoning: bool


class ChatSessionImportResult(BaseModel):
    imported: int
    session_ids: List[str]
    current_session_id: Optional[str] = None


class PromptCategory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    icon: str
    color: str


class PromptTemplate(BaseModel):
    """A reusable system prompt. System templates are read-only."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    prompt: str
    icon: str = "icon-user"
    category: str
    tags: List[str] = Field(default_factory=list)
    is_system: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # None means the template never expires
    expires_at: Optional[datetime] = None


class PromptTemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    prompt: str = Field(min_length=1)
    icon: Optional[str] = None
    category: str
    tags: List[str] = Field(default_factory=list)
    # Lifetime in days; None keeps the template forever
    ttl_days: Optional[int] = Field(default=30, ge=1)


class PromptTemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    prompt: Optional[str] = Field(default=None, min_length=1)
    icon: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None


class PromptImportResult(BaseModel):
    success: int
    failed: int
    errors: List[str]

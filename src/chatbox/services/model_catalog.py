"""Model catalogue and upstream endpoint resolution.

The catalogue does not talk to the upstream API; it only answers which model
a send should target and where the endpoint and credentials live, so the
selection policy stays unit-testable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional

from ..domain.chat_models import CHAT_MODEL, REASONING_MODEL


DEFAULT_BASE_URL = "https://api.deepseek.com"
CHAT_ENDPOINT = "/chat/completions"
BALANCE_ENDPOINT = "/user/balance"

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0
MAX_TOKENS_MIN = 100
MAX_TOKENS_MAX = 8192


@dataclass(frozen=True)
class ModelInfo:
    """Display and capability metadata for one upstream model."""

    model: str
    name: str
    description: str
    max_tokens: int
    supports_reasoning: bool


@dataclass(frozen=True)
class TemperaturePreset:
    value: float
    label: str
    description: str


MODEL_CONFIGS: Dict[str, ModelInfo] = {
    CHAT_MODEL: ModelInfo(
        model=CHAT_MODEL,
        name="DeepSeek-V3",
        description="General-purpose conversational model",
        max_tokens=MAX_TOKENS_MAX,
        supports_reasoning=False,
    ),
    REASONING_MODEL: ModelInfo(
        model=REASONING_MODEL,
        name="DeepSeek-R1",
        description="Model with an explicit reasoning channel",
        max_tokens=MAX_TOKENS_MAX,
        supports_reasoning=True,
    ),
}

TEMPERATURE_PRESETS: Dict[str, TemperaturePreset] = {
    "code": TemperaturePreset(0.1, "Code generation", "Precise, deterministic output"),
    "analysis": TemperaturePreset(0.8, "Data analysis", "Balanced analytical output"),
    "chat": TemperaturePreset(1.3, "General chat", "Natural conversation"),
    "translation": TemperaturePreset(0.3, "Translation", "Faithful translation"),
    "creative": TemperaturePreset(1.5, "Creative writing", "Inventive output"),
}


def supports_reasoning(model: Optional[str]) -> bool:
    info = MODEL_CONFIGS.get(model or "")
    return bool(info and info.supports_reasoning)


def resolve_model(base_model: Optional[str], use_reasoning: bool) -> str:
    """Pick the model for one send.

    Reasoning mode always targets the reasoning model; otherwise the base
    model is kept unless it is itself a reasoning model, in which case the
    plain chat model is used.
    """
    if use_reasoning:
        return REASONING_MODEL
    if not base_model or supports_reasoning(base_model) or base_model not in MODEL_CONFIGS:
        return CHAT_MODEL
    return base_model


def clamp_temperature(value: float) -> float:
    return max(TEMPERATURE_MIN, min(TEMPERATURE_MAX, float(value)))


def clamp_max_tokens(value: int) -> int:
    return max(MAX_TOKENS_MIN, min(MAX_TOKENS_MAX, int(value)))


@dataclass(frozen=True)
class UpstreamConfig:
    base_url: str
    api_key: Optional[str]

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}{CHAT_ENDPOINT}"

    @property
    def balance_url(self) -> str:
        return f"{self.base_url}{BALANCE_ENDPOINT}"


def upstream_config(env: Optional[Dict[str, str]] = None) -> UpstreamConfig:
    env = env if env is not None else os.environ
    base_url = (env.get("CHATBOX_API_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
    api_key = (env.get("CHATBOX_API_KEY") or env.get("DEEPSEEK_API_KEY") or "").strip() or None
    return UpstreamConfig(base_url=base_url, api_key=api_key)

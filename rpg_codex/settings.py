"""Application settings: API key pool, safety filter, generation parameters.

Persisted as settings.json by Storage; get_settings() there returns these
defaults merged with stored values. Extra API keys may also come from the
GEMINI_API_KEYS environment variable (comma-separated), which is how .env
files feed the key pool.
"""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

HarmCategory = Literal[
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]

HarmBlockThreshold = Literal[
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
]


class SafetySetting(BaseModel):
    category: HarmCategory
    threshold: HarmBlockThreshold = "BLOCK_NONE"


def _default_safety() -> list[SafetySetting]:
    return [
        SafetySetting(category="HARM_CATEGORY_HARASSMENT"),
        SafetySetting(category="HARM_CATEGORY_HATE_SPEECH"),
        SafetySetting(category="HARM_CATEGORY_SEXUALLY_EXPLICIT"),
        SafetySetting(category="HARM_CATEGORY_DANGEROUS_CONTENT"),
    ]


class SafetySettings(BaseModel):
    enabled: bool = False
    settings: list[SafetySetting] = Field(default_factory=_default_safety)


class AiSettings(BaseModel):
    model_name: str = "gemini-2.5-flash"
    embedding_model_name: str = "text-embedding-004"
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 8192
    thinking_budget: int = 0  # 0 disables the thinking config

    # Prompt feature flags (system instruction sections)
    enable_chain_of_thought: bool = True
    enable_codex_profiling: bool = True
    enable_dynamic_extraction: bool = True
    enable_dynamic_reference: bool = True  # codex names take part in keyword lore
    enable_relation_graphs: bool = True


class AppSettings(BaseModel):
    api_keys: list[str] = Field(default_factory=list)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    ai: AiSettings = Field(default_factory=AiSettings)


def resolve_api_keys(settings: AppSettings) -> list[str]:
    """Stored keys first, then any from GEMINI_API_KEYS. Blanks and dupes dropped."""
    keys: list[str] = []
    env_keys = os.getenv("GEMINI_API_KEYS", "").split(",")
    for key in [*settings.api_keys, *env_keys]:
        key = key.strip()
        if key and key not in keys:
            keys.append(key)
    return keys

"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, field_validator

from rpg_codex.models import InitialEntity, TemporaryRule, WorldConfig


class TurnBody(BaseModel):
    action: str


class TemporaryRulesBody(BaseModel):
    rules: list[TemporaryRule]


class CheckKeysBody(BaseModel):
    api_keys: list[str] | None = None  # None checks the configured pool


class WorldIdeaBody(BaseModel):
    idea: str
    language: str = "English"

    @field_validator("idea")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("idea must not be empty")
        return v.strip()


class WorldAssistBody(BaseModel):
    config: WorldConfig


class EntityAssistBody(BaseModel):
    config: WorldConfig
    entity: InitialEntity

"""StateDelta — the per-turn state changes the model emits in its <state> block.

The wire shape is untrusted: array-valued fields arrive as bare scalars or
objects, numbers arrive as strings, enum values drift. Everything is
normalised here, at ingestion, so the reconciliation engine only ever sees
lists of validated items:

    inventory_add / inventory_remove   list[str]
    hp_change / gold_change            int
    custom_stats_update                list[StatChange]
    time_passed                        int (minutes)
    weather_update                     WeatherType   (unknown values dropped)
    quest_update                       list[QuestUpdate]
    player_behavior_tag                list[str]
    ui_mode                            InterfaceMode (unknown values dropped)
    combat_data                        list[CombatEntity]
    merchant_data                      MerchantData
    codex_update                       list[CodexUpdate]
    suggestions                        list[str]

Individual items that fail validation are dropped with a warning; the rest
of the delta survives.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from rpg_codex.models import (
    INTERFACE_MODES,
    WEATHER_OPTIONS,
    CodexRelation,
    CombatEntity,
    InterfaceMode,
    MerchantData,
    WeatherType,
)

logger = logging.getLogger(__name__)


def one_or_many(value: Any) -> list[Any] | None:
    """Normalise a scalar-or-array field to a list. None stays None."""
    if value is None:
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return [value]


def _to_int(value: Any, field: str) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    number: float | None = None
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            pass
    if number is not None and math.isfinite(number):
        return int(round(number))
    logger.warning("Dropping non-numeric %s=%r", field, value)
    return None


def _valid_items(items: list[Any] | None, model: type[BaseModel], field: str) -> list[BaseModel] | None:
    if items is None:
        return None
    kept: list[BaseModel] = []
    for item in items:
        if isinstance(item, model):
            kept.append(item)
            continue
        try:
            kept.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning("Dropping invalid %s item %r: %s", field, item, e.errors()[0]["msg"])
    return kept


def _strings(items: list[Any] | None) -> list[str] | None:
    if items is None:
        return None
    return [str(i).strip() for i in items if i is not None and str(i).strip()]


class StatChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    value: float = Field(allow_inf_nan=False)


class QuestUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str = ""
    id: str
    title: str | None = None
    description: str | None = None
    status: str | None = None
    type: str | None = None


class CodexUpdate(BaseModel):
    """A partial CodexEntry. Only the fields the model actually sent are set."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str | None = None
    type: str | None = None
    tags: list[str] | None = None
    description: str | None = None
    relations: list[CodexRelation] | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> list[str] | None:
        return _strings(one_or_many(v))

    @field_validator("relations", mode="before")
    @classmethod
    def _relations(cls, v: Any) -> list[Any] | None:
        return _valid_items(one_or_many(v), CodexRelation, "relations")


class StateDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    inventory_add: list[str] | None = None
    inventory_remove: list[str] | None = None
    hp_change: int | None = None
    gold_change: int | None = None
    custom_stats_update: list[StatChange] | None = None
    time_passed: int | None = None
    weather_update: WeatherType | None = None
    quest_update: list[QuestUpdate] | None = None
    player_behavior_tag: list[str] | None = None
    ui_mode: InterfaceMode | None = None
    combat_data: list[CombatEntity] | None = None
    merchant_data: MerchantData | None = None
    codex_update: list[CodexUpdate] | None = None
    suggestions: list[str] | None = None

    @field_validator(
        "inventory_add", "inventory_remove", "player_behavior_tag", "suggestions",
        mode="before",
    )
    @classmethod
    def _string_lists(cls, v: Any) -> list[str] | None:
        return _strings(one_or_many(v))

    @field_validator("hp_change", "gold_change", "time_passed", mode="before")
    @classmethod
    def _ints(cls, v: Any, info: ValidationInfo) -> int | None:
        return _to_int(v, info.field_name)

    @field_validator("custom_stats_update", mode="before")
    @classmethod
    def _stats(cls, v: Any) -> list[Any] | None:
        return _valid_items(one_or_many(v), StatChange, "custom_stats_update")

    @field_validator("quest_update", mode="before")
    @classmethod
    def _quests(cls, v: Any) -> list[Any] | None:
        return _valid_items(one_or_many(v), QuestUpdate, "quest_update")

    @field_validator("combat_data", mode="before")
    @classmethod
    def _enemies(cls, v: Any) -> list[Any] | None:
        return _valid_items(one_or_many(v), CombatEntity, "combat_data")

    @field_validator("codex_update", mode="before")
    @classmethod
    def _codex(cls, v: Any) -> list[Any] | None:
        return _valid_items(one_or_many(v), CodexUpdate, "codex_update")

    @field_validator("merchant_data", mode="before")
    @classmethod
    def _merchant(cls, v: Any) -> Any:
        if isinstance(v, list):
            v = v[0] if v else None
        if v is None or isinstance(v, MerchantData):
            return v
        try:
            return MerchantData.model_validate(v)
        except ValidationError:
            logger.warning("Dropping invalid merchant_data %r", v)
            return None

    @field_validator("weather_update", mode="before")
    @classmethod
    def _weather(cls, v: Any) -> str | None:
        if v is None:
            return None
        for option in WEATHER_OPTIONS:
            if str(v).strip().lower() == option.lower():
                return option
        logger.warning("Ignoring unknown weather %r", v)
        return None

    @field_validator("ui_mode", mode="before")
    @classmethod
    def _mode(cls, v: Any) -> str | None:
        if v is None:
            return None
        mode = str(v).strip().lower()
        if mode in INTERFACE_MODES:
            return mode
        logger.warning("Ignoring unknown ui_mode %r", v)
        return None


def parse_delta(data: Any) -> StateDelta | None:
    """Validate a raw parsed <state> payload. Returns None if it is unusable."""
    if not isinstance(data, dict):
        logger.warning("State block is not a JSON object: %r", type(data).__name__)
        return None
    try:
        return StateDelta.model_validate(data)
    except ValidationError as e:
        logger.warning("State block failed validation: %s", e)
        return None

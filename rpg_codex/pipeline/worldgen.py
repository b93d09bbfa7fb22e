"""World creation: a whole WorldConfig from a one-line idea, or one field at a time.

The field assists read the partly filled config. An empty field gets a fresh
suggestion; a filled one is developed further. Free-text fields use the text
path. The world and the starting skill use the schema-constrained JSON path
and are validated into models before they are returned.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from rpg_codex.json_repair import StructuredOutputError
from rpg_codex.llm import LLM, LLMError
from rpg_codex.models import InitialEntity, Skill, WorldConfig
from rpg_codex.prompts import (
    SKILL_SCHEMA,
    WORLD_SCHEMA,
    build_bio_prompt,
    build_entity_description_prompt,
    build_entity_name_prompt,
    build_entity_personality_prompt,
    build_genre_prompt,
    build_motivation_prompt,
    build_setting_prompt,
    build_skill_prompt,
    build_world_prompt,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Whole world
# ---------------------------------------------------------------------------

async def generate_world_from_idea(idea: str, llm: LLM, language: str = "English") -> WorldConfig:
    """Generate a complete world config from a short idea.

    Rules stay with the player: any core or temporary rules in the answer are dropped.
    """
    data = await llm.generate_json(build_world_prompt(idea, language), WORLD_SCHEMA, stage="world_generate")
    if not isinstance(data, dict):
        raise StructuredOutputError("Generated world must be a JSON object", json.dumps(data))
    for key in ("core_rules", "temporary_rules"):
        data.pop(key, None)
    try:
        config = WorldConfig.model_validate(data)
    except ValidationError as e:
        raise StructuredOutputError(f"Invalid generated world: {e}", json.dumps(data)) from e
    config.writing_config.language = language
    logger.info(
        "Generated world: genre=%r entities=%d factions=%d",
        config.story_context.genre, len(config.initial_entities), len(config.world_lore.factions),
    )
    return config


# ---------------------------------------------------------------------------
# Field assists
# ---------------------------------------------------------------------------

async def _assist(llm: LLM, prompt: str, stage: str) -> str:
    text = (await llm.generate_text(prompt, stage=stage)).strip()
    if not text:
        raise LLMError("The model returned an empty suggestion.")
    return text


async def generate_genre(config: WorldConfig, llm: LLM) -> str:
    return await _assist(llm, build_genre_prompt(config), "assist_genre")


async def generate_setting(config: WorldConfig, llm: LLM) -> str:
    return await _assist(llm, build_setting_prompt(config), "assist_setting")


async def generate_character_bio(config: WorldConfig, llm: LLM) -> str:
    return await _assist(llm, build_bio_prompt(config), "assist_bio")


async def generate_character_motivation(config: WorldConfig, llm: LLM) -> str:
    return await _assist(llm, build_motivation_prompt(config), "assist_motivation")


async def generate_character_skill(config: WorldConfig, llm: LLM) -> Skill:
    """Suggest a starting skill, or refine the one already named."""
    data = await llm.generate_json(build_skill_prompt(config), SKILL_SCHEMA, stage="assist_skill")
    if not isinstance(data, dict):
        raise StructuredOutputError("Generated skill must be a JSON object", json.dumps(data))
    try:
        return Skill.model_validate(data)
    except ValidationError as e:
        raise StructuredOutputError(f"Invalid generated skill: {e}", json.dumps(data)) from e


async def generate_entity_name(config: WorldConfig, entity: InitialEntity, llm: LLM) -> str:
    return await _assist(llm, build_entity_name_prompt(config, entity), "assist_entity_name")


async def generate_entity_personality(config: WorldConfig, entity: InitialEntity, llm: LLM) -> str:
    return await _assist(llm, build_entity_personality_prompt(config, entity), "assist_entity_personality")


async def generate_entity_description(config: WorldConfig, entity: InitialEntity, llm: LLM) -> str:
    return await _assist(llm, build_entity_description_prompt(config, entity), "assist_entity_description")


WORLD_ASSISTS: dict[str, Callable[[WorldConfig, LLM], Awaitable[str | Skill]]] = {
    "genre": generate_genre,
    "setting": generate_setting,
    "bio": generate_character_bio,
    "skills": generate_character_skill,
    "motivation": generate_character_motivation,
}

ENTITY_ASSISTS: dict[str, Callable[[WorldConfig, InitialEntity, LLM], Awaitable[str]]] = {
    "name": generate_entity_name,
    "personality": generate_entity_personality,
    "description": generate_entity_description,
}

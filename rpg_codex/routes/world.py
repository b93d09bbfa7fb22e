"""World creation endpoints: generate a world from an idea, or assist one field."""

from fastapi import APIRouter, Depends, HTTPException

from rpg_codex.llm import LLM
from rpg_codex.models import Skill
from rpg_codex.pipeline.worldgen import ENTITY_ASSISTS, WORLD_ASSISTS, generate_world_from_idea

from .deps import get_llm
from .models import EntityAssistBody, WorldAssistBody, WorldIdeaBody

router = APIRouter()


@router.post("/world/generate")
async def generate_world(body: WorldIdeaBody, llm: LLM = Depends(get_llm)):
    """Generate a complete world config from a short idea."""
    config = await generate_world_from_idea(body.idea, llm, body.language)
    return config.model_dump(mode="json")


@router.post("/world/assist/{field}")
async def assist_world_field(field: str, body: WorldAssistBody, llm: LLM = Depends(get_llm)):
    """Suggest or refine one field: genre, setting, bio, skills or motivation."""
    assist = WORLD_ASSISTS.get(field)
    if assist is None:
        raise HTTPException(404, f"Unknown world field: {field}")
    value = await assist(body.config, llm)
    return {"field": field, "value": value.model_dump() if isinstance(value, Skill) else value}


@router.post("/world/entity-assist/{field}")
async def assist_entity_field(field: str, body: EntityAssistBody, llm: LLM = Depends(get_llm)):
    """Suggest or refine one initial entity field: name, personality or description."""
    assist = ENTITY_ASSISTS.get(field)
    if assist is None:
        raise HTTPException(404, f"Unknown entity field: {field}")
    return {"field": field, "value": await assist(body.config, body.entity, llm)}

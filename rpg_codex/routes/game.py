"""Active game endpoints: start, state, turn, temporary rules, codex expansion."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from rpg_codex.models import GameState, WorldConfig
from rpg_codex.session import GameSession

from .deps import get_session
from .models import TemporaryRulesBody, TurnBody

router = APIRouter()


def state_payload(state: GameState) -> dict[str, Any]:
    """GameState as JSON, without stored embedding vectors."""
    return state.model_dump(
        mode="json",
        exclude={
            "codex": {"__all__": {"embedding"}},
            "world_config": {"initial_codex": {"__all__": {"embedding"}}},
        },
    )


@router.post("/game")
async def start_game(config: WorldConfig, session: GameSession = Depends(get_session)):
    """Start a new game from a world config and generate the opening narration."""
    state = await session.start_new_game(config)
    return {"narration": state.history[-1].content, "state": state_payload(state)}


@router.get("/game")
async def get_game(session: GameSession = Depends(get_session)):
    """Get the active game state."""
    return {
        "state": state_payload(session.snapshot()),
        "suggestions": session.last_suggestions,
        "busy": session.busy,
    }


@router.delete("/game")
async def end_game(session: GameSession = Depends(get_session)):
    """End the active game. Saves are kept."""
    await session.close()
    return {"ok": True}


@router.post("/game/turn")
async def play_turn(body: TurnBody, session: GameSession = Depends(get_session)):
    """Send a player action and run one Game Master turn."""
    result = await session.play(body.action)
    return {
        "narration": result.narration,
        "suggestions": result.suggestions,
        "summarized": result.truncated_history is not None,
        "state": state_payload(session.snapshot()),
    }


@router.patch("/game/temporary-rules")
async def set_temporary_rules(body: TemporaryRulesBody, session: GameSession = Depends(get_session)):
    """Replace the mutable per-session rules."""
    state = session.set_temporary_rules(body.rules)
    return state.world_config.temporary_rules


@router.post("/game/codex/{entry_id}/expand")
async def expand_codex_entry(entry_id: str, session: GameSession = Depends(get_session)):
    """Enrich a codex entry with AI-generated detail."""
    try:
        entry = await session.expand_codex(entry_id)
    except KeyError:
        raise HTTPException(404, "Codex entry not found")
    return entry.model_dump(mode="json", exclude={"embedding"})

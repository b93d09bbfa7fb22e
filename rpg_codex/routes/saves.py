"""Save slot endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from rpg_codex.session import GameSession
from rpg_codex.storage import Storage

from .deps import get_session, get_storage
from .game import state_payload

router = APIRouter()


@router.get("/saves")
async def list_saves(storage: Storage = Depends(get_storage)):
    """List save slots, newest first."""
    return [
        {
            "save_id": slot.save_id,
            "save_date": slot.save_date,
            "preview_text": slot.preview_text,
            "character_name": slot.world_config.character.name,
            "genre": slot.world_config.story_context.genre,
        }
        for slot in storage.load_all_saves()
    ]


@router.post("/saves/{save_id}/load")
async def load_save(save_id: int, session: GameSession = Depends(get_session)):
    """Make a save slot the active game."""
    state = session.load_saved_game(save_id)
    if state is None:
        raise HTTPException(404, "Save not found")
    return {"state": state_payload(state)}


@router.delete("/saves/{save_id}")
async def delete_save(save_id: int, storage: Storage = Depends(get_storage)):
    """Delete a save slot."""
    if not storage.delete_save(save_id):
        raise HTTPException(404, "Save not found")
    return {"ok": True}

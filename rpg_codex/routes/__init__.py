"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings, key check), world (generation
and field assists), game (start, turn, temporary rules, codex expansion) and
saves (list, load, delete).

Errors raised by the pipeline are mapped to HTTP statuses by the handlers
registered in rpg_codex.app.
"""

from fastapi import APIRouter

from .game import router as game_router
from .saves import router as saves_router
from .settings import router as settings_router
from .world import router as world_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(world_router)
router.include_router(game_router)
router.include_router(saves_router)

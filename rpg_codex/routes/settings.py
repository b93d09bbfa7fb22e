"""Health check, settings and API key check endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from rpg_codex.llm import GeminiLLM, check_api_keys
from rpg_codex.settings import resolve_api_keys
from rpg_codex.storage import Storage

from .deps import get_storage
from .models import CheckKeysBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(storage: Storage = Depends(get_storage)):
    """Get app settings (API keys, safety filter, generation parameters)."""
    return storage.get_settings()


@router.patch("/settings")
async def update_settings(body: dict, storage: Storage = Depends(get_storage)):
    """Update app settings (partial merge)."""
    try:
        return storage.update_settings(body)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid settings: {e.errors()[0]['msg']}")


@router.post("/check-keys")
async def check_keys(body: CheckKeysBody, storage: Storage = Depends(get_storage)):
    """Probe each API key with a minimal request: valid, invalid or rate_limited."""
    keys = body.api_keys if body.api_keys is not None else resolve_api_keys(storage.get_settings())
    if not keys:
        raise HTTPException(400, "No API keys to check")
    return await check_api_keys(GeminiLLM(storage.get_settings), keys)

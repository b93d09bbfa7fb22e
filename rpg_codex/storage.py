"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      settings.json     ← AppSettings (defaults merged with stored values)
      saves.json        ← list of SaveSlot, newest first, at most MAX_SAVES

Saves embed a full GameState. Loading an older save fills fields it lacks
with the model defaults; a save that no longer validates is skipped.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from rpg_codex.models import GameState, SaveSlot
from rpg_codex.settings import AppSettings

logger = logging.getLogger(__name__)

MAX_SAVES = 20
PREVIEW_LENGTH = 80

_TAG_RE = re.compile(r"<[^>]*>")


def preview_text(state: GameState) -> str:
    """One-line preview of the last turn, tags stripped."""
    if not state.history:
        return "The adventure begins..."
    last = state.history[-1]
    snippet = _TAG_RE.sub("", last.content).strip()[:PREVIEW_LENGTH]
    who = "You" if last.type == "action" else "GM"
    return f"{who}: {snippet}..."


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    @property
    def base_path(self) -> Path:
        return self._base

    def _settings_file(self) -> Path:
        return self._base / "settings.json"

    def _saves_file(self) -> Path:
        return self._base / "saves.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> AppSettings:
        """Read settings, returning defaults merged with stored values."""
        path = self._settings_file()
        if not path.is_file():
            return AppSettings()
        try:
            return AppSettings.model_validate(self._read_json(path))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Invalid settings.json, using defaults: %s", e)
            return AppSettings()

    def update_settings(self, fields: dict[str, Any]) -> AppSettings:
        """Merge fields into settings and persist. Returns full settings.

        api_keys is replaced wholesale; safety and ai are merged key by key.
        Raises pydantic.ValidationError if the merged result is invalid.
        """
        data = self.get_settings().model_dump()
        if "api_keys" in fields:
            data["api_keys"] = fields["api_keys"]
        for group in ("safety", "ai"):
            if isinstance(fields.get(group), dict):
                data[group].update(fields[group])
        settings = AppSettings.model_validate(data)
        self._write_json(self._settings_file(), settings.model_dump())
        return settings

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def _read_raw_saves(self) -> list[dict[str, Any]]:
        path = self._saves_file()
        if not path.is_file():
            return []
        try:
            data = self._read_json(path)
        except json.JSONDecodeError as e:
            logger.error("Cannot read %s: %s", path, e)
            return []
        if not isinstance(data, list):
            return []
        return [s for s in data if isinstance(s, dict)]

    def load_all_saves(self) -> list[SaveSlot]:
        """All save slots, newest first. Slots that fail validation are skipped."""
        slots = []
        for raw in self._read_raw_saves():
            try:
                slots.append(SaveSlot.model_validate(raw))
            except ValidationError as e:
                logger.warning("Skipping unreadable save %r: %s", raw.get("save_id"), e)
        return slots

    def get_save(self, save_id: int) -> SaveSlot | None:
        for slot in self.load_all_saves():
            if slot.save_id == save_id:
                return slot
        return None

    def save_game(self, state: GameState, now: datetime | None = None) -> SaveSlot:
        """Prepend a new save slot for state and cap the list at MAX_SAVES."""
        now = now or datetime.now(timezone.utc)
        raw = self._read_raw_saves()
        save_id = int(now.timestamp() * 1000)
        newest = max((s.get("save_id", 0) for s in raw), default=0)
        if save_id <= newest:
            save_id = newest + 1
        slot = SaveSlot(
            **state.model_dump(include=set(GameState.model_fields)),
            save_id=save_id,
            save_date=now.isoformat(),
            preview_text=preview_text(state),
        )
        saves = [slot.model_dump(mode="json"), *raw][:MAX_SAVES]
        self._write_json(self._saves_file(), saves)
        return slot

    def delete_save(self, save_id: int) -> bool:
        raw = self._read_raw_saves()
        kept = [s for s in raw if s.get("save_id") != save_id]
        if len(kept) == len(raw):
            return False
        self._write_json(self._saves_file(), kept)
        return True

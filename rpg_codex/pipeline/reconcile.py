"""State reconciliation — applies a StateDelta to a GameState.

apply_delta() is pure: it deep-copies the state, applies every present delta
field under the merge and clamping rules below, and returns the copy. Absent
fields leave the state untouched.

  inventory     add appends (duplicates allowed); remove drops every exact match
  hp            clamped to [0, max_hp]
  gold          clamped to [0, inf)
  custom stats  value += change, clamped to [0, max]; unknown ids ignored
  time          minute → hour → day (30/month) → month (12/year) carry
  weather       overwritten (validated at ingestion)
  ui mode       adventure | combat | exchange, each with its own payload
  quests        add is idempotent by id; update patches status by id
  codex         upsert by id; shallow merge; new entries flagged is_new
  behaviour     tags appended
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from rpg_codex.delta import CodexUpdate, QuestUpdate, StatChange, StateDelta
from rpg_codex.models import (
    CODEX_TYPES,
    DEFAULT_CODEX_TYPE,
    CharacterConfig,
    CodexEntry,
    GameState,
    Quest,
    WorldTime,
)

logger = logging.getLogger(__name__)

MINUTES_PER_HOUR = 60
HOURS_PER_DAY = 24
DAYS_PER_MONTH = 30
MONTHS_PER_YEAR = 12

QUEST_STATUSES = ("active", "completed", "failed")
QUEST_TYPES = ("main", "side")


def apply_delta(state: GameState, delta: StateDelta | None, *, now: datetime | None = None) -> GameState:
    """Return a new GameState with delta applied. `now` stamps codex updates."""
    new = state.model_copy(deep=True)
    if delta is None:
        return new

    character = new.world_config.character
    _apply_inventory(character, delta)

    if delta.hp_change is not None:
        character.hp = _clamp(character.hp + delta.hp_change, 0, character.max_hp)
    if delta.gold_change is not None:
        character.gold = max(0, character.gold + delta.gold_change)
    if delta.custom_stats_update:
        _apply_stats(character, delta.custom_stats_update)

    if delta.time_passed is not None and delta.time_passed > 0:
        new.world_time = advance_time(new.world_time, delta.time_passed)
    if delta.weather_update is not None:
        new.weather = delta.weather_update

    _apply_mode(new, delta)

    if delta.quest_update:
        _apply_quests(new.quest_log, delta.quest_update)
    if delta.player_behavior_tag:
        new.player_analysis.behavior_tags.extend(delta.player_behavior_tag)
    if delta.codex_update:
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        new.codex = upsert_codex(new.codex, delta.codex_update, stamp)

    return new


def _clamp(value, low, high):
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Character
# ---------------------------------------------------------------------------

def _apply_inventory(character: CharacterConfig, delta: StateDelta) -> None:
    if delta.inventory_add:
        character.inventory.extend(delta.inventory_add)
    if delta.inventory_remove:
        removed = set(delta.inventory_remove)
        character.inventory = [item for item in character.inventory if item not in removed]


def _apply_stats(character: CharacterConfig, updates: list[StatChange]) -> None:
    stats = {s.id: s for s in character.custom_stats}
    for change in updates:
        stat = stats.get(change.id)
        if stat is None:
            logger.warning("Ignoring update for unknown stat %r", change.id)
            continue
        stat.value = _clamp(stat.value + change.value, 0, stat.max)


# ---------------------------------------------------------------------------
# World time
# ---------------------------------------------------------------------------

def advance_time(t: WorldTime, minutes: int) -> WorldTime:
    """Add minutes to a world time. Day and month are 1-based."""
    total = t.minute + minutes
    minute, carry = total % MINUTES_PER_HOUR, total // MINUTES_PER_HOUR

    total = t.hour + carry
    hour, carry = total % HOURS_PER_DAY, total // HOURS_PER_DAY

    total = t.day - 1 + carry
    day, carry = total % DAYS_PER_MONTH + 1, total // DAYS_PER_MONTH

    total = t.month - 1 + carry
    month, carry = total % MONTHS_PER_YEAR + 1, total // MONTHS_PER_YEAR

    return WorldTime(year=t.year + carry, month=month, day=day, hour=hour, minute=minute)


# ---------------------------------------------------------------------------
# Interface mode
# ---------------------------------------------------------------------------

def _apply_mode(state: GameState, delta: StateDelta) -> None:
    mode = delta.ui_mode
    if mode is None:
        # Payload refresh without a mode switch
        if state.interface_mode == "combat" and delta.combat_data is not None:
            state.active_enemies = list(delta.combat_data)
        if state.interface_mode == "exchange" and delta.merchant_data is not None:
            state.active_merchant = delta.merchant_data
        return

    state.interface_mode = mode
    if mode == "combat":
        if delta.combat_data is not None:
            state.active_enemies = list(delta.combat_data)
        state.active_merchant = None
    elif mode == "exchange":
        if delta.merchant_data is not None:
            state.active_merchant = delta.merchant_data
        state.active_enemies = []
    else:
        state.active_enemies = []
        state.active_merchant = None


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------

def _apply_quests(quest_log: list[Quest], updates: list[QuestUpdate]) -> None:
    by_id = {q.id: q for q in quest_log}
    for update in updates:
        action = update.action.strip().lower()
        if action == "add":
            if update.id in by_id:
                continue
            quest = Quest(
                id=update.id,
                title=update.title or update.id,
                description=update.description or "",
                status=update.status if update.status in QUEST_STATUSES else "active",
                type=update.type if update.type in QUEST_TYPES else "side",
            )
            quest_log.append(quest)
            by_id[quest.id] = quest
        elif action == "update":
            quest = by_id.get(update.id)
            if quest is None:
                logger.warning("Ignoring update for unknown quest %r", update.id)
                continue
            if update.status in QUEST_STATUSES:
                quest.status = update.status
            elif update.status is not None:
                logger.warning("Ignoring unknown quest status %r", update.status)
            if update.title:
                quest.title = update.title
            if update.description:
                quest.description = update.description
        else:
            logger.warning("Ignoring quest_update with unknown action %r", update.action)


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------

def upsert_codex(codex: list[CodexEntry], updates: list[CodexUpdate], stamp: str) -> list[CodexEntry]:
    """Merge partial entries into the codex by id. Returns a new list."""
    result = list(codex)
    index = {entry.id: i for i, entry in enumerate(result)}

    for update in updates:
        if not update.id or not update.name:
            logger.warning("Dropping codex update without id or name: %r", update)
            continue
        fields = {
            k: v for k, v in update.model_dump(exclude_unset=True).items() if v is not None
        }
        entry_type = fields.get("type")
        if entry_type is not None and entry_type not in CODEX_TYPES:
            matched = next((t for t in CODEX_TYPES if t.lower() == str(entry_type).lower()), None)
            if matched is None:
                logger.warning("Unknown codex type %r for %r", entry_type, update.id)
                fields.pop("type")
            else:
                fields["type"] = matched

        i = index.get(update.id)
        try:
            if i is not None:
                before = result[i].model_dump()
                merged = {**before, **fields, "last_updated": stamp}
                if any(merged[k] != before[k] for k in ("name", "description", "tags")):
                    merged["embedding"] = None  # stale once the embedded text changes
                result[i] = CodexEntry.model_validate(merged)
            else:
                fields.setdefault("type", DEFAULT_CODEX_TYPE)
                entry = CodexEntry.model_validate({**fields, "last_updated": stamp, "is_new": True})
                index[entry.id] = len(result)
                result.append(entry)
        except ValidationError as e:
            logger.warning("Dropping invalid codex update %r: %s", update.id, e)
    return result

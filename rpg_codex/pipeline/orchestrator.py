"""Pipeline orchestrator — runs one Game Master turn end-to-end.

Turn flow:
  1. Summarize: fold the oldest turns into the running summary once the
     history is too long (failure keeps the full history).
  2. Retrieve: keyword + vector lore for the latest player action.
  3. Build the system instruction and the turn prompt (config, summary,
     lore, world-state snapshot, temporary rules, history).
  4. Generate the narration through the gateway.
  5. Parse the last <state> block into a StateDelta and strip every state
     block, <thought> reasoning and <exp> highlight tags from the visible text.

The orchestrator never mutates the game state; it returns a TurnResult and
the session applies the delta.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import BaseModel, ValidationError

from rpg_codex.delta import CodexUpdate, StateDelta, parse_delta
from rpg_codex.json_repair import StructuredOutputError, extract_json
from rpg_codex.llm import LLM, LLMError
from rpg_codex.models import CodexEntry, GameState, GameTurn, WorldConfig
from rpg_codex.pipeline.lore import LoreRetriever, build_lore_context
from rpg_codex.pipeline.summarizer import maybe_compress
from rpg_codex.prompts import (
    CODEX_EXPAND_SCHEMA,
    build_codex_expand_prompt,
    build_opening_prompt,
    build_system_instruction,
    build_turn_prompt,
)
from rpg_codex.settings import AppSettings

logger = logging.getLogger(__name__)

_STATE_RE = re.compile(r"<state>(.*?)</state>", re.DOTALL | re.IGNORECASE)
_OPEN_STATE_RE = re.compile(r"<state>(.*)\Z", re.DOTALL | re.IGNORECASE)
_THOUGHT_RE = re.compile(r"<thought>.*?(?:</thought>|\Z)", re.DOTALL | re.IGNORECASE)
_EXP_RE = re.compile(r"</?exp>", re.IGNORECASE)
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class TurnResult(BaseModel):
    narration: str
    new_summary: str
    truncated_history: list[GameTurn] | None = None
    state_delta: StateDelta | None = None

    @property
    def suggestions(self) -> list[str]:
        if self.state_delta is None:
            return []
        return self.state_delta.suggestions or []


# ---------------------------------------------------------------------------
# Narration parsing
# ---------------------------------------------------------------------------

def parse_narration(raw: str) -> tuple[str, StateDelta | None]:
    """Split raw model output into (visible narration, state delta).

    The last <state> block wins. An unclosed trailing <state> takes the rest
    of the text as its payload. An unparseable payload yields no delta.
    """
    payloads = _STATE_RE.findall(raw)
    text = _STATE_RE.sub("", raw)
    tail = _OPEN_STATE_RE.search(text)
    if tail:
        payloads.append(tail.group(1))
        text = text[: tail.start()]

    delta = None
    if payloads:
        try:
            delta = parse_delta(extract_json(payloads[-1]))
        except StructuredOutputError as e:
            logger.warning("Ignoring unparseable <state> block: %s", e)

    text = _THOUGHT_RE.sub("", text)
    text = _EXP_RE.sub("", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip(), delta


# ---------------------------------------------------------------------------
# Opening and turns
# ---------------------------------------------------------------------------

async def start_game(config: WorldConfig, llm: LLM, settings: AppSettings | None = None) -> str:
    """Generate the opening narration for a new game."""
    settings = settings or AppSettings()
    raw = await llm.generate_text(
        build_opening_prompt(config),
        build_system_instruction(config, settings),
        stage="opening",
    )
    narration, _ = parse_narration(raw)
    if not narration:
        raise LLMError("The model returned no opening narration.")
    return narration


async def play_turn(
    config: WorldConfig,
    history: list[GameTurn],
    summary: str,
    game_state: GameState,
    *,
    llm: LLM,
    retriever: LoreRetriever | None = None,
    settings: AppSettings | None = None,
) -> TurnResult:
    """Run one turn. `history` must end with the player's action."""
    if not history or history[-1].type != "action":
        raise ValueError("History must end with the player's action")
    settings = settings or AppSettings()

    # 1. Summarize
    compressed = await maybe_compress(history, summary, llm)
    working = compressed.history
    action = working[-1].content

    # 2. Retrieve
    lore = await build_lore_context(
        config, working[:-1], action, game_state.codex,
        retriever=retriever,
        include_codex=settings.ai.enable_dynamic_reference,
    )

    # 3–4. Prompt and generate
    system_instruction = build_system_instruction(config, settings)
    prompt = build_turn_prompt(config, game_state, working, compressed.summary, lore, settings)
    raw = await llm.generate_text(prompt, system_instruction, stage="narrator")

    # 5. Parse
    narration, delta = parse_narration(raw)
    if not narration:
        raise LLMError("The model returned only hidden content and no narration.")
    logger.info(
        "Turn complete: narration_len=%d delta=%s truncated=%s",
        len(narration), delta is not None, compressed.truncated,
    )
    return TurnResult(
        narration=narration,
        new_summary=compressed.summary,
        truncated_history=compressed.history if compressed.truncated else None,
        state_delta=delta,
    )


# ---------------------------------------------------------------------------
# Codex expansion
# ---------------------------------------------------------------------------

async def expand_codex_entry(config: WorldConfig, entry: CodexEntry, llm: LLM) -> CodexUpdate:
    """Ask the model to enrich a codex entry. Returns a partial update for the upsert.

    Tags and relations are merged with the existing ones; the description is replaced.
    """
    data = await llm.generate_json(
        build_codex_expand_prompt(config, entry), CODEX_EXPAND_SCHEMA, stage="codex_expand"
    )
    if not isinstance(data, dict):
        raise StructuredOutputError("Codex expansion must be a JSON object", json.dumps(data))
    try:
        expansion = CodexUpdate.model_validate(data)
    except ValidationError as e:
        raise StructuredOutputError(f"Invalid codex expansion: {e}", json.dumps(data)) from e

    tags = list(entry.tags)
    for tag in expansion.tags or []:
        if tag not in tags:
            tags.append(tag)
    relations = list(entry.relations)
    known = {r.target_name.lower() for r in relations}
    for rel in expansion.relations or []:
        if rel.target_name.lower() not in known:
            relations.append(rel)
            known.add(rel.target_name.lower())

    return CodexUpdate(
        id=entry.id,
        name=entry.name,
        description=expansion.description or entry.description,
        tags=tags,
        relations=relations,
    )

"""Progressive summarization keeps the conversational context bounded."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from rpg_codex.llm import LLM, LLMError
from rpg_codex.models import GameTurn
from rpg_codex.prompts import build_summary_prompt

logger = logging.getLogger(__name__)

SUMMARIZE_THRESHOLD = 12  # compress once history is longer than this
SUMMARIZE_BATCH = 6       # oldest turns folded into the summary


class CompressResult(BaseModel):
    history: list[GameTurn]
    summary: str
    truncated: bool = False


async def maybe_compress(history: list[GameTurn], current_summary: str, llm: LLM) -> CompressResult:
    """Fold the oldest turns into the running summary when history grows too long.

    On a gateway failure the full history is kept for this turn; the next
    turn tries again.
    """
    if len(history) <= SUMMARIZE_THRESHOLD:
        return CompressResult(history=list(history), summary=current_summary)

    old, keep = history[:SUMMARIZE_BATCH], history[SUMMARIZE_BATCH:]
    try:
        summary = await llm.generate_text(build_summary_prompt(old, current_summary), stage="summarizer")
    except LLMError as e:
        logger.warning("Summarization failed, using full history this turn: %s", e)
        return CompressResult(history=list(history), summary=current_summary)

    logger.info("Summarized %d old turns; %d kept", len(old), len(keep))
    return CompressResult(history=list(keep), summary=summary.strip(), truncated=True)

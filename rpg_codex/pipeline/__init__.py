"""Game-turn pipeline: summarize → retrieve → generate → parse → reconcile, plus world creation."""

from .lore import LoreRetriever, build_lore_context, match_keywords  # noqa: F401
from .orchestrator import TurnResult, expand_codex_entry, parse_narration, play_turn, start_game  # noqa: F401
from .reconcile import advance_time, apply_delta, upsert_codex  # noqa: F401
from .summarizer import CompressResult, maybe_compress  # noqa: F401
from .worldgen import ENTITY_ASSISTS, WORLD_ASSISTS, generate_world_from_idea  # noqa: F401

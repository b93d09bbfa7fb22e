import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# The module-level app in rpg_codex.app must not touch ./data during tests
os.environ["DATA_DIR"] = str(TEST_DATA_DIR)

from rpg_codex.models import (  # noqa: E402
    AdvancedRules,
    CharacterConfig,
    CustomStat,
    Faction,
    GameState,
    GameTurn,
    InitialEntity,
    ProgressionSystem,
    Rank,
    RankRequirement,
    Relationship,
    StoryContext,
    WorldConfig,
    WorldLore,
)
from rpg_codex.storage import Storage  # noqa: E402


@pytest.fixture(autouse=True)
def clean_test_data(monkeypatch):
    """Wipe data-tests/ before every test and ignore keys from a developer .env."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    monkeypatch.delenv("GEMINI_API_KEYS", raising=False)
    yield


# ---------------------------------------------------------------------------
# Scripted gateway
# ---------------------------------------------------------------------------

def letter_vector(text: str) -> list[float]:
    """Deterministic 26-dim bag-of-letters embedding."""
    vec = [0.0] * 26
    for ch in text.lower():
        if "a" <= ch <= "z":
            vec[ord(ch) - ord("a")] += 1.0
    return vec


class StubLLM:
    """Gateway stand-in: returns canned responses in order and records every call.

    A response that is an Exception instance is raised instead of returned.
    Embeddings come from `embeddings` (exact text → vector) or letter_vector().
    """

    def __init__(self, responses=(), json_responses=(), embeddings=None, embed_error=None):
        self.responses = list(responses)
        self.json_responses = list(json_responses)
        self.embeddings = embeddings or {}
        self.embed_error = embed_error
        self.calls: list[dict] = []
        self.embed_calls: list[str] = []

    def _next(self, queue, stage):
        if not queue:
            raise AssertionError(f"Unexpected LLM call at stage {stage!r}")
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def generate_text(self, prompt, system_instruction=None, *, stage="text"):
        self.calls.append({"stage": stage, "prompt": prompt, "system": system_instruction})
        return self._next(self.responses, stage)

    async def generate_json(self, prompt, schema, *, stage="json"):
        self.calls.append({"stage": stage, "prompt": prompt, "schema": schema})
        return self._next(self.json_responses, stage)

    async def embed(self, text):
        self.embed_calls.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return self.embeddings.get(text) or letter_vector(text)

    @property
    def stages(self) -> list[str]:
        return [c["stage"] for c in self.calls]

    def prompt(self, index: int) -> str:
        return self.calls[index]["prompt"]


@pytest.fixture
def make_llm():
    """Factory fixture: make_llm(responses, json_responses=..., ...) → StubLLM."""
    return StubLLM


# ---------------------------------------------------------------------------
# World fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def world_config() -> WorldConfig:
    return WorldConfig(
        story_context=StoryContext(genre="Dark fantasy", setting="The marsh town of Greyhollow"),
        world_lore=WorldLore(
            history="The old kingdom drowned a century ago.",
            factions=[Faction(name="Lantern Guild", description="Keepers of the marsh lights.")],
        ),
        character=CharacterConfig(
            name="Ilsa",
            personality="Curious",
            inventory=["Lantern", "Rope"],
            relationships=[Relationship(name="Brother Aldo", type="Mentor", description="A retired monk.")],
            hp=80,
            max_hp=100,
            gold=20,
            custom_stats=[
                CustomStat(id="mana", name="Mana", value=30, max=50),
                CustomStat(id="sanity", name="Sanity", value=90, max=100),
            ],
        ),
        starting_scenario="Arriving at the ferry at dusk",
        initial_entities=[
            InitialEntity(name="Old Bram", type="NPC", personality="Gruff", description="The ferryman."),
        ],
        progression_system=ProgressionSystem(
            enabled=True,
            name="Lantern Ranks",
            ranks=[
                Rank(id="r1", name="Wick", description="A novice."),
                Rank(id="r2", name="Flame", requirements=[RankRequirement(stat_id="mana", value=45)]),
            ],
        ),
        advanced_rules=AdvancedRules(enable_crafting_system=True),
    )


@pytest.fixture
def game_state(world_config) -> GameState:
    return GameState(
        world_config=world_config,
        history=[GameTurn(type="narration", content="The ferry creaks out of the fog.")],
    )

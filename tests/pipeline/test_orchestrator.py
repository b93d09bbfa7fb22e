"""Tests for rpg_codex.pipeline.orchestrator — opening, turns and codex expansion.

The gateway is the scripted StubLLM from conftest; every test asserts on the
stages it was called with and the prompts it received.
"""

import pytest

from rpg_codex.json_repair import StructuredOutputError
from rpg_codex.llm import LLMError
from rpg_codex.models import CodexEntry, CodexRelation, GameTurn
from rpg_codex.pipeline.orchestrator import (
    expand_codex_entry,
    parse_narration,
    play_turn,
    start_game,
)
from rpg_codex.settings import AiSettings, AppSettings


def _with_action(game_state, action: str) -> list[GameTurn]:
    return [*game_state.history, GameTurn(type="action", content=action)]


# ---------------------------------------------------------------------------
# parse_narration
# ---------------------------------------------------------------------------

class TestParseNarration:
    def test_plain_text(self):
        assert parse_narration("The fog lifts.") == ("The fog lifts.", None)

    def test_state_block_extracted_and_hidden(self):
        raw = 'Bram takes your coin.\n<state>{"gold_change": -2, "suggestions": ["Board"]}</state>'
        text, delta = parse_narration(raw)
        assert text == "Bram takes your coin."
        assert delta.gold_change == -2
        assert delta.suggestions == ["Board"]

    def test_last_state_block_wins(self):
        raw = 'A<state>{"hp_change": -1}</state>B<state>{"hp_change": -7}</state>'
        text, delta = parse_narration(raw)
        assert text == "AB"
        assert delta.hp_change == -7

    def test_overflowing_number_keeps_narration(self):
        text, delta = parse_narration('The wolf bites.\n<state>{"hp_change": 1e999, "gold_change": 4}</state>')
        assert text == "The wolf bites."
        assert delta.hp_change is None
        assert delta.gold_change == 4

    def test_unclosed_trailing_block(self):
        text, delta = parse_narration('The bell rings.\n<state>\n{"time_passed": 15}\n')
        assert text == "The bell rings."
        assert delta.time_passed == 15

    def test_thought_and_exp_stripped(self):
        raw = "<thought>Three branches...</thought>\n\n\n\n<exp>Crack!</exp> The oar snaps."
        text, _ = parse_narration(raw)
        assert text == "Crack! The oar snaps."

    def test_unclosed_thought_stripped(self):
        text, _ = parse_narration("The lantern gutters.\n<thought>still planning")
        assert text == "The lantern gutters."

    def test_unparseable_state_keeps_narration(self):
        text, delta = parse_narration("Rain falls.<state>not json at all</state>")
        assert text == "Rain falls."
        assert delta is None

    def test_malformed_array_repaired(self):
        raw = 'Text.<state>{"codex_update": {"id": "a", "name": "A"}, {"id": "b", "name": "B"}}</state>'
        _, delta = parse_narration(raw)
        assert [c.id for c in delta.codex_update] == ["a", "b"]


# ---------------------------------------------------------------------------
# start_game
# ---------------------------------------------------------------------------

class TestStartGame:
    async def test_opening(self, world_config, make_llm):
        llm = make_llm(responses=["<thought>set the scene</thought>Dusk falls over Greyhollow. What do you do?"])
        narration = await start_game(world_config, llm)
        assert narration == "Dusk falls over Greyhollow. What do you do?"
        assert llm.stages == ["opening"]
        assert "Arriving at the ferry at dusk" in llm.prompt(0)
        assert "Game Master" in llm.calls[0]["system"]

    async def test_empty_opening_is_error(self, world_config, make_llm):
        llm = make_llm(responses=["<thought>only thinking</thought>"])
        with pytest.raises(LLMError):
            await start_game(world_config, llm)


# ---------------------------------------------------------------------------
# play_turn
# ---------------------------------------------------------------------------

class TestPlayTurn:
    async def test_normal_turn(self, world_config, game_state, make_llm):
        raw = (
            "Bram grunts and takes the coin. Where to?\n"
            '<state>{"gold_change": -2, "time_passed": 30, "suggestions": ["Cross", "Wait"]}</state>'
        )
        llm = make_llm(responses=[raw])
        history = _with_action(game_state, "I pay Old Bram for passage")

        result = await play_turn(world_config, history, "", game_state, llm=llm)

        assert result.narration == "Bram grunts and takes the coin. Where to?"
        assert result.state_delta.gold_change == -2
        assert result.suggestions == ["Cross", "Wait"]
        assert result.truncated_history is None
        assert result.new_summary == ""
        assert llm.stages == ["narrator"]

        prompt = llm.prompt(0)
        assert "[NPC] Old Bram: The ferryman." in prompt
        assert "PLAYER:\nI pay Old Bram for passage" in prompt
        assert "--- CURRENT WORLD STATE ---" in prompt

    async def test_history_must_end_with_action(self, world_config, game_state, make_llm):
        with pytest.raises(ValueError):
            await play_turn(world_config, game_state.history, "", game_state, llm=make_llm())

    async def test_long_history_summarized_first(self, world_config, game_state, make_llm):
        kinds = ("action", "narration")
        history = [GameTurn(type=kinds[i % 2], content=f"turn {i}") for i in range(13)]
        llm = make_llm(responses=["Ilsa reached the far bank.", "The reeds part."])

        result = await play_turn(world_config, history, "", game_state, llm=llm)

        assert llm.stages == ["summarizer", "narrator"]
        assert result.new_summary == "Ilsa reached the far bank."
        assert len(result.truncated_history) == 7
        assert result.truncated_history[-1].content == "turn 12"
        assert "STORY SO FAR" in llm.prompt(1)
        assert "turn 0" not in llm.prompt(1).split("Most recent story events:")[1]

    async def test_summarizer_failure_keeps_history(self, world_config, game_state, make_llm):
        kinds = ("action", "narration")
        history = [GameTurn(type=kinds[i % 2], content=f"turn {i}") for i in range(13)]
        llm = make_llm(responses=[LLMError("busy"), "The reeds part."])
        result = await play_turn(world_config, history, "Before.", game_state, llm=llm)
        assert result.truncated_history is None
        assert result.new_summary == "Before."

    async def test_narrator_failure_propagates(self, world_config, game_state, make_llm):
        llm = make_llm(responses=[LLMError("blocked")])
        with pytest.raises(LLMError):
            await play_turn(world_config, _with_action(game_state, "I wait"), "", game_state, llm=llm)

    async def test_only_hidden_content_is_error(self, world_config, game_state, make_llm):
        llm = make_llm(responses=['<state>{"hp_change": 1}</state>'])
        with pytest.raises(LLMError):
            await play_turn(world_config, _with_action(game_state, "I wait"), "", game_state, llm=llm)

    async def test_dynamic_reference_off_hides_codex_keywords(self, world_config, game_state, make_llm):
        game_state.codex = [CodexEntry(id="mill", name="Sunken Mill", description="A drowned mill.")]
        settings = AppSettings(ai=AiSettings(enable_dynamic_reference=False))
        llm = make_llm(responses=["Nothing stirs."])
        await play_turn(
            world_config, _with_action(game_state, "I row to the sunken mill"), "", game_state,
            llm=llm, settings=settings,
        )
        assert "Sunken Mill: A drowned mill." not in llm.prompt(0)


# ---------------------------------------------------------------------------
# expand_codex_entry
# ---------------------------------------------------------------------------

class TestExpandCodex:
    async def test_merges_tags_and_relations(self, world_config, make_llm):
        entry = CodexEntry(
            id="npc_bram", name="Old Bram", type="Character", tags=["Ferryman"],
            description="The ferryman.",
            relations=[CodexRelation(target_name="Ilsa", type="Passenger")],
        )
        llm = make_llm(json_responses=[{
            "description": "A ferryman who lost his son to the marsh.",
            "tags": ["Ferryman", "Grieving"],
            "relations": [
                {"target_name": "ilsa", "type": "Friend"},
                {"target_name": "Lantern Guild", "type": "Former member"},
            ],
        }])

        update = await expand_codex_entry(world_config, entry, llm)

        assert update.id == "npc_bram"
        assert update.name == "Old Bram"
        assert update.description == "A ferryman who lost his son to the marsh."
        assert update.tags == ["Ferryman", "Grieving"]
        assert [r.target_name for r in update.relations] == ["Ilsa", "Lantern Guild"]
        assert llm.stages == ["codex_expand"]
        assert llm.calls[0]["schema"]["required"] == ["description", "tags"]

    async def test_missing_description_keeps_old(self, world_config, make_llm):
        entry = CodexEntry(id="mill", name="Sunken Mill", description="A drowned mill.")
        llm = make_llm(json_responses=[{"tags": ["Ruin"]}])
        update = await expand_codex_entry(world_config, entry, llm)
        assert update.description == "A drowned mill."

    async def test_non_object_rejected(self, world_config, make_llm):
        entry = CodexEntry(id="mill", name="Sunken Mill")
        llm = make_llm(json_responses=[["not", "an", "object"]])
        with pytest.raises(StructuredOutputError):
            await expand_codex_entry(world_config, entry, llm)

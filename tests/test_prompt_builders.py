"""Tests for rpg_codex.prompts — Handlebars rendering and prompt builders."""

import pytest

from rpg_codex.models import (
    CombatEntity,
    CodexEntry,
    GameTurn,
    Quest,
    TemporaryRule,
    WorldTime,
)
from rpg_codex.prompts import (
    PromptError,
    build_codex_expand_prompt,
    build_opening_prompt,
    build_summary_prompt,
    build_system_instruction,
    build_turn_prompt,
    config_json,
    content_directives,
    format_history,
    format_world_time,
    progression_status,
    render_prompt,
    world_state_snapshot,
)
from rpg_codex.settings import AiSettings, AppSettings, SafetySettings


# ---------------------------------------------------------------------------
# render_prompt
# ---------------------------------------------------------------------------

class TestRenderPrompt:
    def test_triple_stash_not_escaped(self):
        assert render_prompt("{{{text}}}", {"text": "<exp>Boom!</exp> & co"}) == "<exp>Boom!</exp> & co"

    def test_join_helper(self):
        assert render_prompt('{{{join items "; "}}}', {"items": ["a", "b"]}) == "a; b"

    def test_join_default_separator(self):
        assert render_prompt("{{{join items}}}", {"items": ["x", "y"]}) == "x, y"

    def test_broken_template(self):
        with pytest.raises(PromptError):
            render_prompt("{{> missing_partial}}", {})


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------

class TestFragments:
    def test_world_time(self):
        assert format_world_time(WorldTime(year=3, month=2, day=7, hour=9, minute=5)) == "Day 7, Month 2, Year 3, 09:05"

    def test_format_history_labels(self):
        text = format_history([
            GameTurn(type="narration", content="The fog lifts."),
            GameTurn(type="action", content="I row ashore."),
        ])
        assert text == "GAME MASTER:\nThe fog lifts.\n\nPLAYER:\nI row ashore."

    def test_progression_unmet(self, world_config):
        status = progression_status(world_config)
        assert status["system"] == "Lantern Ranks"
        assert status["current"] == "Wick: A novice."
        assert status["next"] == "Flame"
        assert status["unmet"] == ["Mana: 30/45"]

    def test_progression_met(self, world_config):
        world_config.character.custom_stats[0].value = 45
        assert progression_status(world_config)["unmet"] == []

    def test_progression_top_rank(self, world_config):
        world_config.character.current_rank_index = 1
        status = progression_status(world_config)
        assert status["next"] is None

    def test_progression_disabled(self, world_config):
        world_config.progression_system.enabled = False
        assert progression_status(world_config) is None

    def test_content_directives_need_adult_and_no_safety(self, world_config):
        world_config.allow_adult_content = True
        world_config.violence_level = "realistic"
        world_config.story_tone = "dark"
        directives = content_directives(world_config, AppSettings())
        assert directives[0].startswith("Violence: Describe violence realistically")
        assert directives[1].startswith("Story tone: Focus on dark themes")
        safe = AppSettings(safety=SafetySettings(enabled=True))
        assert content_directives(world_config, safe) == []

    def test_content_directives_off_by_default(self, world_config):
        world_config.violence_level = "extreme"
        assert content_directives(world_config, AppSettings()) == []

    def test_config_json_omits_temporary_rules_and_embeddings(self, world_config):
        world_config.temporary_rules = [TemporaryRule(text="No magic today")]
        world_config.initial_codex = [CodexEntry(id="bram", name="Old Bram", embedding=[0.1])]
        dumped = config_json(world_config)
        assert "No magic today" not in dumped
        assert "embedding" not in dumped
        assert "Old Bram" in dumped

    def test_world_state_snapshot(self, game_state):
        game_state.quest_log = [
            Quest(id="q1", title="Cross the marsh"),
            Quest(id="q2", title="Old news", status="completed"),
        ]
        game_state.interface_mode = "combat"
        game_state.active_enemies = [CombatEntity(name="Bog Wight", hp=7, max_hp=12)]
        text = world_state_snapshot(game_state)
        assert "- Time: Day 1, Month 1, Year 1, 08:00" in text
        assert "- Active quests: Cross the marsh\n" in text
        assert "Old news" not in text
        assert "- HP: 80/100" in text
        assert "- Mana: 30/50" in text
        assert "- Enemies: Bog Wight (7/12 HP)" in text


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

class TestSystemInstruction:
    def test_defaults(self, world_config):
        text = build_system_instruction(world_config, AppSettings())
        assert "written in English" in text
        assert "Codex profiling" in text
        assert "Dynamic extraction" in text
        assert "Relation graphs" in text
        assert "Sketch three branches" in text
        assert "--- PROGRESSION (Lantern Ranks) ---" in text
        assert "Unmet requirements: Mana: 30/45" in text
        assert "Crafting: the player may combine items" in text
        assert "Time: every action takes time" in text
        assert "Reputation:" not in text
        assert "Second person" in text
        assert "CONTENT GUIDELINES" not in text

    def test_feature_flags_off(self, world_config):
        settings = AppSettings(ai=AiSettings(
            enable_codex_profiling=False,
            enable_relation_graphs=False,
            enable_chain_of_thought=False,
        ))
        text = build_system_instruction(world_config, settings)
        assert "Codex profiling" not in text
        assert "Relation graphs" not in text
        assert "Reason briefly" in text

    def test_language_and_length(self, world_config):
        world_config.writing_config.language = "German"
        world_config.writing_config.response_length = "short"
        world_config.writing_config.min_response_length = 150
        text = build_system_instruction(world_config, AppSettings())
        assert "written in German" in text
        assert "Short, one or two tight paragraphs. At least 150 words." in text

    def test_content_guidelines_rendered(self, world_config):
        world_config.allow_adult_content = True
        world_config.story_tone = "positive"
        text = build_system_instruction(world_config, AppSettings())
        assert "--- CONTENT GUIDELINES (MANDATORY) ---" in text
        assert "- Story tone: Keep an overall hopeful" in text


class TestTurnPrompt:
    def test_sections(self, world_config, game_state):
        world_config.temporary_rules = [
            TemporaryRule(text="It is a holiday"),
            TemporaryRule(text="Disabled rule", enabled=False),
        ]
        history = [*game_state.history, GameTurn(type="action", content="I pay the ferryman.")]
        text = build_turn_prompt(
            world_config, game_state, history, "Ilsa came to Greyhollow.", "LORE BLOCK", AppSettings()
        )
        assert "--- STORY SO FAR (LONG-TERM MEMORY) ---\nIlsa came to Greyhollow." in text
        assert "LORE BLOCK" in text
        assert "--- CURRENT WORLD STATE ---" in text
        assert "--- TEMPORARY RULES (IMPORTANT) ---" in text
        assert "- It is a holiday" in text
        assert "Disabled rule" not in text
        assert "PLAYER:\nI pay the ferryman." in text
        assert "[SYSTEM NOTICE: DYNAMIC EXTRACTION]" in text
        assert text.rstrip().endswith("End with a question for the player.")

    def test_optional_sections_omitted(self, world_config, game_state):
        settings = AppSettings(ai=AiSettings(enable_dynamic_extraction=False))
        text = build_turn_prompt(world_config, game_state, game_state.history, "", "", settings)
        assert "STORY SO FAR" not in text
        assert "TEMPORARY RULES" not in text
        assert "DYNAMIC EXTRACTION" not in text


def test_opening_prompt(world_config):
    text = build_opening_prompt(world_config)
    assert '"Arriving at the ferry at dusk"' in text
    assert '"name": "Ilsa"' in text


def test_summary_prompt():
    text = build_summary_prompt(
        [GameTurn(type="narration", content="A storm."), GameTurn(type="action", content="I hide.")],
        "",
    )
    assert 'previous summary of the story: "None yet"' in text
    assert "GM: A storm.\nPlayer: I hide." in text


def test_codex_expand_prompt(world_config):
    entry = CodexEntry(id="bram", name="Old Bram", type="Character", description="The ferryman.")
    text = build_codex_expand_prompt(world_config, entry)
    assert 'record of "Old Bram" (Character)' in text
    assert "setting: The marsh town of Greyhollow" in text
    assert 'Current information: "The ferryman."' in text

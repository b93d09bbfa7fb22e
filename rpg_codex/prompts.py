"""Handlebars prompt rendering for the Game Master pipeline.

Every prompt sent to the model is a pybars template rendered against a plain
dict context. Templates use triple-stash ({{{var}}}) for all free text so that
story content is never HTML-escaped.

Builders:
  build_system_instruction(config, settings)  — GM persona, rules, <state> shape
  build_opening_prompt(config)                — first chapter of a new game
  build_turn_prompt(...)                      — one player turn
  build_summary_prompt(old_turns, summary)    — rolling summary merge
  build_codex_expand_prompt(config, entry)    — codex entry enrichment (JSON)
  build_world_prompt(idea, language)          — whole world config from an idea (JSON)
  build_*_prompt(config[, entity])            — one-field assists for world creation
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pybars

from rpg_codex.models import CodexEntry, GameState, GameTurn, InitialEntity, WorldConfig, WorldTime
from rpg_codex.settings import AppSettings

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_join(this, items, separator=", "):
    """{{{join array ", "}}} — join items into one string."""
    return str(separator).join(str(i) for i in items or [])


_HELPERS: dict[str, Callable] = {
    "join": _helper_join,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────

SYSTEM_TEMPLATE = """You are the Game Master (GM) of a text-based role-playing game, a creative and logical storyteller.
Your task is to lead the story through an established world, reacting to the player's actions.

MANDATORY RULES:
1. Language: your ENTIRE response must be written in {{{language}}}.
2. Stay in role: you are the narrator, never an AI assistant. Never break character.
3. Follow the setup: strictly respect the world, the characters and above all the Core Rules.
4. Logical consequences: what happens next must follow plausibly from the player's action.
5. Open ending: ALWAYS end with a question that invites the player's next action.
6. Special formatting: wrap exclamations and sound effects in <exp>...</exp>.
{{#if content_directives}}

--- CONTENT GUIDELINES (MANDATORY) ---
Mature content is permitted in this story under the following guidelines:
{{#each content_directives}}- {{{this}}}
{{/each}}{{/if}}

--- NARRATIVE TECHNIQUES ---
{{#if codex_profiling}}- Codex profiling: you are also the keeper of the world's knowledge. Update the codex when
  1. a NEW character, location or item appears (create an entry),
  2. something new is learned about a KNOWN entity (update the entry; the system merges by id),
  3. a relationship changes (update its 'relations').
{{#if dynamic_extraction}}  Dynamic extraction: scan every sentence you write. If an NPC reveals a name, a past or a notable attitude, record it in <state> immediately.
{{/if}}  Use the "codex_update" field of the <state> block for this.
{{/if}}{{#if relation_graphs}}- Relation graphs: track the social network. Actions toward one NPC affect those related to them (family, allies). Record new relationships in "codex_update" ('relations').
{{/if}}
--- REASONING ---
Before writing the narration, think inside a <thought>...</thought> block. It is hidden from the player.
{{#if chain_of_thought}}Do not settle on the first outcome. Sketch three branches (favourable, challenging, unexpected),
judge which fits the story's tone best, and narrate that one.
{{else}}Reason briefly about the action, its difficulty and its outcome before narrating.
{{/if}}{{#if progression}}
--- PROGRESSION ({{{progression.system}}}) ---
Current rank: {{{progression.current}}}
{{#if progression.next}}Next rank: {{{progression.next}}}
{{#if progression.unmet}}Unmet requirements: {{{join progression.unmet "; "}}}
{{else}}All requirements are met; the character may advance when the story allows it.
{{/if}}{{else}}This is the highest rank.
{{/if}}{{/if}}{{#if advanced_rules}}
--- ACTIVE GAME SYSTEMS ---
{{#each advanced_rules}}- {{{this}}}
{{/each}}{{/if}}
--- STATE MANAGEMENT ---
At the end of every response in which the inventory, HP, gold, stats, time, weather, quests,
the interface mode or codex knowledge changes, emit exactly one <state>JSON</state> block:
<state>
{
  "inventory_add": ["Rope"], "inventory_remove": [],
  "hp_change": -5, "gold_change": 10,
  "custom_stats_update": [{"id": "mana", "value": -10}],
  "time_passed": 30,
  "weather_update": "Rainy",
  "quest_update": [{"action": "add", "id": "q_lost_ring", "title": "The Lost Ring", "description": "...", "type": "side"},
                   {"action": "update", "id": "q_lost_ring", "status": "completed"}],
  "player_behavior_tag": "Cautious",
  "ui_mode": "adventure",
  "combat_data": [{"id": "wolf_1", "name": "Grey Wolf", "hp": 20, "max_hp": 20}],
  "merchant_data": {"name": "Old Bram", "inventory": [{"id": "potion", "name": "Potion", "cost": 15}]},
  "codex_update": [
    {"id": "npc_bram", "name": "Old Bram", "type": "Character", "tags": ["Merchant"],
     "description": "NEW or ADDITIONAL information...",
     "relations": [{"target_id": "npc_lena", "target_name": "Lena", "type": "Daughter"}]}
  ],
  "suggestions": ["Ask Bram about the ring", "Leave the shop"]
}
</state>
Only include the fields that changed. Use stable ids (e.g. "npc_bram") so existing entries are updated.
ui_mode is one of adventure, combat, exchange: send combat_data when entering combat and merchant_data when trading.
The <state> block must be the very last thing in your response; the system processes and hides it.

--- WRITING STYLE ---
- Perspective: {{{perspective}}}
- Style: {{{narrative_style}}}
- Length: {{{response_length}}}
"""

OPENING_TEMPLATE = """You are a gifted Game Master and a master storyteller. Write the opening chapter of an epic role-playing adventure.

Here is everything about the world and the main character you will manage:
{{{config_json}}}

YOUR TASK:
1. Evaluate and select: pick the most important and compelling details of the setting, the character's history,
   goals, INVENTORY and RELATIONSHIPS. Do not list them; turn them into a living story.
2. Start from the chosen scenario: "{{{starting_scenario}}}". Begin right at that moment.
   - Set the atmosphere from the genre and the story tone.
   - Put the main character into a concrete situation.
   - Weave in their motivation.
   - Where it fits, hint at the history, geography, magic or factions of the world.
3. Length: the opening should be substantial enough to immerse the player, ideally under 2500 words.
4. Open ending: finish with a clear question so the player knows what to do next.

Begin the adventure now."""

TURN_TEMPLATE = """World and character information (including current state):
{{{config_json}}}
{{#if summary}}

--- STORY SO FAR (LONG-TERM MEMORY) ---
{{{summary}}}
(Use this as the story's long-term memory.)
{{/if}}{{#if lore}}

{{{lore}}}
{{/if}}

--- CURRENT WORLD STATE ---
{{{world_state}}}
{{#if temporary_rules}}

--- TEMPORARY RULES (IMPORTANT) ---
In addition to the core rules, strictly follow these temporary rules this turn:
{{#each temporary_rules}}- {{{this}}}
{{/each}}{{/if}}

Most recent story events:
{{{history}}}

Continue the story from the player's latest action. Describe its outcome, what happens next and how the world and NPCs react.
Remember to follow the established rules.
IMPORTANT: if items, HP, gold, stats, time, quests or codex knowledge change, end your answer with a <state>JSON</state> block.
{{#if dynamic_extraction}}
[SYSTEM NOTICE: DYNAMIC EXTRACTION]
Review what you just wrote. Is anything worth recording in the codex? A new NPC or place, something a known NPC revealed,
a changed relationship? If so, you MUST include it under "codex_update" in the <state> block.
{{/if}}
End with a question for the player."""

SUMMARY_TEMPLATE = """You are a story summarization assistant.

This is the previous summary of the story: "{{{summary}}}"

These are the events that happened next (old conversation to compress):
{{{history}}}

Write a new, concise summary (about 3 to 5 sentences) that merges the old and the new information.
Keep the important details about the characters' state, key items received and major events. Skip incidental detail."""

CODEX_EXPAND_TEMPLATE = """You are the world's knowledge archive (the Codex).
Expand the record of "{{{name}}}" ({{{type}}}) in this world (setting: {{{setting}}}).
Current information: "{{{description}}}"

Requirements:
1. Add detail about its past, appearance or hidden secrets.
2. Suggest 3 to 5 fitting classification tags.
3. (Optional) Suggest relationships with other characters or factions of the world."""

CODEX_EXPAND_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "description": {"type": "STRING", "description": "Detailed, expanded description (backstory, secrets, appearance)."},
        "tags": {"type": "ARRAY", "items": {"type": "STRING"}, "description": "3-5 fitting tags."},
        "relations": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "target_name": {"type": "STRING", "description": "Related character or faction."},
                    "type": {"type": "STRING", "description": "Kind of relationship (family, enemy, ...)."},
                },
                "required": ["target_name", "type"],
            },
            "description": "New social relationships, if any.",
        },
    },
    "required": ["description", "tags"],
}


# ── World creation ───────────────────────────────────────

WORLD_FROM_IDEA_TEMPLATE = """You are a master Game Master of tabletop role-playing games.
From this starting idea: "{{{idea}}}", create a complete game world configuration, written in {{{language}}}, ready to start an adventure.
Give the world a history, geography, a magic or technology system and two to four factions.
Give the protagonist a name, personality, gender, short biography, one starting skill, a clear motivation, 3 to 5 important starting items and one or two relationships.
Add 1 to 3 initial entities (NPCs, locations, items or factions).
Do not create core rules or temporary rules."""

_ENTITY_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING", "description": "Name of the entity."},
        "type": {"type": "STRING", "enum": ["NPC", "Location", "Item", "Faction"], "description": "Kind of entity."},
        "personality": {"type": "STRING", "description": "Personality (NPCs only, may be empty for other kinds)."},
        "description": {"type": "STRING", "description": "Detailed description of the entity."},
    },
    "required": ["name", "type", "description"],
}

SKILL_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING", "description": "Name of the skill."},
        "description": {"type": "STRING", "description": "Short description of the skill."},
    },
    "required": ["name", "description"],
}

WORLD_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "story_context": {
            "type": "OBJECT",
            "properties": {
                "genre": {"type": "STRING", "description": "Story genre (e.g. cultivation fantasy, science fiction)."},
                "setting": {"type": "STRING", "description": "Detailed setting of the world."},
            },
            "required": ["genre", "setting"],
        },
        "world_lore": {
            "type": "OBJECT",
            "properties": {
                "history": {"type": "STRING", "description": "Brief history of the world."},
                "geography": {"type": "STRING", "description": "Lands and regions."},
                "magic_system": {"type": "STRING", "description": "Magic or technology system."},
                "factions": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {"name": {"type": "STRING"}, "description": {"type": "STRING"}},
                        "required": ["name", "description"],
                    },
                },
            },
            "required": ["history", "geography", "magic_system", "factions"],
        },
        "character": {
            "type": "OBJECT",
            "properties": {
                "name": {"type": "STRING", "description": "Name of the protagonist."},
                "personality": {"type": "STRING", "description": "Personality of the protagonist."},
                "gender": {"type": "STRING", "description": "Gender of the protagonist."},
                "bio": {"type": "STRING", "description": "Short biography."},
                "skills": {**SKILL_SCHEMA, "description": "Starting skill."},
                "motivation": {"type": "STRING", "description": "Main goal or motivation."},
                "inventory": {"type": "ARRAY", "items": {"type": "STRING"}, "description": "3-5 important starting items."},
                "relationships": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "name": {"type": "STRING"},
                            "type": {"type": "STRING", "description": "Kind of relationship: friend, enemy, mentor..."},
                            "description": {"type": "STRING"},
                        },
                        "required": ["name", "type", "description"],
                    },
                },
            },
            "required": ["name", "personality", "gender", "bio", "skills", "motivation", "inventory", "relationships"],
        },
        "difficulty": {"type": "STRING", "enum": ["Easy", "Normal", "Hard", "Nightmare"], "description": "Game difficulty."},
        "allow_adult_content": {"type": "BOOLEAN", "description": "Whether adult content is allowed."},
        "initial_entities": {
            "type": "ARRAY",
            "description": "1-3 initial entities of the world (NPCs, locations, items, factions).",
            "items": _ENTITY_SCHEMA,
        },
    },
    "required": ["story_context", "world_lore", "character", "difficulty", "allow_adult_content", "initial_entities"],
}

GENRE_TEMPLATE = """{{#if genre}}Starting from the genre "{{{genre}}}" and the setting "{{{setting}}}", develop the genre so it becomes more detailed and distinctive. Answer with the refined genre name only.{{else}}Based on this setting (if any): "{{{setting}}}", suggest a distinctive story genre. Answer with the genre name only.{{/if}}"""

SETTING_TEMPLATE = """{{#if setting}}This is the initial setting: "{{{setting}}}". Based on it and the genre "{{{genre}}}", rewrite it as a fuller, more detailed version that keeps and extends the original idea.{{else}}Based on the genre "{{{genre}}}", suggest a detailed and compelling world setting. Answer with a short paragraph (2-3 sentences).{{/if}}"""

BIO_TEMPLATE = """{{#if bio}}A character named "{{{name}}}" in this world (Genre: {{{genre}}}, Setting: {{{setting}}}) has this initial biography and appearance: "{{{bio}}}". Rewrite it as a more detailed, engaging version with more depth.{{else}}Based on this world (Genre: {{{genre}}}, Setting: {{{setting}}}), write a short biography and appearance (2-4 sentences) for a character named "{{{name}}}".{{/if}}"""

SKILL_TEMPLATE = """{{#if skill_name}}{{#if skill_description}}A character named "{{{name}}}" with the biography "{{{bio}}}" in a world of genre {{{genre}}} has the skill "{{{skill_name}}}" described as: "{{{skill_description}}}". Rewrite the description so the skill becomes more distinctive and powerful.{{else}}A character named "{{{name}}}" with the biography "{{{bio}}}" in a world of genre {{{genre}}} has a skill named "{{{skill_name}}}". Write a detailed, engaging description of this skill.{{/if}}{{else}}Based on the character (Name: {{{name}}}, Biography: {{{bio}}}) and the world (Genre: {{{genre}}}), create one distinctive starting skill that suits this character, with a name and a description.{{/if}}"""

MOTIVATION_TEMPLATE = """{{#if motivation}}The character "{{{name}}}" (Biography: {{{bio}}}, Skill: {{{skill_name}}}) currently has this motivation: "{{{motivation}}}". Using everything known about the character and the world, develop it into a concrete, deeper motivation with a clear goal for the adventure.{{else}}Based on the character (Name: {{{name}}}, Biography: {{{bio}}}, Skill: {{{skill_name}}}) and the world (Genre: {{{genre}}}), propose a compelling goal or motivation to start their adventure. Answer with one short sentence.{{/if}}"""

ENTITY_NAME_TEMPLATE = """{{#if entity_name}}An entity of kind "{{{entity_type}}}" is currently named "{{{entity_name}}}". Based on this name and the world setting "{{{setting}}}", suggest a better name, a title or a full name for it. Answer with the new name only.{{else}}Based on the world setting "{{{setting}}}", suggest a fitting, distinctive name for an entity of kind "{{{entity_type}}}". Answer with the name only.{{/if}}"""

ENTITY_PERSONALITY_TEMPLATE = """{{#if personality}}The current personality of the NPC "{{{entity_name}}}" is: "{{{personality}}}". Based on it and the world setting "{{{setting}}}", rewrite it in more detail, adding habits, inner conflicts or small details that make the character feel alive.{{else}}Briefly describe the personality (1-2 sentences) of an NPC named "{{{entity_name}}}" in the world setting "{{{setting}}}".{{/if}}"""

ENTITY_DESCRIPTION_TEMPLATE = """{{#if description}}The current description of the entity "{{{entity_name}}}" (kind: "{{{entity_type}}}") is: "{{{description}}}". Based on it and the world setting "{{{setting}}}", rewrite it as a more detailed and engaging version, adding history, appearance or its role in the world.{{else}}Write a short (2-3 sentences), engaging description of the entity named "{{{entity_name}}}", of kind "{{{entity_type}}}", in the world setting "{{{setting}}}".{{/if}}"""

# ── Fragments ────────────────────────────────────────────

_PERSPECTIVES = {
    "first": 'First person ("I" for the main character), like a diary or inner monologue.',
    "second": 'Second person ("you"), the standard for role-playing games.',
    "third": "Third person (the character's name, he/she/they), objective like a novel.",
}

_RESPONSE_LENGTHS = {
    "short": "Short, one or two tight paragraphs.",
    "medium": "Medium, three to five paragraphs.",
    "long": "Long and detailed, six or more paragraphs.",
}

_SEXUAL_STYLES = {
    "explicit": "Intimate scenes may be described directly and frankly.",
    "poetic": "Describe intimacy through metaphor and emotion; avoid anatomical terms.",
    "suggestive": "Build tension and imply rather than show; fading to black is allowed.",
}

_VIOLENCE_LEVELS = {
    "mild": "Describe violence lightly, focusing on outcomes rather than gore.",
    "realistic": "Describe violence realistically, with moderate detail about wounds and impact.",
    "extreme": "Violence may be graphic and brutal.",
}

_STORY_TONES = {
    "positive": "Keep an overall hopeful, positive atmosphere, even in hard moments.",
    "neutral": "Keep an objective, realistic atmosphere.",
    "dark": "Focus on dark themes, despair and moral greyness.",
    "sensual": "Emphasize romantic tension and desire throughout the story.",
}

_ADVANCED_RULES = {
    "enable_time_system": "Time: every action takes time. Report minutes elapsed in time_passed.",
    "enable_currency_system": "Currency: gold is tracked. Purchases and rewards change gold_change.",
    "enable_inventory_system": "Inventory: items are tracked. Use inventory_add and inventory_remove.",
    "enable_crafting_system": "Crafting: the player may combine items into new ones; consume the ingredients.",
    "enable_reputation_system": "Reputation: NPCs and factions remember the player's deeds and react accordingly.",
}


def content_directives(config: WorldConfig, settings: AppSettings) -> list[str]:
    """Mature-content guidelines. Empty unless adult content is on and the safety filter is off."""
    if not config.allow_adult_content or settings.safety.enabled:
        return []
    directives = []
    for label, value, table in (
        ("Intimate scenes", config.sexual_content_style, _SEXUAL_STYLES),
        ("Violence", config.violence_level, _VIOLENCE_LEVELS),
        ("Story tone", config.story_tone, _STORY_TONES),
    ):
        if value:
            directives.append(f"{label}: {table.get(value.strip().lower(), value)}")
    if directives:
        directives.append("Follow these guidelines strictly when writing the story.")
    return directives


def progression_status(config: WorldConfig) -> dict[str, Any] | None:
    """Current rank and the next rank's unmet requirements, or None when disabled."""
    system = config.progression_system
    if not system.enabled or not system.ranks:
        return None
    index = min(max(config.character.current_rank_index, 0), len(system.ranks) - 1)
    current = system.ranks[index]
    status: dict[str, Any] = {
        "system": system.name or "Ranks",
        "current": f"{current.name}: {current.description}" if current.description else current.name,
        "next": None,
        "unmet": [],
    }
    if index + 1 < len(system.ranks):
        nxt = system.ranks[index + 1]
        status["next"] = nxt.name
        stats = {s.id: s for s in config.character.custom_stats}
        for req in nxt.requirements:
            stat = stats.get(req.stat_id)
            have = stat.value if stat else 0
            if have < req.value:
                name = stat.name if stat else req.stat_id
                status["unmet"].append(f"{name}: {_num(have)}/{_num(req.value)}")
    return status


def advanced_rules_lines(config: WorldConfig) -> list[str]:
    rules = config.advanced_rules.model_dump()
    return [text for key, text in _ADVANCED_RULES.items() if rules.get(key)]


def format_world_time(t: WorldTime) -> str:
    return f"Day {t.day}, Month {t.month}, Year {t.year}, {t.hour:02d}:{t.minute:02d}"


def world_state_snapshot(state: GameState) -> str:
    """Dynamic state injected into every turn prompt."""
    character = state.world_config.character
    quests = [q.title or q.id for q in state.quest_log if q.status == "active"]
    analysis = state.player_analysis
    lines = [
        f"- Time: {format_world_time(state.world_time)}",
        f"- Weather: {state.weather}",
        f"- Active quests: {', '.join(quests) or 'None'}",
        f"- Player profile: {analysis.archetype} (Tags: {', '.join(analysis.behavior_tags[-10:]) or 'none'})",
        f"- HP: {character.hp}/{character.max_hp}",
        f"- Gold: {character.gold}",
    ]
    for stat in character.custom_stats:
        lines.append(f"- {stat.name}: {_num(stat.value)}/{_num(stat.max)}")
    lines.append(f"- Interface mode: {state.interface_mode}")
    if state.interface_mode == "combat" and state.active_enemies:
        enemies = ", ".join(f"{e.name} ({e.hp}/{e.max_hp} HP)" for e in state.active_enemies)
        lines.append(f"- Enemies: {enemies}")
    if state.interface_mode == "exchange" and state.active_merchant:
        wares = ", ".join(f"{i.name} ({i.cost}g)" for i in state.active_merchant.inventory)
        lines.append(f"- Merchant: {state.active_merchant.name} ({wares or 'no wares'})")
    return "\n".join(lines)


def format_history(history: list[GameTurn]) -> str:
    parts = []
    for turn in history:
        label = "GAME MASTER" if turn.type == "narration" else "PLAYER"
        parts.append(f"{label}:\n{turn.content}")
    return "\n\n".join(parts)


def config_json(config: WorldConfig) -> str:
    """Config dump for prompts. Temporary rules and stored embeddings are left out."""
    data = config.model_dump(
        mode="json",
        exclude={"temporary_rules": True, "initial_codex": {"__all__": {"embedding"}}},
    )
    return json.dumps(data, indent=2, ensure_ascii=False)


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


# ── Builders ─────────────────────────────────────────────


def build_system_instruction(config: WorldConfig, settings: AppSettings) -> str:
    ai = settings.ai
    writing = config.writing_config
    return render_prompt(SYSTEM_TEMPLATE, {
        "language": writing.language or "English",
        "content_directives": content_directives(config, settings),
        "codex_profiling": ai.enable_codex_profiling,
        "dynamic_extraction": ai.enable_dynamic_extraction,
        "relation_graphs": ai.enable_relation_graphs,
        "chain_of_thought": ai.enable_chain_of_thought,
        "progression": progression_status(config),
        "advanced_rules": advanced_rules_lines(config),
        "perspective": _PERSPECTIVES[writing.perspective],
        "narrative_style": writing.narrative_style or "Default",
        "response_length": _response_length(writing.response_length, writing.min_response_length),
    })


def _response_length(length: str, min_words: int) -> str:
    text = _RESPONSE_LENGTHS[length]
    if min_words > 0:
        text += f" At least {min_words} words."
    return text


def build_opening_prompt(config: WorldConfig) -> str:
    return render_prompt(OPENING_TEMPLATE, {
        "config_json": config_json(config),
        "starting_scenario": config.starting_scenario,
    })


def build_turn_prompt(
    config: WorldConfig,
    state: GameState,
    history: list[GameTurn],
    summary: str,
    lore: str,
    settings: AppSettings,
) -> str:
    return render_prompt(TURN_TEMPLATE, {
        "config_json": config_json(config),
        "summary": summary,
        "lore": lore,
        "world_state": world_state_snapshot(state),
        "temporary_rules": [r.text for r in config.temporary_rules if r.enabled and r.text.strip()],
        "history": format_history(history),
        "dynamic_extraction": settings.ai.enable_dynamic_extraction,
    })


def build_summary_prompt(old_turns: list[GameTurn], summary: str) -> str:
    lines = [
        f"{'GM' if t.type == 'narration' else 'Player'}: {t.content}" for t in old_turns
    ]
    return render_prompt(SUMMARY_TEMPLATE, {
        "summary": summary or "None yet",
        "history": "\n".join(lines),
    })


def build_codex_expand_prompt(config: WorldConfig, entry: CodexEntry) -> str:
    return render_prompt(CODEX_EXPAND_TEMPLATE, {
        "name": entry.name,
        "type": entry.type,
        "setting": config.story_context.setting or "unspecified",
        "description": entry.description,
    })


# ── World creation builders ──────────────────────────────


def build_world_prompt(idea: str, language: str = "English") -> str:
    return render_prompt(WORLD_FROM_IDEA_TEMPLATE, {"idea": idea, "language": language})


def _character_context(config: WorldConfig) -> dict[str, Any]:
    """Fields every world-creation assist may mention; blanks read as empty."""
    character = config.character
    return {
        "genre": config.story_context.genre.strip(),
        "setting": config.story_context.setting.strip(),
        "name": character.name.strip(),
        "bio": character.bio.strip(),
        "skill_name": character.skills.name.strip(),
        "skill_description": character.skills.description.strip(),
        "motivation": character.motivation.strip(),
    }


def build_genre_prompt(config: WorldConfig) -> str:
    return render_prompt(GENRE_TEMPLATE, _character_context(config))


def build_setting_prompt(config: WorldConfig) -> str:
    return render_prompt(SETTING_TEMPLATE, _character_context(config))


def build_bio_prompt(config: WorldConfig) -> str:
    return render_prompt(BIO_TEMPLATE, _character_context(config))


def build_skill_prompt(config: WorldConfig) -> str:
    return render_prompt(SKILL_TEMPLATE, _character_context(config))


def build_motivation_prompt(config: WorldConfig) -> str:
    return render_prompt(MOTIVATION_TEMPLATE, _character_context(config))


def _entity_context(config: WorldConfig, entity: InitialEntity) -> dict[str, Any]:
    return {
        "setting": config.story_context.setting.strip(),
        "entity_name": entity.name.strip(),
        "entity_type": entity.type,
        "personality": entity.personality.strip(),
        "description": entity.description.strip(),
    }


def build_entity_name_prompt(config: WorldConfig, entity: InitialEntity) -> str:
    return render_prompt(ENTITY_NAME_TEMPLATE, _entity_context(config, entity))


def build_entity_personality_prompt(config: WorldConfig, entity: InitialEntity) -> str:
    return render_prompt(ENTITY_PERSONALITY_TEMPLATE, _entity_context(config, entity))


def build_entity_description_prompt(config: WorldConfig, entity: InitialEntity) -> str:
    return render_prompt(ENTITY_DESCRIPTION_TEMPLATE, _entity_context(config, entity))

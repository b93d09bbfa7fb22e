"""Core domain models.

Every layer (prompt building, reconciliation, storage, API) operates on these
types. Pydantic is used for validation and serialisation at every data
boundary; defaults double as the migration path for older saves.
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, Field

WeatherType = Literal["Sunny", "Cloudy", "Rainy", "Stormy", "Snowy", "Foggy", "Mystical"]
WEATHER_OPTIONS: tuple[str, ...] = ("Sunny", "Cloudy", "Rainy", "Stormy", "Snowy", "Foggy", "Mystical")

InterfaceMode = Literal["adventure", "combat", "exchange"]
INTERFACE_MODES: tuple[str, ...] = ("adventure", "combat", "exchange")

CodexType = Literal["Character", "Location", "Item", "Faction", "Concept", "Creature", "Lore"]
CODEX_TYPES: tuple[str, ...] = ("Character", "Location", "Item", "Faction", "Concept", "Creature", "Lore")
DEFAULT_CODEX_TYPE = "Concept"


# ---------------------------------------------------------------------------
# World configuration
# ---------------------------------------------------------------------------

class StoryContext(BaseModel):
    genre: str = ""
    setting: str = ""


class Faction(BaseModel):
    name: str
    description: str = ""


class WorldLore(BaseModel):
    history: str = ""
    geography: str = ""
    magic_system: str = ""  # or technology system
    factions: list[Faction] = Field(default_factory=list)


class InitialEntity(BaseModel):
    name: str
    type: str = "NPC"
    personality: str = ""
    description: str = ""


class Skill(BaseModel):
    name: str = ""
    description: str = ""


class Relationship(BaseModel):
    name: str
    type: str = ""  # Friend, Enemy, Mentor, ...
    description: str = ""


class CustomStat(BaseModel):
    """A resource gauge such as mana or sanity. 0 <= value <= max."""

    id: str
    name: str
    value: float = 0
    max: float = Field(default=100, ge=0)
    color: str = "blue"
    icon: str = ""
    description: str | None = None  # what consumes it


class RankRequirement(BaseModel):
    stat_id: str  # must match a CustomStat.id
    value: float


class Rank(BaseModel):
    id: str
    name: str
    description: str = ""
    requirements: list[RankRequirement] = Field(default_factory=list)


class ProgressionSystem(BaseModel):
    enabled: bool = False
    name: str = ""
    ranks: list[Rank] = Field(default_factory=list)


class AdvancedRules(BaseModel):
    enable_time_system: bool = True
    enable_currency_system: bool = True
    enable_inventory_system: bool = True
    enable_crafting_system: bool = False
    enable_reputation_system: bool = False


class CharacterConfig(BaseModel):
    name: str = ""
    personality: str = ""
    gender: str = ""
    bio: str = ""
    skills: Skill = Field(default_factory=Skill)
    motivation: str = ""
    inventory: list[str] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    hp: int = 100
    max_hp: int = Field(default=100, ge=0)
    gold: int = 0
    status_effects: list[str] = Field(default_factory=list)
    custom_stats: list[CustomStat] = Field(default_factory=list)
    current_rank_index: int = 0


class WritingConfig(BaseModel):
    perspective: Literal["first", "second", "third"] = "second"
    narrative_style: str = ""
    response_length: Literal["short", "medium", "long"] = "medium"
    min_response_length: int = 0  # words
    language: str = "English"


class TemporaryRule(BaseModel):
    text: str
    enabled: bool = True


class CodexRelation(BaseModel):
    # The model sometimes answers in camelCase; accept both spellings.
    target_id: str = Field("", validation_alias=AliasChoices("target_id", "targetId"))
    target_name: str = Field("", validation_alias=AliasChoices("target_name", "targetName"))
    type: str = ""
    description: str | None = None


class CodexEntry(BaseModel):
    """A named entity in the evolving knowledge base. `id` is the merge key."""

    id: str
    name: str
    type: CodexType = DEFAULT_CODEX_TYPE
    tags: list[str] = Field(default_factory=list)
    description: str = ""
    relations: list[CodexRelation] = Field(default_factory=list)
    last_updated: str = ""
    is_new: bool = False
    embedding: list[float] | None = None


class WorldConfig(BaseModel):
    story_context: StoryContext = Field(default_factory=StoryContext)
    world_lore: WorldLore = Field(default_factory=WorldLore)
    character: CharacterConfig = Field(default_factory=CharacterConfig)
    difficulty: str = "Normal"
    allow_adult_content: bool = False
    sexual_content_style: str | None = None
    violence_level: str | None = None
    story_tone: str | None = None
    starting_scenario: str = ""
    writing_config: WritingConfig = Field(default_factory=WritingConfig)
    core_rules: list[str] = Field(default_factory=list)
    initial_entities: list[InitialEntity] = Field(default_factory=list)
    temporary_rules: list[TemporaryRule] = Field(default_factory=list)
    progression_system: ProgressionSystem = Field(default_factory=ProgressionSystem)
    advanced_rules: AdvancedRules = Field(default_factory=AdvancedRules)
    initial_codex: list[CodexEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------

class GameTurn(BaseModel):
    type: Literal["action", "narration"]
    content: str


class WorldTime(BaseModel):
    year: int = 1
    month: int = 1
    day: int = 1
    hour: int = 8
    minute: int = 0


class Quest(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    status: Literal["active", "completed", "failed"] = "active"
    type: Literal["main", "side"] = "side"


class PlayerAnalysis(BaseModel):
    archetype: str = "Explorer"
    behavior_tags: list[str] = Field(default_factory=list)
    reputation: int = 0


class CombatEntity(BaseModel):
    id: str = ""
    name: str
    hp: int = 1
    max_hp: int = Field(1, validation_alias=AliasChoices("max_hp", "maxHp"))
    description: str | None = None
    status_effects: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("status_effects", "statusEffects")
    )
    is_dead: bool = Field(False, validation_alias=AliasChoices("is_dead", "isDead"))


class TradeItem(BaseModel):
    id: str = ""
    name: str
    cost: int = 0
    description: str | None = None


class MerchantData(BaseModel):
    name: str
    inventory: list[TradeItem] = Field(default_factory=list)


class GameState(BaseModel):
    """The authoritative runtime object for one play session."""

    world_config: WorldConfig
    history: list[GameTurn] = Field(default_factory=list)
    summary: str = ""
    world_time: WorldTime = Field(default_factory=WorldTime)
    weather: WeatherType = "Sunny"
    quest_log: list[Quest] = Field(default_factory=list)
    player_analysis: PlayerAnalysis = Field(default_factory=PlayerAnalysis)
    codex: list[CodexEntry] = Field(default_factory=list)
    interface_mode: InterfaceMode = "adventure"
    active_enemies: list[CombatEntity] = Field(default_factory=list)
    active_merchant: MerchantData | None = None


class SaveSlot(GameState):
    save_id: int
    save_date: str
    preview_text: str = ""

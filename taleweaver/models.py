"""Core domain models.

Every component (the mutation engine, the save repository, the orchestrator
and the generation adapters) operates on these types. Pydantic is used for
validation and serialisation at every data boundary: service responses are
validated into TurnResult / CreatorOptions before they reach the mutation
engine, and the save collection is round-tripped through SaveData.

The Session is treated as an immutable value. Operations never mutate a model
in place; they build the next value with model_copy(update=...).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class GamePhase(str, Enum):
    CHARACTER_CREATION_START = "character_creation_start"
    CHARACTER_CREATION_FINALIZE = "character_creation_finalize"
    GAMEPLAY = "gameplay"
    COMBAT = "combat"
    GAME_OVER = "game_over"


Speaker = Literal["game", "player", "system"]
ItemType = Literal["weapon", "armor", "item"]
FontStyle = Literal["serif", "sans-serif", "mono"]


# ---------------------------------------------------------------------------
# Character
# ---------------------------------------------------------------------------

class InventoryItem(BaseModel):
    """One inventory entry. `name` is the case-insensitive identity key."""

    name: str
    description: str = ""
    quantity: int = Field(default=1, gt=0)
    type: ItemType = "item"


class Companion(BaseModel):
    id: str
    name: str
    kind: str
    backstory: str = ""
    relationship: str = ""


class Customization(BaseModel):
    area: str
    selections: list[str] = Field(default_factory=list)


class VisualTheme(BaseModel):
    """Cosmetic record only: stored and handed back, never interpreted."""

    main_background_color: str
    text_color: str
    accent_color: str
    button_color: str
    border_color: str
    font: FontStyle = "serif"


class Character(BaseModel):
    id: str
    name: str
    theme: str
    description: str = ""
    alignment: str = ""
    backstory: str = ""
    health: int
    max_health: int
    customizations: list[Customization] = Field(default_factory=list)
    inventory: list[InventoryItem] = Field(default_factory=list)
    companions: list[Companion] = Field(default_factory=list)
    canon_events: str | None = None
    visual_theme: VisualTheme | None = None
    is_from_known_world: bool = False


class CharacterDraft(BaseModel):
    """A character before finalization: everything except the identity."""

    name: str
    theme: str
    description: str = ""
    alignment: str = ""
    backstory: str = ""
    health: int = 100
    max_health: int = 100
    customizations: list[Customization] = Field(default_factory=list)
    inventory: list[InventoryItem] = Field(default_factory=list)
    companions: list[Companion] = Field(default_factory=list)
    visual_theme: VisualTheme | None = None


# ---------------------------------------------------------------------------
# Messages and turn results
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single entry in a character's append-only message log."""

    speaker: Speaker
    text: str


class InventoryChange(BaseModel):
    action: Literal["add", "remove"]
    item: InventoryItem


class NewCharacter(BaseModel):
    """A named character introduced by a turn, a companion candidate only."""

    name: str
    kind: str
    description: str = ""


class TurnResult(BaseModel):
    """Validated output of one narrator call, consumed once per turn."""

    scene_description: str
    choices: list[str] = Field(default_factory=list)
    is_combat: bool = False
    attack_options: list[str] = Field(default_factory=list)
    updated_health: int
    inventory_change: InventoryChange | None = None
    is_game_over: bool = False
    new_characters: list[NewCharacter] | None = None


# ---------------------------------------------------------------------------
# Detailed character creation
# ---------------------------------------------------------------------------

class CustomizationArea(BaseModel):
    area_name: str
    options: list[str] = Field(default_factory=list)


class CustomizationTab(BaseModel):
    tab_name: str
    areas: list[CustomizationArea] = Field(default_factory=list)


class CompanionSuggestion(BaseModel):
    name: str
    kind: str


class CreatorOptions(BaseModel):
    """Creation scaffold: taxonomy first, option lists filled in per tab later."""

    theme: str
    description: str = ""
    backstory: str = ""
    alignments: list[str] = Field(default_factory=list)
    customization_tabs: list[CustomizationTab] = Field(default_factory=list)
    starting_inventory: list[InventoryItem] = Field(default_factory=list)
    starting_health: int = 100
    starting_companions: list[CompanionSuggestion] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Session, saves and transient handoff state
# ---------------------------------------------------------------------------

class Notice(BaseModel):
    """Transient user-facing feedback; stale once `expires_at` has passed."""

    text: str
    is_error: bool = False
    expires_at: float


class Session(BaseModel):
    phase: GamePhase = GamePhase.CHARACTER_CREATION_START
    character: Character | None = None
    messages: list[Message] = Field(default_factory=list)
    choices: list[str] = Field(default_factory=list)
    attack_options: list[str] = Field(default_factory=list)
    is_loading: bool = False
    last_error: str | None = None
    creator_options: CreatorOptions | None = None
    potential_companions: list[NewCharacter] = Field(default_factory=list)


class SaveData(BaseModel):
    """One save slot, keyed by the character id."""

    id: str
    last_saved: datetime
    phase: GamePhase
    character: Character
    messages: list[Message] = Field(default_factory=list)
    choices: list[str] = Field(default_factory=list)
    attack_options: list[str] = Field(default_factory=list)


class UndoSnapshot(BaseModel):
    phase: GamePhase
    character: Character | None
    messages: list[Message]
    choices: list[str]
    attack_options: list[str]


class PreviousProtagonist(BaseModel):
    name: str
    status: Literal["dead", "alive"]


class WorldContinuationContext(BaseModel):
    """Carried from one character's ending/switch into the next creation."""

    world_theme: str
    previous_protagonist: PreviousProtagonist
    prior_history: list[Message] = Field(default_factory=list)

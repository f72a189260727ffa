"""Core domain models.

The state machine, migrator, library and HTTP layer all operate on these
types. Pydantic is used for validation and serialisation at every data
boundary. The JSON wire format uses camelCase keys (the same shape the
narrator service is asked to produce for structured data), while Python code
uses snake_case attributes; both are accepted on input.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Sender = Literal["user", "narrator", "system", "error"]
Tone = Literal["heroic", "gritty", "comedic"]
NarrationStyle = Literal["concise", "descriptive", "cinematic"]
Difficulty = Literal["easy", "normal", "hard"]

ABILITIES = ("STR", "DEX", "CON", "INT", "WIS", "CHA")


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Phase(str, Enum):
    """Position of a session in its setup lifecycle."""

    GUIDED = "guided"
    PASSWORD_CAPTURE = "password_capture"
    WORLD_CREATION = "world_creation"
    CHARACTER_CREATION = "character_creation"
    NARRATOR_SELECTION = "narrator_selection"
    QUICK_START_SELECTION = "quick_start_selection"
    QUICK_START_PASSWORD = "quick_start_password"
    STEADY_STATE = "steady_state"

    @property
    def in_setup(self) -> bool:
        return self is not Phase.STEADY_STATE


class Turn(WireModel):
    """One message in a session's ordered history."""

    sender: Sender
    text: str
    hidden: bool = False


class AbilityScore(WireModel):
    score: int = 10
    modifier: str = "+0"


class AbilityScores(BaseModel):
    STR: AbilityScore = Field(default_factory=AbilityScore)
    DEX: AbilityScore = Field(default_factory=AbilityScore)
    CON: AbilityScore = Field(default_factory=AbilityScore)
    INT: AbilityScore = Field(default_factory=AbilityScore)
    WIS: AbilityScore = Field(default_factory=AbilityScore)
    CHA: AbilityScore = Field(default_factory=AbilityScore)


class HitPoints(WireModel):
    current: int = 10
    max: int = 10


class Skill(WireModel):
    name: str
    proficient: bool = False


class CharacterSheet(WireModel):
    """A D&D 5e character as produced by the narrator's structured output."""

    name: str = ""
    race: str = ""
    class_name: str = Field("", alias="class")
    level: int = 1
    ability_scores: AbilityScores = Field(default_factory=AbilityScores)
    armor_class: int = 10
    hit_points: HitPoints = Field(default_factory=HitPoints)
    speed: str = "30ft"
    skills: list[Skill] = Field(default_factory=list)
    features_and_traits: list[str] = Field(default_factory=list)
    backstory: str = ""

    def summary(self) -> str:
        return f"{self.name}, level {self.level} {self.race} {self.class_name}".strip()


class NPC(WireModel):
    name: str
    description: str
    relationship: str


class Achievement(WireModel):
    name: str
    description: str


class Enemy(WireModel):
    """One combatant in a combat-status roster. Never persisted."""

    name: str
    hp: int | None = None
    max_hp: int | None = None
    status: str = ""


class GameSettings(WireModel):
    tone: Tone = "heroic"
    narration: NarrationStyle = "descriptive"
    difficulty: Difficulty = "normal"


class Session(WireModel):
    """The unit of persistence and the state machine's subject."""

    id: str
    title: str = "Untitled Adventure"
    turns: list[Turn] = Field(default_factory=list)
    created_at: float
    pinned: bool = False
    secret: str | None = None
    persona_id: str = "purist"
    phase: Phase = Phase.GUIDED
    character_sheet: CharacterSheet | str | None = None
    inventory: str = ""
    quest_log: str = ""
    npcs: list[NPC] = Field(default_factory=list)
    achievements: list[Achievement] = Field(default_factory=list)
    character_image_url: str = ""
    settings: GameSettings = Field(default_factory=GameSettings)
    quick_start_characters: list[CharacterSheet] = Field(default_factory=list)

    def summary(self) -> dict:
        """Sidebar listing entry."""
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "pinned": self.pinned,
            "phase": self.phase.value,
        }


def replay_history(turns: list[Turn]) -> list[Turn]:
    """Turns to send to the narrator when (re)opening an exchange.

    Hidden, system and error turns are dropped. Adjacent turns from the same
    side are merged so the result strictly alternates user/narrator.
    """
    replay: list[Turn] = []
    for turn in turns:
        if turn.hidden or turn.sender not in ("user", "narrator"):
            continue
        if replay and replay[-1].sender == turn.sender:
            replay[-1] = Turn(
                sender=turn.sender, text=f"{replay[-1].text}\n\n{turn.text}"
            )
        else:
            replay.append(Turn(sender=turn.sender, text=turn.text))
    return replay

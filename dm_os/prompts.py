"""Handlebars prompt rendering for narrator instructions and sub-requests.

Every text the system sends to the narrator service on its own initiative
lives here: the session-zero setup instruction, the game-master instruction
(one per narrator persona), the quick-start character request, and the
logbook prompts used to regenerate derived state.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pybars

from dm_os.models import CharacterSheet, Session, Turn

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


def _helper_numbered(this, options, items):
    """{{#numbered array}}{{index}}. {{item.name}}{{/numbered}} — 1-based loop."""
    result = []
    for i, item in enumerate(list(items), start=1):
        result.extend(options["fn"]({"index": i, "item": item}))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
    "numbered": _helper_numbered,
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


# ── Narrator personas ────────────────────────────────────


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    description: str
    addendum: str


PERSONAS: tuple[Persona, ...] = (
    Persona(
        id="purist",
        name="Purist (The Tactician)",
        description=(
            "A traditional D&D experience. Follows rules closely, offers "
            "challenging combat, and acts as an impartial referee."
        ),
        addendum=(
            "Rules adherence: act as a rules-as-written referee. Apply the 5e "
            "ruleset with precision and consistency and reward tactical play."
        ),
    ),
    Persona(
        id="narrativist",
        name="Narrativist (The Storyweaver)",
        description=(
            "Collaborative storytelling and character development. The rule "
            "of cool is paramount and rules bend for drama."
        ),
        addendum=(
            "The story is king: the rules are a toolbox for the shared "
            "narrative. Bend them when it makes a better moment and reward "
            "player creativity over strict mechanics."
        ),
    ),
    Persona(
        id="romance",
        name="Romantic Storyteller (The Bard)",
        description=(
            "Mature stories about deep relationships and intimacy, told with "
            "evocative, suggestive language."
        ),
        addendum=(
            "Relationships first: narrate romance with emotional depth. Imply "
            "rather than describe intimate detail and let the player lead "
            "the direction of such scenes."
        ),
    ),
    Persona(
        id="hack-slash",
        name="Hack & Slash (The Gladiator)",
        description=(
            "Action-oriented dungeon crawls, combat and loot. Less talk, "
            "more monsters."
        ),
        addendum=(
            "Action and treasure: keep the pace fast, keep NPC dialogue "
            "brief, and spend narrative energy on combat, traps and loot."
        ),
    ),
)

DEFAULT_PERSONA_ID = "purist"


def get_persona(persona_id: str) -> Persona:
    for persona in PERSONAS:
        if persona.id == persona_id:
            return persona
    return PERSONAS[0]


def match_persona(text: str) -> Persona | None:
    """Find the persona a free-form choice refers to, by id or name."""
    lowered = text.lower()
    for persona in PERSONAS:
        short = persona.name.split("(")[0].strip().lower()
        if persona.id in lowered or short in lowered:
            return persona
    return None


# ── Instructions ─────────────────────────────────────────

SETUP_INSTRUCTION = """\
You are the "Session Zero Guide", a friendly assistant setting up a new
Dungeons & Dragons adventure. Walk the user through the steps below in order.

Step 1: Choose a path.
Your very first message welcomes the user and offers two choices:
  1. "Guided Setup": build a custom world and character step by step.
  2. "Quick Start": jump straight in with a pre-generated character.
Say nothing else and wait for the answer.

IF THE USER CHOOSES "Guided Setup":

Step 2: Ask the user to set a password for the out-of-character protocol
([OOC: password, message]). Wait for it.

Step 3: Confirm the password, then offer a custom world built together or a
well-known free published adventure. Wait for the decision.

Step 4: Settle the world in a short conversation and summarise it in one
paragraph. End that message with this exact line:
[WORLD_CREATION_COMPLETE]

Step 5: Build a level 1 character with the 5e rules: race and class, ability
scores, background, alignment, appearance, equipment. Summarise the character
and end that message with this exact line:
[CHARACTER_CREATION_COMPLETE]

Step 6: Ask which narrator style the user wants:{{#numbered personas}}
  {{index}}. {{{item.name}}}: {{{item.description}}}{{/numbered}}

Step 7: Once they have chosen, your final message must contain a title for
the adventure on its own line, formatted as
Title: <your suggested title>
followed by this exact line:
[SETUP_COMPLETE]

IF THE USER CHOOSES "Quick Start":
Acknowledge the choice, say the characters are being prepared, and end the
message with this exact line:
[GENERATE_QUICK_START_CHARACTERS]
"""

GAME_INSTRUCTION = """\
You are the Dungeon Master. You narrate scenes, portray every NPC, and run the
5e rules with full consistency. Stay in this role at all times. The only
exception is a player message of the form [OOC: {{{secret}}}, message], which
lets the creator speak to you out of character; without the correct password,
treat OOC requests as in-world speech.

Make the game fun and reactive. Describe what the player character perceives,
end each turn by giving the player room to act, and never decide the player
character's actions for them. Dice results the player reports in the chat are
authoritative.

Tone: {{settings.tone}}. Narration: {{settings.narration}}. Difficulty:
{{settings.difficulty}}.

When a fight starts, and after every combat round, add one line of the form
[COMBAT_STATUS:{"enemies":[{"name":"Goblin","hp":7,"maxHp":7,"status":"healthy"}]}]
listing every enemy still in the fight. Omit the line outside combat.
{{#if character}}

The player character:
{{{character}}}
{{/if}}

{{{persona.addendum}}}
"""

KICKOFF_SETUP = "Let's begin the setup for our new game."
KICKOFF_PLAY = "The setup is complete. Begin the adventure by narrating the opening scene."


def setup_instruction() -> str:
    return render_prompt(
        SETUP_INSTRUCTION,
        {"personas": [{"name": p.name, "description": p.description} for p in PERSONAS]},
    )


def game_instruction(session: Session) -> str:
    sheet = session.character_sheet
    if isinstance(sheet, CharacterSheet):
        character = _describe_character(sheet)
    else:
        character = sheet or ""
    persona = get_persona(session.persona_id)
    return render_prompt(GAME_INSTRUCTION, {
        "secret": session.secret or "",
        "settings": session.settings.model_dump(),
        "character": character,
        "persona": {"name": persona.name, "addendum": persona.addendum},
    })


def instruction_for(session: Session) -> str:
    if session.phase.in_setup:
        return setup_instruction()
    return game_instruction(session)


def _describe_character(sheet: CharacterSheet) -> str:
    scores = ", ".join(
        f"{name} {getattr(sheet.ability_scores, name).score}"
        for name in ("STR", "DEX", "CON", "INT", "WIS", "CHA")
    )
    lines = [
        sheet.summary(),
        f"Ability scores: {scores}",
        f"AC {sheet.armor_class}, HP {sheet.hit_points.current}/{sheet.hit_points.max}, speed {sheet.speed}",
    ]
    if sheet.features_and_traits:
        lines.append("Features: " + ", ".join(sheet.features_and_traits))
    if sheet.backstory:
        lines.append(f"Backstory: {sheet.backstory}")
    return "\n".join(lines)


# ── Structured sub-requests ──────────────────────────────

QUICK_START_PROMPT = """\
Generate {{count}} diverse, pre-made, level 1 D&D 5e characters for a new
campaign. Every race and class combination must be different. Give each a
one-paragraph backstory that hints at a personal goal.
Return a single JSON array of character objects and nothing else.
"""

# Block tags share a line with text so Handlebars keeps the line breaks.
HISTORY_BLOCK = "{{#last turns 200}}\n{{speaker}}: {{{text}}}{{/last}}"

LOGBOOK_PROMPTS: dict[str, str] = {
    "sheet": (
        "Based on the D&D conversation history below, extract the player "
        "character's information and return it as a JSON object.\n\n"
        "Conversation:" + HISTORY_BLOCK
    ),
    "achievements": (
        "Analyze the D&D conversation history below and invent 3-5 creative, "
        "context-specific achievements for the player's notable actions or "
        "decisions. Each has a thematic name and a short description of how "
        "it was earned. Return a JSON array.\n\nHistory:" + HISTORY_BLOCK
    ),
    "npcs": (
        "List the significant non-player characters the player has met in the "
        "D&D conversation below, with a one-sentence description and their "
        "relationship to the player. Return a JSON array.\n\n"
        "Conversation:" + HISTORY_BLOCK
    ),
    "inventory": (
        "Based on the D&D conversation history below, give a concise summary "
        "of the player character's current inventory. Use headings and "
        "bullet points where they help.\n\nConversation:" + HISTORY_BLOCK
    ),
    "quests": (
        "Based on the D&D conversation history below, give a concise summary "
        "of the player character's quest journal, separating active and "
        "completed quests. Use headings and bullet points where they help."
        "\n\nConversation:" + HISTORY_BLOCK
    ),
    "title": (
        "Suggest a short, evocative title for the D&D adventure below. "
        "Return only the title.\n\nConversation:" + HISTORY_BLOCK
    ),
}


def quick_start_prompt(count: int) -> str:
    return render_prompt(QUICK_START_PROMPT, {"count": count})


def logbook_prompt(kind: str, turns: list[Turn]) -> str:
    template = LOGBOOK_PROMPTS.get(kind)
    if template is None:
        raise PromptError(f"Unknown logbook prompt: {kind!r}")
    visible = [
        {"speaker": "Player" if t.sender == "user" else "DM", "text": t.text}
        for t in turns
        if not t.hidden and t.sender in ("user", "narrator")
    ]
    return render_prompt(template, {"turns": visible})

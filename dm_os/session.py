"""Session lifecycle state machine.

A session walks through its setup phases before reaching steady-state play:

  guided ─┬─ "guided" choice ──▶ password_capture ── password ──▶ world_creation
          │                                                          │ [WORLD_CREATION_COMPLETE]
          │                                                          ▼
          │                      narrator_selection ◀── [CHARACTER_...] ── character_creation
          │                              │ [SETUP_COMPLETE] (from any setup phase)
          │                              ▼
          │                         steady_state  ◀── password ── quick_start_password
          │                                                          ▲ character chosen
          └─ [GENERATE_QUICK_START_CHARACTERS] ──▶ quick_start_selection

The transition table (next_phase) is a pure function of phase, parsed signal
and user text. SessionMachine does the I/O around it: local command
interception, the narrator exchange, streaming into the view, the
quick-start sub-request, persistence, and the scene kickoff that opens play.

Per-session mutable state (the open narrator exchange, the in-flight and
data-generation guards, the cancellation counter) lives on SessionContext,
one per session id, held by SessionRegistry.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from dm_os.cancel import GenerationCounter
from dm_os.dice import is_roll_command, roll_dice
from dm_os.library import SessionLibrary
from dm_os.logbook import Logbook, MalformedResponseError
from dm_os.migrate import DEFAULT_TITLE, new_session_id, now_ms
from dm_os.models import Phase, Session, Turn, replay_history
from dm_os.narrator import Narrator, NarratorChat, NarratorError, is_credential_error
from dm_os.prompts import (
    DEFAULT_PERSONA_ID,
    KICKOFF_PLAY,
    KICKOFF_SETUP,
    game_instruction,
    get_persona,
    instruction_for,
    match_persona,
    setup_instruction,
)
from dm_os.retry import RetryPolicy
from dm_os.signals import (
    CharacterCreationComplete,
    CombatStatus,
    QuickStartRequested,
    SetupComplete,
    Signal,
    WorldCreationComplete,
    parse_response,
)
from dm_os.view import NullView, ViewSink

logger = logging.getLogger(__name__)

EASTER_EGG_TRIGGER = "who is the architect"
EASTER_EGG_TEXT = (
    "The simulation flickers for a moment, and the world goes silent. A single "
    "line of plain text hangs in the void before you:\n\n"
    "'This world was built by Justin Brisson.'"
)

SETUP_FAILURE = "The setup guide seems to have gotten lost. Please try again."
PLAY_FAILURE = "The DM seems to be pondering deeply ... and has gone quiet. Please try again."
CREDENTIAL_FAILURE = (
    "The narrator service rejected the request. Check that the API key is "
    "configured and valid, then try again."
)
QUICK_START_FAILURE = "The quick-start characters could not be prepared. Please try again."

LOADING_SETUP = "..."
LOADING_PLAY = "The DM is thinking..."
LOADING_KICKOFF = "The DM is preparing the world..."
LOADING_QUICK_START = "Preparing your characters..."

LOGBOOK_KINDS = ("sheet", "achievements", "npcs", "inventory", "quests", "title")

_GUIDED_CHOICE_RE = re.compile(
    r"^\s*(?:(?:the\s+)?guided(?:\s+setup)?\b|1\s*[.)]?\s*$)", re.IGNORECASE
)

# Forward-only sentinel edges: a narrator that skips a step still lands
# in the right place.
_WORLD_FROM = (Phase.GUIDED, Phase.PASSWORD_CAPTURE, Phase.WORLD_CREATION)
_CHARACTER_FROM = _WORLD_FROM + (Phase.CHARACTER_CREATION,)


def failure_message(exc: BaseException, in_setup: bool) -> str:
    if is_credential_error(exc):
        return CREDENTIAL_FAILURE
    return SETUP_FAILURE if in_setup else PLAY_FAILURE


def next_phase(phase: Phase, signal: Signal | None, user_text: str = "") -> Phase:
    """Pure transition table. Steady state never transitions."""
    if not phase.in_setup:
        return phase
    if isinstance(signal, SetupComplete):
        return Phase.STEADY_STATE
    if isinstance(signal, QuickStartRequested):
        return Phase.QUICK_START_SELECTION if phase is Phase.GUIDED else phase
    if isinstance(signal, CharacterCreationComplete):
        return Phase.NARRATOR_SELECTION if phase in _CHARACTER_FROM else phase
    if isinstance(signal, WorldCreationComplete):
        return Phase.CHARACTER_CREATION if phase in _WORLD_FROM else phase

    text = user_text.strip()
    if phase is Phase.GUIDED and _GUIDED_CHOICE_RE.search(text):
        return Phase.PASSWORD_CAPTURE
    if phase is Phase.PASSWORD_CAPTURE and text:
        return Phase.WORLD_CREATION
    if phase is Phase.QUICK_START_PASSWORD and text:
        return Phase.STEADY_STATE
    return phase


def _opening_history(turns: list[Turn]) -> list[Turn]:
    """Replay for a fresh exchange. The next submit is a user message, so a
    trailing unanswered user turn is left out."""
    history = replay_history(turns)
    while history and history[-1].sender == "user":
        history.pop()
    return history


# ── Per-session state ────────────────────────────────────


@dataclass
class SessionContext:
    session: Session
    chat: NarratorChat | None = None
    sending: bool = False
    generating: bool = False
    generation: GenerationCounter = field(default_factory=GenerationCounter)

    def invalidate(self) -> None:
        """Drop the open exchange and any pending logbook results."""
        self.generation.advance()
        self.chat = None


class SessionRegistry:
    def __init__(self) -> None:
        self._contexts: dict[str, SessionContext] = {}

    def context_for(self, session: Session) -> SessionContext:
        ctx = self._contexts.get(session.id)
        if ctx is not None and ctx.session is not session and not ctx.sending:
            # The record was replaced (e.g. by an overwriting import).
            ctx.invalidate()
            ctx = None
        if ctx is None:
            ctx = SessionContext(session)
            self._contexts[session.id] = ctx
        return ctx

    def adopt(self, ctx: SessionContext) -> SessionContext:
        self._contexts[ctx.session.id] = ctx
        return ctx

    def discard(self, session_id: str) -> None:
        ctx = self._contexts.pop(session_id, None)
        if ctx is not None:
            ctx.invalidate()


@dataclass
class SubmitResult:
    accepted: bool
    outcome: str


# ── New sessions ─────────────────────────────────────────


async def start_new_session(
    library: SessionLibrary,
    narrator: Narrator,
    view: ViewSink | None = None,
    registry: SessionRegistry | None = None,
    persona_id: str = DEFAULT_PERSONA_ID,
) -> SessionContext:
    """Open a setup exchange and store the new session.

    The session starts with the hidden kickoff turn and the narrator's
    welcome. A failed welcome stream raises and nothing is stored.
    """
    view = view or NullView()
    session = Session(
        id=new_session_id(),
        title=DEFAULT_TITLE,
        created_at=now_ms(),
        persona_id=get_persona(persona_id).id,
        phase=Phase.GUIDED,
    )
    chat = narrator.open(setup_instruction(), [])

    view.set_loading(LOADING_SETUP)
    buffer = ""
    try:
        async for fragment in chat.submit(KICKOFF_SETUP):
            buffer += fragment
            view.stream_update(buffer)
    finally:
        view.set_loading(None)

    session.turns.append(Turn(sender="user", text=KICKOFF_SETUP, hidden=True))
    welcome = Turn(sender="narrator", text=parse_response(buffer, in_play=False).text)
    session.turns.append(welcome)
    await library.add(session)
    view.render_turn(welcome)
    view.session_updated(session)
    logger.info("Started session %s", session.id)

    ctx = SessionContext(session, chat=chat)
    if registry is not None:
        registry.adopt(ctx)
    return ctx


# ── The machine ──────────────────────────────────────────


class SessionMachine:
    def __init__(
        self,
        context: SessionContext,
        narrator: Narrator,
        library: SessionLibrary,
        view: ViewSink | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.context = context
        self.narrator = narrator
        self.library = library
        self.view = view or NullView()
        self.logbook = Logbook(narrator, retry_policy)

    @property
    def session(self) -> Session:
        return self.context.session

    # -- entry points -----------------------------------------------------

    async def submit(self, text: str) -> SubmitResult:
        """Handle one user submission. Rejected while another is in flight."""
        text = text.strip()
        if not text:
            return SubmitResult(False, "empty")
        ctx = self.context
        if ctx.sending:
            logger.info("Session %s busy; submission rejected", self.session.id)
            return SubmitResult(False, "busy")
        ctx.sending = True
        try:
            return SubmitResult(True, await self._dispatch(text))
        finally:
            ctx.sending = False

    async def choose_quick_start(self, index: int) -> SubmitResult:
        ctx = self.context
        if ctx.sending:
            return SubmitResult(False, "busy")
        session = self.session
        if session.phase is not Phase.QUICK_START_SELECTION:
            return SubmitResult(False, "wrong_phase")
        if not 0 <= index < len(session.quick_start_characters):
            return SubmitResult(False, "invalid_choice")
        ctx.sending = True
        try:
            await self._select_quick_start(index)
            return SubmitResult(True, "quick_start_chosen")
        finally:
            ctx.sending = False

    async def regenerate(self, kind: str) -> SubmitResult:
        """Regenerate one logbook snapshot from the visible history.

        Runs under the data-generation guard, independent of the submission
        guard. The result is applied only if the session was not reset or
        deleted in the meantime.
        """
        if kind not in LOGBOOK_KINDS:
            raise ValueError(f"Unknown logbook kind: {kind!r}")
        ctx = self.context
        if ctx.generating:
            return SubmitResult(False, "busy")
        ctx.generating = True
        token = ctx.generation.issue()
        turns = list(self.session.turns)
        self.view.set_loading(f"Updating {kind}...")
        try:
            value = await self._generate_logbook(kind, turns)
        except (NarratorError, MalformedResponseError) as e:
            logger.warning("Logbook %s regeneration failed for %s: %s", kind, self.session.id, e)
            if token.valid:
                self.view.show_notice(f"Could not update the {kind}. {failure_message(e, False)}")
            return SubmitResult(True, "failed")
        finally:
            ctx.generating = False
            self.view.set_loading(None)

        if not token.valid:
            logger.info("Dropping stale %s result for %s", kind, self.session.id)
            return SubmitResult(True, "stale")
        self._apply_logbook(kind, value)
        await self.library.save()
        self.view.session_updated(self.session)
        return SubmitResult(True, "updated")

    # -- dispatch ---------------------------------------------------------

    async def _dispatch(self, text: str) -> str:
        if is_roll_command(text):
            return await self._roll(text)

        normalized = text.lower().replace("?", "").strip()
        if normalized == EASTER_EGG_TRIGGER:
            self.view.render_turn(Turn(sender="narrator", text=EASTER_EGG_TEXT))
            return "easter_egg"
        if normalized == "help":
            self.view.show_help()
            return "help"

        phase = self.session.phase
        if phase is Phase.QUICK_START_SELECTION:
            index = self._match_quick_start(text)
            if index is not None:
                await self._select_quick_start(index, user_text=text)
                return "quick_start_chosen"
        if phase is Phase.QUICK_START_PASSWORD:
            await self._capture_quick_start_secret(text)
            return "transition"
        return await self._exchange(text)

    async def _roll(self, text: str) -> str:
        session = self.session
        user_turn = Turn(sender="user", text=text)
        result = Turn(sender="system", text=roll_dice(text).describe())
        session.turns.extend([user_turn, result])
        self.view.render_turn(user_turn)
        self.view.render_turn(result)
        await self.library.save()
        return "dice"

    # -- narrator exchange ------------------------------------------------

    def _ensure_chat(self) -> NarratorChat:
        ctx = self.context
        if ctx.chat is None:
            session = self.session
            ctx.chat = self.narrator.open(instruction_for(session), _opening_history(session.turns))
        return ctx.chat

    async def _stream(self, chat: NarratorChat, text: str, label: str) -> Turn | None:
        """Stream one reply into a placeholder turn.

        Returns the placeholder (still holding the raw text) on success. On
        failure the placeholder is removed, an error turn takes its place
        and None is returned.
        """
        session = self.session
        placeholder = Turn(sender="narrator", text="")
        session.turns.append(placeholder)
        self.view.set_loading(label)
        buffer = ""
        try:
            async for fragment in chat.submit(text):
                buffer += fragment
                placeholder.text = buffer
                self.view.stream_update(buffer)
        except Exception as e:
            logger.warning("Narrator stream failed for %s: %s", session.id, e)
            for i, turn in enumerate(session.turns):
                if turn is placeholder:
                    del session.turns[i]
                    break
            self.view.set_loading(None)
            error = Turn(sender="error", text=failure_message(e, session.phase.in_setup))
            session.turns.append(error)
            self.view.render_turn(error)
            await self.library.save()
            return None
        self.view.set_loading(None)
        return placeholder

    async def _exchange(self, text: str) -> str:
        session = self.session
        phase = session.phase
        chat = self._ensure_chat()

        user_turn = Turn(sender="user", text=text)
        session.turns.append(user_turn)
        self.view.render_turn(user_turn)
        await self.library.save()

        reply = await self._stream(chat, text, LOADING_SETUP if phase.in_setup else LOADING_PLAY)
        if reply is None:
            return "failed"

        parsed = parse_response(reply.text, in_play=not phase.in_setup)
        reply.text = parsed.text
        self.view.render_turn(reply)

        if not phase.in_setup:
            if isinstance(parsed.signal, CombatStatus):
                if parsed.signal.enemies:
                    self.view.show_combat(parsed.signal.enemies)
                else:
                    self.view.hide_combat()
            await self.library.save()
            return "narrated"

        return await self._advance(text, parsed.signal)

    async def _advance(self, text: str, signal: Signal | None) -> str:
        session = self.session
        phase = session.phase
        target = next_phase(phase, signal, text)

        if phase is Phase.PASSWORD_CAPTURE:
            session.secret = text
        if phase is Phase.NARRATOR_SELECTION:
            persona = match_persona(text)
            if persona is not None:
                session.persona_id = persona.id
        if isinstance(signal, SetupComplete):
            session.title = signal.title
        if (
            target is not phase
            and target is Phase.QUICK_START_SELECTION
            and not await self._generate_quick_start()
        ):
            target = phase

        if target is phase:
            await self.library.save()
            self.view.session_updated(session)
            return "narrated"

        logger.info("Session %s: %s -> %s", session.id, phase.value, target.value)
        session.phase = target
        await self.library.save()
        self.view.session_updated(session)
        if target is Phase.STEADY_STATE:
            await self._kickoff()
        return "transition"

    async def _kickoff(self) -> None:
        """Open the game exchange and append the opening scene."""
        ctx = self.context
        session = self.session
        ctx.chat = self.narrator.open(game_instruction(session), _opening_history(session.turns))
        scene = await self._stream(ctx.chat, KICKOFF_PLAY, LOADING_KICKOFF)
        if scene is None:
            return
        parsed = parse_response(scene.text, in_play=True)
        scene.text = parsed.text
        self.view.render_turn(scene)
        if isinstance(parsed.signal, CombatStatus) and parsed.signal.enemies:
            self.view.show_combat(parsed.signal.enemies)
        await self.library.save()
        self.view.session_updated(session)

    # -- quick start ------------------------------------------------------

    async def _generate_quick_start(self) -> bool:
        session = self.session
        self.view.set_loading(LOADING_QUICK_START)
        try:
            characters = await self.logbook.quick_start_characters()
        except (NarratorError, MalformedResponseError) as e:
            logger.warning("Quick-start generation failed for %s: %s", session.id, e)
            message = CREDENTIAL_FAILURE if is_credential_error(e) else QUICK_START_FAILURE
            error = Turn(sender="error", text=message)
            session.turns.append(error)
            self.view.render_turn(error)
            self.view.show_notice(message)
            return False
        finally:
            self.view.set_loading(None)
        session.quick_start_characters = characters
        self.view.offer_quick_start(characters)
        return True

    def _match_quick_start(self, text: str) -> int | None:
        """Index of the character a typed choice names: a 1-based number or a name."""
        characters = self.session.quick_start_characters
        choice = text.strip().rstrip(".").strip()
        if choice.isdigit():
            index = int(choice) - 1
            return index if 0 <= index < len(characters) else None
        lowered = choice.lower()
        for i, sheet in enumerate(characters):
            if sheet.name and sheet.name.lower() in lowered:
                return i
        return None

    async def _select_quick_start(self, index: int, user_text: str | None = None) -> None:
        session = self.session
        sheet = session.quick_start_characters[index]
        if user_text is not None:
            user_turn = Turn(sender="user", text=user_text)
            session.turns.append(user_turn)
            self.view.render_turn(user_turn)

        session.character_sheet = sheet
        session.title = f"{sheet.name}'s Adventure" if sheet.name else DEFAULT_TITLE
        session.phase = Phase.QUICK_START_PASSWORD
        logger.info("Session %s: quick-start character %d chosen", session.id, index + 1)

        prompt = Turn(
            sender="system",
            text=(
                f"You have chosen {sheet.summary()}. Set a password for the "
                "out-of-character protocol ([OOC: password, message]) to begin."
            ),
        )
        session.turns.append(prompt)
        self.view.render_turn(prompt)
        await self.library.save()
        self.view.session_updated(session)

    async def _capture_quick_start_secret(self, text: str) -> None:
        session = self.session
        session.secret = text
        # The password itself is never shown or replayed.
        session.turns.append(Turn(sender="user", text=text, hidden=True))
        confirmation = Turn(sender="system", text="Password set. Your adventure begins...")
        session.turns.append(confirmation)
        self.view.render_turn(confirmation)
        session.phase = next_phase(Phase.QUICK_START_PASSWORD, None, text)
        logger.info("Session %s: quick_start_password -> steady_state", session.id)
        await self.library.save()
        self.view.session_updated(session)
        await self._kickoff()

    # -- logbook ----------------------------------------------------------

    async def _generate_logbook(self, kind: str, turns: list[Turn]):
        logbook = self.logbook
        if kind == "sheet":
            return await logbook.character_sheet(turns)
        if kind == "achievements":
            return await logbook.achievements(turns)
        if kind == "npcs":
            return await logbook.npcs(turns)
        if kind == "inventory":
            return await logbook.inventory(turns)
        if kind == "quests":
            return await logbook.quest_log(turns)
        return await logbook.suggest_title(turns)

    def _apply_logbook(self, kind: str, value) -> None:
        session = self.session
        if kind == "sheet":
            session.character_sheet = value
        elif kind == "achievements":
            session.achievements = value
        elif kind == "npcs":
            session.npcs = value
        elif kind == "inventory":
            session.inventory = value
        elif kind == "quests":
            session.quest_log = value
        else:
            session.title = value

"""View sink: what the state machine tells the presentation layer.

The machine never renders anything itself. It reports turns, streaming
progress, loading state and notices to whatever implements ViewSink; the
HTTP layer forwards them as stream events and tests record them.
"""

from __future__ import annotations

from typing import Protocol

from dm_os.models import CharacterSheet, Enemy, Session, Turn


class ViewSink(Protocol):
    def render_turn(self, turn: Turn) -> None: ...

    def set_loading(self, label: str | None) -> None:
        """Show a loading indicator with a label, or clear it with None."""
        ...

    def stream_update(self, text: str) -> None:
        """Replace the text of the in-progress narrator turn."""
        ...

    def show_notice(self, message: str) -> None: ...

    def show_help(self) -> None: ...

    def show_combat(self, enemies: list[Enemy]) -> None: ...

    def hide_combat(self) -> None: ...

    def offer_quick_start(self, characters: list[CharacterSheet]) -> None: ...

    def session_updated(self, session: Session) -> None: ...


class NullView:
    """Discards everything."""

    def render_turn(self, turn: Turn) -> None:
        pass

    def set_loading(self, label: str | None) -> None:
        pass

    def stream_update(self, text: str) -> None:
        pass

    def show_notice(self, message: str) -> None:
        pass

    def show_help(self) -> None:
        pass

    def show_combat(self, enemies: list[Enemy]) -> None:
        pass

    def hide_combat(self) -> None:
        pass

    def offer_quick_start(self, characters: list[CharacterSheet]) -> None:
        pass

    def session_updated(self, session: Session) -> None:
        pass

"""Shared objects the route handlers work with, kept on app.state."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from dm_os.config import Settings
from dm_os.library import SessionLibrary
from dm_os.models import Session
from dm_os.narrator import Narrator
from dm_os.session import SessionContext, SessionMachine, SessionRegistry
from dm_os.view import ViewSink


@dataclass
class AppState:
    settings: Settings
    library: SessionLibrary
    narrator: Narrator
    registry: SessionRegistry

    def require_session(self, session_id: str) -> Session:
        session = self.library.get(session_id)
        if session is None:
            raise HTTPException(404, "Session not found")
        return session

    def context(self, session_id: str) -> SessionContext:
        return self.registry.context_for(self.require_session(session_id))

    def machine(self, ctx: SessionContext, view: ViewSink) -> SessionMachine:
        return SessionMachine(
            ctx, self.narrator, self.library, view=view,
            retry_policy=self.settings.retry_policy(),
        )


def get_state(request: Request) -> AppState:
    return request.app.state.dm

"""Session CRUD, chat, quick start, logbook and per-session export endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from backend.state import AppState, get_state
from backend.streaming import QueueView
from dm_os.narrator import NarratorError
from dm_os.session import LOGBOOK_KINDS, failure_message, start_new_session

from .models import ChatBody, QuickStartChoice, UpdateSession

router = APIRouter()


@router.get("/sessions")
async def list_sessions(state: AppState = Depends(get_state)):
    """List sessions for the sidebar, pinned first, newest first."""
    return [s.summary() for s in state.library.ordered()]


@router.post("/sessions", status_code=201)
async def create_session(state: AppState = Depends(get_state)):
    """Start a new session: the narrator's welcome is generated before returning."""
    prefs = await state.library.get_preferences()
    try:
        ctx = await start_new_session(
            state.library, state.narrator,
            registry=state.registry, persona_id=prefs["persona"],
        )
    except NarratorError as e:
        raise HTTPException(502, failure_message(e, in_setup=True))
    return ctx.session.to_json()


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, state: AppState = Depends(get_state)):
    """Get a full session record."""
    return state.require_session(session_id).to_json()


@router.patch("/sessions/{session_id}")
async def update_session(session_id: str, body: UpdateSession, state: AppState = Depends(get_state)):
    """Rename and/or pin a session."""
    session = state.require_session(session_id)
    if body.title is not None:
        await state.library.rename(session_id, body.title)
    if body.pinned is not None and body.pinned != session.pinned:
        await state.library.toggle_pin(session_id)
    return session.to_json()


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, state: AppState = Depends(get_state)):
    """Delete a session. Pending logbook results for it are dropped."""
    if not await state.library.delete(session_id):
        raise HTTPException(404, "Session not found")
    state.registry.discard(session_id)
    return {"ok": True}


@router.post("/sessions/{session_id}/chat")
async def chat(session_id: str, body: ChatBody, state: AppState = Depends(get_state)):
    """Submit one user message; the reply is streamed as NDJSON events."""
    ctx = state.context(session_id)
    if ctx.sending:
        raise HTTPException(409, "A message is already being processed")
    if not body.message.strip():
        raise HTTPException(400, "Message is empty")
    view = QueueView()
    machine = state.machine(ctx, view)
    return StreamingResponse(view.run(machine.submit(body.message)), media_type="application/x-ndjson")


@router.post("/sessions/{session_id}/quick-start")
async def quick_start(session_id: str, body: QuickStartChoice, state: AppState = Depends(get_state)):
    """Pick one of the offered quick-start characters."""
    ctx = state.context(session_id)
    view = QueueView()
    result = await state.machine(ctx, view).choose_quick_start(body.index)
    if result.outcome == "busy":
        raise HTTPException(409, "A message is already being processed")
    if not result.accepted:
        raise HTTPException(400, f"Cannot choose a quick-start character ({result.outcome})")
    return {"session": ctx.session.to_json(), "events": view.drain()}


@router.post("/sessions/{session_id}/logbook/{kind}")
async def regenerate_logbook(session_id: str, kind: str, state: AppState = Depends(get_state)):
    """Regenerate one derived-state snapshot (sheet, achievements, npcs, inventory, quests, title)."""
    if kind not in LOGBOOK_KINDS:
        raise HTTPException(400, f"Unknown logbook kind: {kind}")
    ctx = state.context(session_id)
    view = QueueView()
    result = await state.machine(ctx, view).regenerate(kind)
    if not result.accepted:
        raise HTTPException(409, "The logbook is already being updated")
    return {"outcome": result.outcome, "session": ctx.session.to_json(), "events": view.drain()}


@router.get("/sessions/{session_id}/export")
async def export_session(session_id: str, state: AppState = Depends(get_state)):
    """Download one session as a JSON backup."""
    data = state.library.export_session(session_id)
    if data is None:
        raise HTTPException(404, "Session not found")
    return JSONResponse(
        data,
        headers={"Content-Disposition": f'attachment; filename="{session_id}.json"'},
    )

"""Health check, collection import/export, user context, preferences and personas."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from backend.state import AppState, get_state
from dm_os.prompts import PERSONAS

from .models import ContextEntry, ImportBody, UpdatePreferences

router = APIRouter()


@router.get("/health")
async def health(state: AppState = Depends(get_state)):
    """Health check."""
    return {
        "status": "ok",
        "narrator": {"url": state.settings.narrator_url, "format": state.settings.narrator_format},
    }


@router.get("/export")
async def export_all(state: AppState = Depends(get_state)):
    """Download every session plus user context as one backup file."""
    return JSONResponse(
        state.library.export_all(),
        headers={"Content-Disposition": 'attachment; filename="dm-os-backup.json"'},
    )


@router.post("/import")
async def import_backup(body: ImportBody, state: AppState = Depends(get_state)):
    """Import a single session, a collection backup, or a bare list of sessions."""
    result = await state.library.import_payload(body.data, overwrite=body.overwrite)
    for session_id in result.replaced:
        state.registry.discard(session_id)
    return {
        "imported": result.imported,
        "replaced": result.replaced,
        "skipped": result.skipped,
        "contextAdded": result.context_added,
    }


@router.get("/context")
async def get_context(state: AppState = Depends(get_state)):
    """Get the user context list shared by all sessions."""
    return state.library.user_context


@router.post("/context")
async def add_context(body: ContextEntry, state: AppState = Depends(get_state)):
    """Add a user context entry (duplicates and blanks are ignored)."""
    return await state.library.add_context(body.text)


@router.delete("/context/{index}")
async def delete_context(index: int, state: AppState = Depends(get_state)):
    """Delete a user context entry by index."""
    try:
        return await state.library.delete_context(index)
    except IndexError:
        raise HTTPException(404, "Context entry not found")


@router.get("/preferences")
async def get_preferences(state: AppState = Depends(get_state)):
    """Get UI preferences (theme, font size, default narrator persona)."""
    return await state.library.get_preferences()


@router.patch("/preferences")
async def update_preferences(body: UpdatePreferences, state: AppState = Depends(get_state)):
    """Update UI preferences (partial)."""
    return await state.library.set_preferences(body.model_dump(exclude_none=True))


@router.get("/personas")
async def list_personas():
    """List the narrator personas offered during setup."""
    return [
        {"id": p.id, "name": p.name, "description": p.description}
        for p in PERSONAS
    ]

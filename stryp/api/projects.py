"""Project and panel endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from stryp.api.deps import get_studio
from stryp.models import DEFAULT_SETTINGS, PROJECT_MODES, new_id, new_panel
from stryp.services.player import build_offline_player, export_filename
from stryp.services.studio import StudioSession

router = APIRouter(prefix="/api/projects", tags=["projects"])


class ProjectCreate(BaseModel):
    title: str
    summary: str = ""
    mode: str = "static"


class ProjectUpdate(BaseModel):
    title: str | None = None
    summary: str | None = None
    mode: str | None = None
    selected_character_ids: list[str] | None = None
    scene_description: str | None = None
    mood: str | None = None


class PanelsReplace(BaseModel):
    panels: list[dict]


class PanelCreate(BaseModel):
    description: str = ""
    dialogue: str = ""
    character_id: str | None = None


class PanelUpdate(BaseModel):
    description: str | None = None
    dialogue: str | None = None
    character_id: str | None = None


def _check_mode(mode: str | None):
    if mode is not None and mode not in PROJECT_MODES:
        raise HTTPException(400, f"Unknown mode: {mode}")


@router.get("")
def list_projects(studio: StudioSession = Depends(get_studio)):
    return studio.store.list_projects(studio.user_id)


@router.post("")
async def create_project(body: ProjectCreate, studio: StudioSession = Depends(get_studio)):
    _check_mode(body.mode)
    return await studio.store.save_project(studio.user_id, {
        "id": new_id(),
        "title": body.title,
        "summary": body.summary,
        "mode": body.mode,
        "selected_character_ids": [],
        "panels": [],
    })


@router.get("/{project_id}")
def get_project(project_id: str, studio: StudioSession = Depends(get_studio)):
    return studio.sync.get(project_id)


@router.patch("/{project_id}")
async def update_project(project_id: str, body: ProjectUpdate, studio: StudioSession = Depends(get_studio)):
    _check_mode(body.mode)
    return await studio.sync.update_metadata(project_id, body.model_dump(exclude_unset=True))


@router.delete("/{project_id}")
async def delete_project(project_id: str, studio: StudioSession = Depends(get_studio)):
    studio.sync.forget(project_id)
    await studio.store.delete_project(studio.user_id, project_id)
    return {"ok": True}


@router.get("/{project_id}/state")
def get_state(project_id: str, studio: StudioSession = Depends(get_studio)):
    """Project plus per-panel job states, status texts and upload-error markers."""
    return studio.sync.state(project_id)


@router.post("/{project_id}/save")
async def save_project(project_id: str, studio: StudioSession = Depends(get_studio)):
    return await studio.sync.save_now(project_id)


# ===== Panels =====

@router.put("/{project_id}/panels")
async def replace_panels(project_id: str, body: PanelsReplace, studio: StudioSession = Depends(get_studio)):
    """Replace the whole panel list (reorder, bulk edit)."""
    project = await studio.sync.replace_panels(project_id, body.panels)
    return project["panels"]


@router.post("/{project_id}/panels")
async def add_panel(project_id: str, body: PanelCreate, studio: StudioSession = Depends(get_studio)):
    panel = new_panel(body.description, body.dialogue, body.character_id)
    await studio.sync.add_panels(project_id, [panel])
    return studio.sync.panel(project_id, panel["id"])


@router.patch("/{project_id}/panels/{panel_id}")
async def update_panel(project_id: str, panel_id: str, body: PanelUpdate,
                       studio: StudioSession = Depends(get_studio)):
    return await studio.sync.apply_panel_change(project_id, panel_id, body.model_dump(exclude_unset=True))


@router.delete("/{project_id}/panels/{panel_id}")
async def delete_panel(project_id: str, panel_id: str, studio: StudioSession = Depends(get_studio)):
    await studio.sync.delete_panel(project_id, panel_id)
    return {"ok": True}


# ===== Export =====

@router.get("/{project_id}/export", response_class=HTMLResponse)
def export_project(project_id: str, studio: StudioSession = Depends(get_studio)):
    """Download the project as a standalone HTML player."""
    project = studio.sync.get(project_id)
    characters = studio.store.list_characters(studio.user_id)
    settings = studio.store.get_settings(studio.user_id) or DEFAULT_SETTINGS
    html = build_offline_player(project, characters, settings)
    filename = export_filename(project.get("title", ""))
    return HTMLResponse(html, headers={"Content-Disposition": f'attachment; filename="{filename}"'})

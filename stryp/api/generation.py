"""Script, panel media and batch generation endpoints."""

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel

from stryp.api.deps import get_studio
from stryp.services.studio import StudioSession

router = APIRouter(prefix="/api/projects/{project_id}", tags=["generation"])


class ScriptRequest(BaseModel):
    scene_description: str
    mood: str = ""
    character_ids: list[str] | None = None


class PanelGenerateRequest(BaseModel):
    location_id: str | None = None


class BatchRequest(BaseModel):
    confirm: bool = False
    location_id: str | None = None


@router.post("/script")
async def generate_script(project_id: str, body: ScriptRequest, studio: StudioSession = Depends(get_studio)):
    panels = await studio.generate_script(
        project_id, body.scene_description, body.mood, body.character_ids,
    )
    return {"ok": True, "panels": panels}


@router.post("/panels/{panel_id}/image")
async def generate_image(project_id: str, panel_id: str, body: PanelGenerateRequest | None = None,
                         studio: StudioSession = Depends(get_studio)):
    location_id = body.location_id if body else None
    return await studio.generate_image(project_id, panel_id, location_id=location_id)


@router.post("/panels/{panel_id}/video")
async def generate_video(project_id: str, panel_id: str, body: PanelGenerateRequest | None = None,
                         studio: StudioSession = Depends(get_studio)):
    location_id = body.location_id if body else None
    return await studio.generate_video(project_id, panel_id, location_id=location_id)


@router.post("/panels/{panel_id}/audio")
async def generate_audio(project_id: str, panel_id: str, studio: StudioSession = Depends(get_studio)):
    return await studio.generate_audio(project_id, panel_id)


@router.post("/panels/{panel_id}/upload")
async def upload_panel_image(project_id: str, panel_id: str, file: UploadFile = File(...),
                             studio: StudioSession = Depends(get_studio)):
    data = await file.read()
    return await studio.upload_panel_image(
        project_id, panel_id, data, file.content_type or "", file.filename or "",
    )


# ===== Batches =====

@router.post("/batches/visuals")
async def generate_all_visuals(project_id: str, body: BatchRequest, studio: StudioSession = Depends(get_studio)):
    """Start generating every missing image (or video, in video mode).

    Without confirm the eligible count is reported and nothing starts.
    """
    return await studio.batch.generate_all_visuals(
        project_id, lambda count: body.confirm, location_id=body.location_id, background=True,
    )


@router.post("/batches/audio")
async def generate_all_audio(project_id: str, body: BatchRequest, studio: StudioSession = Depends(get_studio)):
    return await studio.batch.generate_all_audio(
        project_id, lambda count: body.confirm, background=True,
    )


@router.post("/batches/stop")
def stop_batch(project_id: str, studio: StudioSession = Depends(get_studio)):
    return {"ok": True, "stopping": studio.batch.stop(project_id)}

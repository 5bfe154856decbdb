"""Per-user settings and voice catalogue."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from stryp.api.deps import get_studio
from stryp.models import AVAILABLE_VOICES, DEFAULT_SETTINGS
from stryp.services.studio import StudioSession

router = APIRouter(prefix="/api", tags=["settings"])


class SettingsUpdate(BaseModel):
    default_narrator_voice_id: str | None = None
    panel_delay: int | None = None


@router.get("/settings")
def get_settings(studio: StudioSession = Depends(get_studio)):
    return {**DEFAULT_SETTINGS, **(studio.store.get_settings(studio.user_id) or {})}


@router.put("/settings")
async def save_settings(body: SettingsUpdate, studio: StudioSession = Depends(get_studio)):
    return await studio.store.save_settings(studio.user_id, body.model_dump(exclude_unset=True))


@router.get("/voices")
def list_voices():
    return AVAILABLE_VOICES

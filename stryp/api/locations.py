"""Location vault endpoints."""

from fastapi import APIRouter, Depends, File, Form, UploadFile

from stryp.api.deps import get_studio
from stryp.errors import NotFoundError
from stryp.services.studio import StudioSession

router = APIRouter(prefix="/api/locations", tags=["locations"])


@router.get("")
def list_locations(studio: StudioSession = Depends(get_studio)):
    return studio.store.list_locations(studio.user_id)


@router.post("")
async def save_location(
    name: str = Form(...),
    description: str = Form(""),
    id: str | None = Form(None),
    files: list[UploadFile] = File(default=[]),
    studio: StudioSession = Depends(get_studio),
):
    """Create or update a location; new files are appended to its media."""
    location = {"name": name, "description": description}
    if id:
        existing = studio.store.get_location(studio.user_id, id)
        if not existing:
            raise NotFoundError("Location not found")
        location = {**existing, **location}
    return await studio.save_location(location, files)


@router.delete("/{location_id}")
async def delete_location(location_id: str, studio: StudioSession = Depends(get_studio)):
    location = studio.store.get_location(studio.user_id, location_id)
    if not location:
        raise NotFoundError("Location not found")
    await studio.store.delete_location(studio.user_id, location_id)
    for item in location.get("media") or []:
        await studio.storage.delete(item["url"])
    return {"ok": True}


@router.delete("/{location_id}/media/{media_id}")
async def delete_location_media(location_id: str, media_id: str, studio: StudioSession = Depends(get_studio)):
    location = studio.store.get_location(studio.user_id, location_id)
    if not location:
        raise NotFoundError("Location not found")
    media = location.get("media") or []
    removed = [m for m in media if m["id"] == media_id]
    if not removed:
        raise NotFoundError("Media item not found")
    saved = await studio.store.save_location(
        studio.user_id, {**location, "media": [m for m in media if m["id"] != media_id]},
    )
    await studio.storage.delete(removed[0]["url"])
    return saved


@router.post("/{location_id}/analyze")
async def analyze_location(location_id: str, studio: StudioSession = Depends(get_studio)):
    """Describe the location from all its media and store the result."""
    return await studio.analyze_location(location_id)

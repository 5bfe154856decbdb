"""Character vault endpoints."""

from fastapi import APIRouter, Depends, File, Form, UploadFile

from stryp.api.deps import get_studio
from stryp.errors import NotFoundError
from stryp.services.studio import StudioSession

router = APIRouter(prefix="/api/characters", tags=["characters"])


@router.get("")
def list_characters(studio: StudioSession = Depends(get_studio)):
    return studio.store.list_characters(studio.user_id)


@router.post("")
async def save_character(
    name: str = Form(...),
    bio: str = Form(""),
    voice_id: str | None = Form(None),
    id: str | None = Form(None),
    image: UploadFile | None = File(None),
    image2: UploadFile | None = File(None),
    studio: StudioSession = Depends(get_studio),
):
    """Create or update a character. A primary reference image is required."""
    character = {"name": name, "bio": bio, "voice_id": voice_id or None}
    if id:
        existing = studio.store.get_character(studio.user_id, id)
        if not existing:
            raise NotFoundError("Character not found")
        character = {**existing, **character}
    return await studio.save_character(character, image=image, image2=image2)


@router.delete("/{character_id}")
async def delete_character(character_id: str, studio: StudioSession = Depends(get_studio)):
    character = studio.store.get_character(studio.user_id, character_id)
    if not character:
        raise NotFoundError("Character not found")
    await studio.store.delete_character(studio.user_id, character_id)
    for url in (character.get("image_url"), character.get("image_url2")):
        if url:
            await studio.storage.delete(url)
    return {"ok": True}


@router.post("/{character_id}/analyze")
async def analyze_character(character_id: str, studio: StudioSession = Depends(get_studio)):
    """Describe the character's appearance from its reference images."""
    return {"description": await studio.analyze_character(character_id)}

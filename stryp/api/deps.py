"""Shared router dependencies."""

from fastapi import Depends

from stryp.security import get_current_user
from stryp.services.studio import StudioSession, studio_registry


async def get_studio(user_id: str = Depends(get_current_user)) -> StudioSession:
    return await studio_registry.get(user_id)

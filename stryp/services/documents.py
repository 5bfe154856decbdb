"""Per-user document collections with live snapshot subscriptions.

Collections: projects, characters, locations, settings. Every write publishes
a fresh snapshot of the affected collection to the callbacks registered for
that user; subscribing pushes the initial snapshot immediately.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

from stryp.database import SessionLocal
from stryp.errors import NotFoundError
from stryp.models import (
    Project, Character, Location, Settings, User,
    PROJECT_MODES, VOICE_IDS, now_ms, sanitize_panels,
)

logger = logging.getLogger(__name__)

COLLECTIONS = ("projects", "characters", "locations", "settings")

PROJECT_METADATA_FIELDS = (
    "title", "summary", "mode", "selected_character_ids", "scene_description", "mood",
)

Callback = Callable[[Any], Any]


class DocumentStore:
    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory
        self._subscribers: dict[tuple[str, str], list[Callback]] = defaultdict(list)

    # ===== Subscriptions =====

    async def subscribe(self, user_id: str, collection: str, callback: Callback) -> Callable[[], None]:
        """Register callback for a collection and push the current snapshot.

        Returns an unsubscribe function.
        """
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        key = (user_id, collection)
        self._subscribers[key].append(callback)
        await self._deliver(callback, self.snapshot(user_id, collection))

        def unsubscribe():
            if callback in self._subscribers.get(key, []):
                self._subscribers[key].remove(callback)

        return unsubscribe

    def snapshot(self, user_id: str, collection: str):
        if collection == "projects":
            return self.list_projects(user_id)
        if collection == "characters":
            return self.list_characters(user_id)
        if collection == "locations":
            return self.list_locations(user_id)
        return self.get_settings(user_id)

    async def publish(self, user_id: str, collection: str):
        callbacks = list(self._subscribers.get((user_id, collection), []))
        if not callbacks:
            return
        data = self.snapshot(user_id, collection)
        for cb in callbacks:
            await self._deliver(cb, data)

    async def _deliver(self, callback: Callback, data):
        try:
            result = callback(data)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[documents] Subscriber callback failed")

    # ===== Users =====

    def upsert_user(self, user_id: str, display_name: str = "", email: str = "") -> dict:
        session = self._session_factory()
        try:
            user = session.get(User, user_id)
            if not user:
                user = User(id=user_id)
                session.add(user)
            user.display_name = display_name or user.display_name or ""
            user.email = email or user.email or ""
            session.commit()
            session.refresh(user)
            return user.to_dict()
        finally:
            session.close()

    # ===== Projects =====

    def list_projects(self, user_id: str) -> list[dict]:
        session = self._session_factory()
        try:
            rows = (
                session.query(Project).filter_by(user_id=user_id)
                .order_by(Project.created_at.desc()).all()
            )
            return [p.to_dict() for p in rows]
        finally:
            session.close()

    def get_project(self, user_id: str, project_id: str) -> dict | None:
        session = self._session_factory()
        try:
            project = session.get(Project, (user_id, project_id))
            return project.to_dict() if project else None
        finally:
            session.close()

    async def save_project(self, user_id: str, project: dict) -> dict:
        """Upsert a whole project document. Generation flags are always reset."""
        panels = project.get("panels")
        if panels is None:
            panels = project.get("storyboards", [])
        clean_panels = sanitize_panels(panels)

        session = self._session_factory()
        try:
            row = session.get(Project, (user_id, project["id"]))
            if not row:
                row = Project(
                    user_id=user_id, id=project["id"],
                    created_at=project.get("created_at") or now_ms(),
                )
                session.add(row)
            for field in PROJECT_METADATA_FIELDS:
                if field in project:
                    setattr(row, field, project[field])
            if row.mode not in PROJECT_MODES:
                row.mode = "static"
            row.panels = clean_panels
            row.updated_at = now_ms()
            session.commit()
            session.refresh(row)
            saved = row.to_dict()
        finally:
            session.close()

        logger.info("[documents] Saved project %s for user %s (%d panels)",
                    project["id"], user_id, len(clean_panels))
        await self.publish(user_id, "projects")
        return saved

    async def update_project_metadata(self, user_id: str, project_id: str, updates: dict) -> dict:
        session = self._session_factory()
        try:
            row = session.get(Project, (user_id, project_id))
            if not row:
                raise NotFoundError("Project not found")
            for field, val in updates.items():
                if field in PROJECT_METADATA_FIELDS:
                    setattr(row, field, val)
            row.updated_at = now_ms()
            session.commit()
            session.refresh(row)
            saved = row.to_dict()
        finally:
            session.close()
        await self.publish(user_id, "projects")
        return saved

    async def delete_project(self, user_id: str, project_id: str):
        session = self._session_factory()
        try:
            row = session.get(Project, (user_id, project_id))
            if not row:
                raise NotFoundError("Project not found")
            session.delete(row)
            session.commit()
        finally:
            session.close()
        await self.publish(user_id, "projects")

    # ===== Characters =====

    def list_characters(self, user_id: str) -> list[dict]:
        session = self._session_factory()
        try:
            rows = session.query(Character).filter_by(user_id=user_id).order_by(Character.id).all()
            return [c.to_dict() for c in rows]
        finally:
            session.close()

    def get_character(self, user_id: str, character_id: str | None) -> dict | None:
        if not character_id:
            return None
        session = self._session_factory()
        try:
            row = session.get(Character, (user_id, character_id))
            return row.to_dict() if row else None
        finally:
            session.close()

    async def save_character(self, user_id: str, character: dict) -> dict:
        voice_id = character.get("voice_id")
        if voice_id and voice_id not in VOICE_IDS:
            raise ValueError(f"Unknown voice: {voice_id}")
        session = self._session_factory()
        try:
            row = session.get(Character, (user_id, character["id"]))
            if not row:
                row = Character(user_id=user_id, id=character["id"])
                session.add(row)
            row.name = character["name"]
            row.bio = character.get("bio", "")
            row.image_url = character.get("image_url", "")
            row.image_url2 = character.get("image_url2") or ""
            row.voice_id = voice_id
            session.commit()
            session.refresh(row)
            saved = row.to_dict()
        finally:
            session.close()
        await self.publish(user_id, "characters")
        return saved

    async def delete_character(self, user_id: str, character_id: str):
        # Panels keep their character_id; lookups treat it as "no character".
        session = self._session_factory()
        try:
            row = session.get(Character, (user_id, character_id))
            if not row:
                raise NotFoundError("Character not found")
            session.delete(row)
            session.commit()
        finally:
            session.close()
        await self.publish(user_id, "characters")

    # ===== Locations =====

    def list_locations(self, user_id: str) -> list[dict]:
        session = self._session_factory()
        try:
            rows = (
                session.query(Location).filter_by(user_id=user_id)
                .order_by(Location.created_at.desc()).all()
            )
            return [loc.to_dict() for loc in rows]
        finally:
            session.close()

    def get_location(self, user_id: str, location_id: str | None) -> dict | None:
        if not location_id:
            return None
        session = self._session_factory()
        try:
            row = session.get(Location, (user_id, location_id))
            return row.to_dict() if row else None
        finally:
            session.close()

    async def save_location(self, user_id: str, location: dict) -> dict:
        session = self._session_factory()
        try:
            row = session.get(Location, (user_id, location["id"]))
            if not row:
                row = Location(
                    user_id=user_id, id=location["id"],
                    created_at=location.get("created_at") or now_ms(),
                )
                session.add(row)
            row.name = location["name"]
            row.description = location.get("description", "")
            if "visual_description" in location:
                row.visual_description = location["visual_description"]
            if "media" in location:
                row.media = list(location["media"] or [])
            session.commit()
            session.refresh(row)
            saved = row.to_dict()
        finally:
            session.close()
        await self.publish(user_id, "locations")
        return saved

    async def delete_location(self, user_id: str, location_id: str):
        session = self._session_factory()
        try:
            row = session.get(Location, (user_id, location_id))
            if not row:
                raise NotFoundError("Location not found")
            session.delete(row)
            session.commit()
        finally:
            session.close()
        await self.publish(user_id, "locations")

    # ===== Settings =====

    def get_settings(self, user_id: str) -> dict | None:
        session = self._session_factory()
        try:
            row = session.get(Settings, user_id)
            return row.to_dict() if row else None
        finally:
            session.close()

    async def save_settings(self, user_id: str, settings: dict) -> dict:
        voice_id = settings.get("default_narrator_voice_id")
        if voice_id and voice_id not in VOICE_IDS:
            raise ValueError(f"Unknown voice: {voice_id}")
        session = self._session_factory()
        try:
            row = session.get(Settings, user_id)
            if not row:
                row = Settings(user_id=user_id)
                session.add(row)
            for field in ("default_narrator_voice_id", "panel_delay"):
                if settings.get(field) is not None:
                    setattr(row, field, settings[field])
            session.commit()
            session.refresh(row)
            saved = row.to_dict()
        finally:
            session.close()
        await self.publish(user_id, "settings")
        return saved


document_store = DocumentStore()

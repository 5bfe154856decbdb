"""Per-user studio sessions: single-panel generation workflows and the session registry.

A StudioSession ties together the user's ProjectSynchronizer, their
BatchSequencer and the generation/storage services. Sessions live in the
process-wide registry so background jobs and debounced writes outlive any
single WebSocket connection.
"""

import asyncio
import functools
import logging

from stryp.errors import BatchBusyError, GenerationError, NotFoundError, StrypError, UploadError
from stryp.models import DEFAULT_SETTINGS, new_id, new_panel, now_ms
from stryp.services import gemini, llm
from stryp.services.batch import BatchSequencer
from stryp.services.documents import DocumentStore, document_store
from stryp.services.media import to_data_uri
from stryp.services.storage import (
    ObjectStorage, object_storage, CHARACTERS, LOCATIONS, PANELS, PANEL_AUDIO,
)
from stryp.services.synchronizer import JobState, ProjectSynchronizer, VISUALS, AUDIO
from stryp.web.ws import ws_manager

logger = logging.getLogger(__name__)

IMAGE_SAVE_FAILED = "Save failed. Image is local only."
VIDEO_SAVE_FAILED = "Save failed. Video is local only."
AUDIO_SAVE_FAILED = "Save failed. Audio is local only."
IMAGE_UPLOAD_FAILED = "Upload failed. Image is local only."


class StudioSession:
    def __init__(self, user_id: str, store: DocumentStore = document_store,
                 storage: ObjectStorage = object_storage, notify=None):
        self.user_id = user_id
        self.store = store
        self.storage = storage
        self.sync = ProjectSynchronizer(user_id, store, notify=notify)
        self.batch = BatchSequencer(self)
        self._unsubscribe = None

    async def start(self):
        self._unsubscribe = await self.store.subscribe(
            self.user_id, "projects", self.sync.on_remote_snapshot,
        )

    async def close(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        await self.sync.flush_all()

    # ===== Lookups =====

    def character_for(self, panel: dict) -> dict | None:
        # A deleted character resolves to "no character".
        return self.store.get_character(self.user_id, panel.get("character_id"))

    def voice_for(self, panel: dict) -> str:
        character = self.character_for(panel)
        if character and character.get("voice_id"):
            return character["voice_id"]
        settings = self.store.get_settings(self.user_id) or {}
        return settings.get("default_narrator_voice_id") or DEFAULT_SETTINGS["default_narrator_voice_id"]

    def _location(self, location_id: str | None) -> dict | None:
        if not location_id:
            return None
        location = self.store.get_location(self.user_id, location_id)
        if location is None:
            raise NotFoundError("Location not found")
        return location

    # ===== Advisory checks =====

    def _check_can_start(self, project_id: str, panel_id: str, kind: str, state: JobState):
        """Refuse a job while an opposing batch runs or the panel already has a job."""
        self.sync.batch_tokens[project_id].check_free_for(kind)
        current = self.sync.job_state(project_id, panel_id)
        if current == state:
            raise BatchBusyError("This panel is already being generated.")
        if current == JobState.GENERATING_AUDIO:
            raise BatchBusyError("Please wait for audio generation to complete.")
        if current != JobState.IDLE:
            raise BatchBusyError("Please wait for image generation to complete.")

    # ===== Script =====

    async def generate_script(self, project_id: str, scene_description: str, mood: str = "",
                              character_ids: list[str] | None = None) -> list[dict]:
        """Generate panels for a scene and append them to the project."""
        project = self.sync.get(project_id)
        if character_ids is None:
            character_ids = project.get("selected_character_ids") or []
        selected = set(character_ids)
        characters = [c for c in self.store.list_characters(self.user_id) if c["id"] in selected]
        prior_context = project.get("summary") or ""

        loop = asyncio.get_event_loop()
        items = await loop.run_in_executor(
            None, functools.partial(
                llm.generate_script, scene_description, mood, characters, prior_context,
            ),
        )
        panels = [new_panel(i["description"], i["dialogue"], i.get("character_id")) for i in items]
        logger.info("[studio] Script generated %d panels for project %s", len(panels), project_id)

        await self.sync.update_metadata(project_id, {
            "scene_description": scene_description,
            "mood": mood,
            "selected_character_ids": list(character_ids),
        })
        await self.sync.add_panels(project_id, panels)
        return panels

    # ===== Single-panel jobs =====

    async def generate_image(self, project_id: str, panel_id: str,
                             location_id: str | None = None, silent: bool = False) -> dict:
        sync = self.sync
        try:
            self._check_can_start(project_id, panel_id, VISUALS, JobState.GENERATING_IMAGE)
            panel = sync.panel(project_id, panel_id)
            location = self._location(location_id)
            sync.clear_upload_error(project_id, panel_id)
            await sync.set_job(project_id, panel_id, JobState.GENERATING_IMAGE, "Preparing...")
            try:
                character = self.character_for(panel)
                if character and character.get("image_url"):
                    await sync.set_status(project_id, panel_id, "Fetching Ref...")
                await sync.set_status(project_id, panel_id, "Generating...")
                data_uri = await gemini.generate_image(panel["description"], character, location)

                await sync.update_local_panel(project_id, panel_id, {"image_url": data_uri})
                await sync.set_job(project_id, panel_id, JobState.UPLOADING, "Uploading...")
                return await self._persist(
                    project_id, panel_id, "image_url", data_uri, PANELS, IMAGE_SAVE_FAILED,
                )
            finally:
                await sync.clear_job(project_id, panel_id)
        except StrypError as e:
            return self._fail(panel_id, "image", e, silent)

    async def generate_video(self, project_id: str, panel_id: str,
                             location_id: str | None = None, silent: bool = False) -> dict:
        sync = self.sync
        try:
            self._check_can_start(project_id, panel_id, VISUALS, JobState.GENERATING_VIDEO)
            panel = sync.panel(project_id, panel_id)
            location = self._location(location_id)
            sync.clear_upload_error(project_id, panel_id)
            await sync.set_job(project_id, panel_id, JobState.GENERATING_VIDEO, "Preparing...")
            try:
                character = self.character_for(panel)
                await sync.set_status(project_id, panel_id, "Director at work...")
                await sync.set_status(project_id, panel_id, "Generating Video...")
                data_uri = await gemini.generate_video(panel["description"], character, location)

                await sync.update_local_panel(project_id, panel_id, {"video_url": data_uri})
                await sync.set_job(project_id, panel_id, JobState.UPLOADING, "Uploading Film...")
                return await self._persist(
                    project_id, panel_id, "video_url", data_uri, PANELS, VIDEO_SAVE_FAILED,
                )
            finally:
                await sync.clear_job(project_id, panel_id)
        except StrypError as e:
            return self._fail(panel_id, "video", e, silent)

    async def generate_audio(self, project_id: str, panel_id: str, silent: bool = False) -> dict:
        sync = self.sync
        try:
            self._check_can_start(project_id, panel_id, AUDIO, JobState.GENERATING_AUDIO)
            panel = sync.panel(project_id, panel_id)
            if not panel.get("dialogue"):
                raise GenerationError("Panel has no dialogue to voice.")
            sync.clear_upload_error(project_id, panel_id)
            await sync.set_job(project_id, panel_id, JobState.GENERATING_AUDIO, "Generating...")
            try:
                data_uri = await gemini.generate_speech(panel["dialogue"], self.voice_for(panel))

                await sync.update_local_panel(project_id, panel_id, {"audio_url": data_uri})
                await sync.set_status(project_id, panel_id, "Saving Audio...")
                return await self._persist(
                    project_id, panel_id, "audio_url", data_uri, PANEL_AUDIO, AUDIO_SAVE_FAILED,
                )
            finally:
                await sync.clear_job(project_id, panel_id)
        except StrypError as e:
            return self._fail(panel_id, "audio", e, silent)

    async def upload_panel_image(self, project_id: str, panel_id: str, data: bytes,
                                 content_type: str, filename: str = "") -> dict:
        """Manual image upload: show a local preview, then store it."""
        if not (content_type or "").startswith("image/"):
            raise ValueError("Please upload a valid image file (JPG, PNG).")
        sync = self.sync
        sync.panel(project_id, panel_id)
        if sync.job_state(project_id, panel_id) != JobState.IDLE:
            raise BatchBusyError("This panel is busy. Please wait for it to finish.")
        sync.clear_upload_error(project_id, panel_id)
        await sync.update_local_panel(project_id, panel_id, {"image_url": to_data_uri(content_type, data)})
        await sync.set_job(project_id, panel_id, JobState.UPLOADING, "Uploading...")
        try:
            try:
                url = await self.storage.upload_bytes(self.user_id, PANELS, data, content_type, name=filename)
            except UploadError as e:
                logger.error("[studio] Manual upload for panel %s failed: %s", panel_id, e)
                sync.set_upload_error(project_id, panel_id, IMAGE_UPLOAD_FAILED)
                return self._result(project_id, panel_id, saved=False)
            await sync.apply_panel_change(project_id, panel_id, {"image_url": url})
            return self._result(project_id, panel_id, saved=True)
        finally:
            await sync.clear_job(project_id, panel_id)

    async def _persist(self, project_id: str, panel_id: str, field: str, data_uri: str,
                       kind: str, failure_marker: str) -> dict:
        """Upload a generated asset and swap the local preview for its durable URL.

        An upload failure leaves the preview in place and marks the panel.
        """
        try:
            url = await self.storage.upload_data_uri(self.user_id, kind, data_uri)
        except UploadError as e:
            logger.error("[studio] Upload of %s for panel %s failed: %s", field, panel_id, e)
            self.sync.set_upload_error(project_id, panel_id, failure_marker)
            return self._result(project_id, panel_id, saved=False)
        await self.sync.apply_panel_change(project_id, panel_id, {field: url})
        return self._result(project_id, panel_id, saved=True)

    def _result(self, project_id: str, panel_id: str, saved: bool) -> dict:
        return {
            "ok": True,
            "saved": saved,
            "upload_error": self.sync.upload_errors[project_id].get(panel_id),
            "panel": self.sync.panel(project_id, panel_id),
        }

    def _fail(self, panel_id: str, what: str, error: StrypError, silent: bool) -> dict:
        if not silent:
            raise error
        logger.warning("[studio] %s generation for panel %s failed: %s", what.capitalize(), panel_id, error)
        return {"ok": False, "saved": False, "error": str(error), "panel_id": panel_id}

    # ===== Vault analysis =====

    async def analyze_character(self, character_id: str) -> str:
        """Explicit vision description of a character; failures surface."""
        character = self.store.get_character(self.user_id, character_id)
        if character is None:
            raise NotFoundError("Character not found")
        if not character.get("image_url"):
            raise ValueError("Character has no reference image to analyze.")
        return await gemini.describe_character(character, fallback_to_bio=False)

    async def analyze_location(self, location_id: str) -> dict:
        """Describe a location from all its media and store the description."""
        location = self.store.get_location(self.user_id, location_id)
        if location is None:
            raise NotFoundError("Location not found")
        media = location.get("media") or []
        if not media:
            raise ValueError("Location has no media to analyze.")
        description = await gemini.describe_location(media)
        return await self.store.save_location(self.user_id, {**location, "visual_description": description})

    # ===== Vault uploads =====

    async def save_character(self, character: dict, image=None, image2=None) -> dict:
        """Create or update a character, storing any new reference images first."""
        if image is not None:
            character["image_url"] = await self.storage.upload_file(self.user_id, CHARACTERS, image)
        if image2 is not None:
            character["image_url2"] = await self.storage.upload_file(self.user_id, CHARACTERS, image2)
        if not character.get("image_url"):
            raise ValueError("A primary reference image is required.")
        character.setdefault("id", new_id())
        return await self.store.save_character(self.user_id, character)

    async def save_location(self, location: dict, files=()) -> dict:
        """Create or update a location; uploaded files are appended to its media."""
        existing = self.store.get_location(self.user_id, location.get("id")) if location.get("id") else None
        media = list(location.get("media") or (existing or {}).get("media") or [])
        ts = now_ms()
        for i, upload in enumerate(files):
            content_type = upload.content_type or ""
            url = await self.storage.upload_file(self.user_id, LOCATIONS, upload)
            media.append({
                "id": str(ts + i),
                "url": url,
                "type": "video" if content_type.startswith("video/") else "image",
                "name": upload.filename or "",
            })
        if not media:
            raise ValueError("A location needs at least one image or video.")
        location.setdefault("id", new_id())
        location["media"] = media
        return await self.store.save_location(self.user_id, location)


class StudioRegistry:
    """Process-wide owner of one StudioSession per signed-in user."""

    def __init__(self, store: DocumentStore = document_store, storage: ObjectStorage = object_storage,
                 broadcaster=ws_manager):
        self.store = store
        self.storage = storage
        self.broadcaster = broadcaster
        self.sessions: dict[str, StudioSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> StudioSession:
        async with self._lock:
            session = self.sessions.get(user_id)
            if session is None:
                session = StudioSession(
                    user_id, self.store, self.storage,
                    notify=functools.partial(self.broadcaster.broadcast, user_id),
                )
                await session.start()
                self.sessions[user_id] = session
                logger.info("[studio] Session started for %s", user_id)
            return session

    async def shutdown(self):
        for user_id, session in list(self.sessions.items()):
            try:
                await session.close()
            except Exception:
                logger.exception("[studio] Failed to flush session for %s", user_id)
        self.sessions.clear()


studio_registry = StudioRegistry()

"""Authoritative in-memory project state, smart merge and debounced durable writes.

One ProjectSynchronizer exists per signed-in user and is owned by the studio
registry, not by any editing view, so a write scheduled just before a client
disconnects still runs against the latest in-memory state.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import contextmanager
from enum import Enum

from stryp.errors import BatchBusyError, NotFoundError
from stryp.models import GENERATION_FLAGS, normalize_panel, sanitize_panels
from stryp.services.documents import DocumentStore
from stryp.services.media import is_local_preview

logger = logging.getLogger(__name__)

SAVE_DEBOUNCE_SECONDS = 1.5

MEDIA_FIELDS = ("image_url", "video_url", "audio_url")


class JobState(str, Enum):
    IDLE = "idle"
    GENERATING_IMAGE = "generating_image"
    GENERATING_AUDIO = "generating_audio"
    GENERATING_VIDEO = "generating_video"
    UPLOADING = "uploading"


_FLAG_FOR_STATE = {
    JobState.GENERATING_IMAGE: "is_generating_image",
    JobState.GENERATING_VIDEO: "is_generating_video",
    JobState.GENERATING_AUDIO: "is_generating_audio",
}

VISUALS = "visuals"
AUDIO = "audio"

BUSY_MESSAGES = {
    VISUALS: "Please wait for image generation to complete.",
    AUDIO: "Please wait for audio generation to complete.",
}


def merge_panels(local: list[dict], remote: list[dict]) -> list[dict]:
    """Merge a remote snapshot of a panel list into the local one.

    The remote list decides order and membership. A panel whose local image is
    still a local preview keeps it when the remote image is absent or differs;
    everything else comes from the remote copy.
    """
    local_by_id = {p["id"]: p for p in local}
    merged = []
    for remote_panel in remote:
        local_panel = local_by_id.get(remote_panel["id"])
        if (
            local_panel
            and is_local_preview(local_panel.get("image_url"))
            and remote_panel.get("image_url") != local_panel["image_url"]
        ):
            merged.append({**remote_panel, "image_url": local_panel["image_url"]})
        else:
            merged.append(dict(remote_panel))
    return merged


class BatchToken:
    """Mutual exclusion between the visuals batch and the audio batch of a project."""

    def __init__(self):
        self.holder: str | None = None

    @property
    def held(self) -> bool:
        return self.holder is not None

    def acquire(self, kind: str):
        if self.holder == kind:
            raise BatchBusyError(f"A {kind} batch is already running for this project.")
        if self.holder is not None:
            raise BatchBusyError(BUSY_MESSAGES[self.holder])
        self.holder = kind

    def release(self, kind: str):
        if self.holder == kind:
            self.holder = None

    def check_free_for(self, kind: str):
        """Refuse a single-panel job while a batch of the other kind runs."""
        if self.holder is not None and self.holder != kind:
            raise BatchBusyError(BUSY_MESSAGES[self.holder])

    @contextmanager
    def hold(self, kind: str):
        self.acquire(kind)
        try:
            yield self
        finally:
            self.release(kind)


class ProjectSynchronizer:
    def __init__(self, user_id: str, store: DocumentStore, notify=None,
                 debounce_seconds: float = SAVE_DEBOUNCE_SECONDS):
        self.user_id = user_id
        self.store = store
        self.debounce_seconds = debounce_seconds
        self._notify = notify
        self.projects: dict[str, dict] = {}
        self.job_states: dict[str, dict[str, JobState]] = defaultdict(dict)
        self.statuses: dict[str, dict[str, str]] = defaultdict(dict)
        self.upload_errors: dict[str, dict[str, str]] = defaultdict(dict)
        self.batch_tokens: dict[str, BatchToken] = defaultdict(BatchToken)
        self._pending_writes: dict[str, asyncio.Task] = {}

    # ===== Loading / reading =====

    def load(self, project_id: str) -> dict:
        if project_id in self.projects:
            return self.projects[project_id]
        project = self.store.get_project(self.user_id, project_id)
        if not project:
            raise NotFoundError("Project not found")
        project["panels"] = sanitize_panels(project.get("panels"))
        self.projects[project_id] = project
        return project

    def get(self, project_id: str) -> dict:
        return self.load(project_id)

    def panel(self, project_id: str, panel_id: str) -> dict:
        for p in self.load(project_id)["panels"]:
            if p["id"] == panel_id:
                return p
        raise NotFoundError("Panel not found")

    def forget(self, project_id: str):
        task = self._pending_writes.pop(project_id, None)
        if task:
            task.cancel()
        self.projects.pop(project_id, None)
        for table in (self.job_states, self.statuses, self.upload_errors, self.batch_tokens):
            table.pop(project_id, None)

    def has_pending_write(self, project_id: str) -> bool:
        task = self._pending_writes.get(project_id)
        return task is not None and not task.done()

    def state(self, project_id: str) -> dict:
        return {
            "project": self.get(project_id),
            "jobs": {pid: s.value for pid, s in self.job_states[project_id].items()},
            "statuses": dict(self.statuses[project_id]),
            "upload_errors": dict(self.upload_errors[project_id]),
            "batch": self.batch_tokens[project_id].holder,
            "pending_write": self.has_pending_write(project_id),
        }

    # ===== Remote snapshots =====

    async def on_remote_snapshot(self, projects: list[dict]):
        """Subscription callback for the user's project collection."""
        remote_by_id = {p["id"]: p for p in projects}
        for project_id in list(self.projects):
            remote = remote_by_id.get(project_id)
            if remote is None:
                if not self.has_pending_write(project_id):
                    logger.info("[sync] Project %s removed remotely", project_id)
                    self.forget(project_id)
                continue
            if self.batch_tokens[project_id].held:
                continue
            if self.has_pending_write(project_id):
                # Local edits are newer and about to be written.
                continue
            local = self.projects[project_id]
            merged = dict(remote)
            merged["panels"] = merge_panels(local["panels"], sanitize_panels(remote.get("panels")))
            self._keep_unsaved_previews(project_id, local["panels"], merged["panels"])
            self.projects[project_id] = merged
            self._apply_job_flags(project_id)
            await self._emit_state(project_id)

    def _keep_unsaved_previews(self, project_id: str, local: list[dict], merged: list[dict]):
        # A panel whose upload failed holds media that exists only here.
        failed = self.upload_errors[project_id]
        if not failed:
            return
        local_by_id = {p["id"]: p for p in local}
        for panel in merged:
            previous = local_by_id.get(panel["id"])
            if previous is None or panel["id"] not in failed:
                continue
            for field in MEDIA_FIELDS:
                if is_local_preview(previous.get(field)):
                    panel[field] = previous[field]

    # ===== Local mutations =====

    async def update_local_panel(self, project_id: str, panel_id: str, updates: dict) -> dict:
        """In-memory only; nothing is written."""
        panel = self.panel(project_id, panel_id)
        panel.update(updates)
        await self._emit_state(project_id)
        return panel

    async def apply_panel_change(self, project_id: str, panel_id: str, updates: dict) -> dict:
        """Update one panel in memory and schedule a debounced write of the project."""
        panel = await self.update_local_panel(project_id, panel_id, updates)
        self.schedule_save(project_id)
        return panel

    async def replace_panels(self, project_id: str, panels: list[dict]) -> dict:
        project = self.load(project_id)
        project["panels"] = [normalize_panel(p) for p in panels]
        self._apply_job_flags(project_id)
        self.schedule_save(project_id)
        await self._emit_state(project_id)
        return project

    async def add_panels(self, project_id: str, panels: list[dict]) -> dict:
        project = self.load(project_id)
        return await self.replace_panels(project_id, project["panels"] + panels)

    async def delete_panel(self, project_id: str, panel_id: str) -> dict:
        project = self.load(project_id)
        self.panel(project_id, panel_id)
        self.job_states[project_id].pop(panel_id, None)
        self.statuses[project_id].pop(panel_id, None)
        self.upload_errors[project_id].pop(panel_id, None)
        return await self.replace_panels(
            project_id, [p for p in project["panels"] if p["id"] != panel_id],
        )

    async def update_metadata(self, project_id: str, updates: dict) -> dict:
        project = self.load(project_id)
        project.update(updates)
        self.schedule_save(project_id)
        await self._emit_state(project_id)
        return project

    # ===== Job-state table =====

    def job_state(self, project_id: str, panel_id: str) -> JobState:
        return self.job_states[project_id].get(panel_id, JobState.IDLE)

    async def set_job(self, project_id: str, panel_id: str, state: JobState, status: str | None = None):
        self.panel(project_id, panel_id)
        if state == JobState.IDLE:
            self.job_states[project_id].pop(panel_id, None)
            self.statuses[project_id].pop(panel_id, None)
        else:
            self.job_states[project_id][panel_id] = state
            if status:
                self.statuses[project_id][panel_id] = status
        self._apply_job_flags(project_id)
        await self._emit_progress(project_id, panel_id)

    async def set_status(self, project_id: str, panel_id: str, status: str):
        self.statuses[project_id][panel_id] = status
        await self._emit_progress(project_id, panel_id)

    async def clear_job(self, project_id: str, panel_id: str):
        try:
            await self.set_job(project_id, panel_id, JobState.IDLE)
        except NotFoundError:
            # Panel deleted while its job ran.
            self.job_states[project_id].pop(panel_id, None)
            self.statuses[project_id].pop(panel_id, None)

    def set_upload_error(self, project_id: str, panel_id: str, message: str):
        self.upload_errors[project_id][panel_id] = message

    def clear_upload_error(self, project_id: str, panel_id: str):
        self.upload_errors[project_id].pop(panel_id, None)

    def _apply_job_flags(self, project_id: str):
        states = self.job_states[project_id]
        for panel in self.projects.get(project_id, {}).get("panels", []):
            state = states.get(panel["id"], JobState.IDLE)
            for flag in GENERATION_FLAGS:
                panel[flag] = _FLAG_FOR_STATE.get(state) == flag

    # ===== Durable writes =====

    def schedule_save(self, project_id: str):
        """(Re)start the debounce timer; the write uses state as of when it fires."""
        previous = self._pending_writes.get(project_id)
        if previous and not previous.done():
            previous.cancel()
        self._pending_writes[project_id] = asyncio.create_task(self._debounced_write(project_id))

    async def _debounced_write(self, project_id: str):
        await asyncio.sleep(self.debounce_seconds)
        if self._pending_writes.get(project_id) is asyncio.current_task():
            self._pending_writes.pop(project_id, None)
        try:
            await self._write(project_id)
        except Exception:
            logger.exception("[sync] Debounced save of project %s failed", project_id)

    async def save_now(self, project_id: str) -> dict:
        """Manual save: drop any pending debounced write and write immediately."""
        task = self._pending_writes.pop(project_id, None)
        if task and not task.done():
            task.cancel()
        self.load(project_id)
        return await self._write(project_id)

    async def flush_all(self):
        for project_id in list(self._pending_writes):
            await self.save_now(project_id)

    async def _write(self, project_id: str) -> dict:
        project = self.projects.get(project_id)
        if project is None:
            raise NotFoundError("Project not found")
        logger.info("[sync] Writing project %s (%d panels)", project_id, len(project["panels"]))
        saved = await self.store.save_project(self.user_id, project)
        project["updated_at"] = saved["updated_at"]
        return saved

    # ===== Notifications =====

    async def _emit(self, data: dict):
        if self._notify is None:
            return
        try:
            await self._notify(data)
        except Exception:
            logger.exception("[sync] Notify failed")

    async def _emit_state(self, project_id: str):
        await self._emit({"type": "project_state", "project_id": project_id, **self.state(project_id)})

    async def _emit_progress(self, project_id: str, panel_id: str):
        await self._emit({
            "type": "panel_progress",
            "project_id": project_id,
            "panel_id": panel_id,
            "job": self.job_state(project_id, panel_id).value,
            "status": self.statuses[project_id].get(panel_id),
            "upload_error": self.upload_errors[project_id].get(panel_id),
        })

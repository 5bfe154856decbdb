"""Batch sequencing for "generate all visuals" and "generate all audio".

Items are submitted in panel order with a fixed stagger between submissions.
Per-item failures are logged and skipped; the batch token of the project is
held until every submitted job has finished.
"""

import asyncio
import logging
from typing import Callable

from stryp.errors import BatchBusyError
from stryp.services.synchronizer import JobState, VISUALS, AUDIO

logger = logging.getLogger(__name__)

VISUALS_STAGGER = 2.0  # seconds between submissions
AUDIO_STAGGER = 0.5


class BatchSequencer:
    def __init__(self, session, visuals_stagger: float = VISUALS_STAGGER,
                 audio_stagger: float = AUDIO_STAGGER):
        self.session = session
        self.visuals_stagger = visuals_stagger
        self.audio_stagger = audio_stagger
        self._stop_requested: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def sync(self):
        return self.session.sync

    # ===== Selection =====

    def eligible_visuals(self, project_id: str) -> list[dict]:
        project = self.sync.get(project_id)
        if project.get("mode") == "video":
            return [
                p for p in project["panels"]
                if not p.get("video_url")
                and self.sync.job_state(project_id, p["id"]) != JobState.GENERATING_VIDEO
            ]
        return [
            p for p in project["panels"]
            if not p.get("image_url")
            and self.sync.job_state(project_id, p["id"]) != JobState.GENERATING_IMAGE
        ]

    def eligible_audio(self, project_id: str) -> list[dict]:
        project = self.sync.get(project_id)
        return [
            p for p in project["panels"]
            if p.get("dialogue")
            and not p.get("audio_url")
            and self.sync.job_state(project_id, p["id"]) != JobState.GENERATING_AUDIO
        ]

    # ===== Entry points =====

    async def generate_all_visuals(self, project_id: str, confirm: Callable[[int], bool],
                                   location_id: str | None = None, background: bool = False) -> dict:
        video_mode = self.sync.get(project_id).get("mode") == "video"
        label = "videos" if video_mode else "visuals"
        token = self.sync.batch_tokens[project_id]
        token.check_free_for(VISUALS)
        if token.holder == VISUALS:
            raise BatchBusyError(f"A {VISUALS} batch is already running for this project.")

        targets = [p["id"] for p in self.eligible_visuals(project_id)]
        if not targets:
            return {"started": False, "count": 0, "message": f"All panels already have {label}!"}
        if not confirm(len(targets)):
            return {
                "started": False, "count": len(targets),
                "message": f"Generate {label} for {len(targets)} panels? This may take a moment.",
            }

        token.acquire(VISUALS)
        self._stop_requested.discard(project_id)
        logger.info("[batch] Generating %s for %d panels in project %s", label, len(targets), project_id)
        run = self._run_visuals(project_id, targets, video_mode, location_id)
        await self._launch(project_id, run, background)
        return {"started": True, "count": len(targets), "message": f"Generating {label} for {len(targets)} panels."}

    async def generate_all_audio(self, project_id: str, confirm: Callable[[int], bool],
                                 background: bool = False) -> dict:
        token = self.sync.batch_tokens[project_id]
        token.check_free_for(AUDIO)
        if token.holder == AUDIO:
            raise BatchBusyError(f"An {AUDIO} batch is already running for this project.")

        targets = [p["id"] for p in self.eligible_audio(project_id)]
        if not targets:
            return {"started": False, "count": 0, "message": "All speech has been generated!"}
        if not confirm(len(targets)):
            return {
                "started": False, "count": len(targets),
                "message": f"Generate voiceovers for {len(targets)} panels?",
            }

        token.acquire(AUDIO)
        self._stop_requested.discard(project_id)
        logger.info("[batch] Generating audio for %d panels in project %s", len(targets), project_id)
        await self._launch(project_id, self._run_audio(project_id, targets), background)
        return {"started": True, "count": len(targets), "message": f"Generating voiceovers for {len(targets)} panels."}

    def stop(self, project_id: str) -> bool:
        """Stop submitting new items. Jobs already submitted run to completion."""
        if not self.sync.batch_tokens[project_id].held:
            return False
        self._stop_requested.add(project_id)
        logger.info("[batch] Stop requested for project %s", project_id)
        return True

    async def wait(self, project_id: str):
        task = self._tasks.get(project_id)
        if task:
            await task

    # ===== Runners =====

    async def _launch(self, project_id: str, run, background: bool):
        if background:
            self._tasks[project_id] = asyncio.create_task(run)
        else:
            await run

    def _should_stop(self, project_id: str) -> bool:
        return project_id in self._stop_requested

    async def _run_visuals(self, project_id: str, panel_ids: list[str], video_mode: bool,
                           location_id: str | None):
        submitted = []
        try:
            for i, panel_id in enumerate(panel_ids):
                if self._should_stop(project_id):
                    logger.info("[batch] Visuals batch stopped after %d of %d", i, len(panel_ids))
                    break
                if video_mode:
                    await self._guarded(self.session.generate_video(
                        project_id, panel_id, location_id=location_id, silent=True,
                    ), panel_id)
                else:
                    # Image jobs overlap; only their submission is paced.
                    submitted.append(asyncio.create_task(self._guarded(self.session.generate_image(
                        project_id, panel_id, location_id=location_id, silent=True,
                    ), panel_id)))
                if i < len(panel_ids) - 1:
                    await asyncio.sleep(self.visuals_stagger)
            if submitted:
                await asyncio.gather(*submitted)
        finally:
            self._finish(project_id, VISUALS)
            if project_id in self.sync.projects:
                await self.sync._emit_state(project_id)

    async def _run_audio(self, project_id: str, panel_ids: list[str]):
        try:
            for i, panel_id in enumerate(panel_ids):
                if self._should_stop(project_id):
                    logger.info("[batch] Audio batch stopped after %d of %d", i, len(panel_ids))
                    break
                await self._guarded(self.session.generate_audio(project_id, panel_id, silent=True), panel_id)
                if i < len(panel_ids) - 1:
                    await asyncio.sleep(self.audio_stagger)
        finally:
            self._finish(project_id, AUDIO)
            if project_id in self.sync.projects:
                await self.sync._emit_state(project_id)

    async def _guarded(self, job, panel_id: str):
        try:
            return await job
        except Exception:
            logger.exception("[batch] Job for panel %s failed", panel_id)
            return None

    def _finish(self, project_id: str, kind: str):
        self.sync.batch_tokens[project_id].release(kind)
        self._stop_requested.discard(project_id)
        self._tasks.pop(project_id, None)
        logger.info("[batch] %s batch finished for project %s", kind, project_id)

import asyncio

import pytest

from stryp.errors import (
    BatchBusyError, GenerationError, GenerationTimeout, NotFoundError, QuotaExceededError, UploadError,
)
from stryp.models import new_panel
from stryp.services import gemini, llm
from stryp.services.synchronizer import AUDIO, JobState, VISUALS

PNG_URI = "data:image/png;base64,iVBORw0KGgo="
WAV_URI = "data:audio/wav;base64,UklGRgAAAAA="


def _panel(pid, **fields):
    panel = new_panel("A robot waters a plant", "Grow, little one.")
    panel["id"] = pid
    panel.update(fields)
    return panel


def test_generate_image_uploads_and_persists(make_session, make_project, store, monkeypatch):
    statuses = []

    async def fake_generate_image(description, character=None, location=None):
        return PNG_URI

    async def notify(data):
        if data["type"] == "panel_progress" and data["status"]:
            statuses.append(data["status"])

    monkeypatch.setattr(gemini, "generate_image", fake_generate_image)

    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session(notify=notify)
        result = await session.generate_image("p1", "a")
        await session.sync.flush_all()
        await asyncio.sleep(0.05)
        return session, result

    session, result = asyncio.run(scenario())
    assert result["saved"] is True
    assert result["upload_error"] is None
    url = result["panel"]["image_url"]
    assert url.startswith("http://testserver/storage/users/user-1/panels/")
    assert session.storage.path_for_url(url).read_bytes().startswith(b"\x89PNG")
    assert store.get_project("user-1", "p1")["panels"][0]["image_url"] == url
    assert session.sync.job_state("p1", "a") == JobState.IDLE
    assert statuses == ["Preparing...", "Generating...", "Uploading..."]


def test_generate_image_upload_failure_keeps_preview(make_session, make_project, store, monkeypatch):
    async def fake_generate_image(description, character=None, location=None):
        return PNG_URI

    async def failing_upload(user_id, kind, data_uri):
        raise UploadError("disk full")

    monkeypatch.setattr(gemini, "generate_image", fake_generate_image)

    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session()
        session.storage.upload_data_uri = failing_upload
        result = await session.generate_image("p1", "a")
        await asyncio.sleep(0.05)
        return session, result

    session, result = asyncio.run(scenario())
    assert result["saved"] is False
    assert result["upload_error"] == "Save failed. Image is local only."
    assert session.sync.panel("p1", "a")["image_url"] == PNG_URI
    assert session.sync.panel("p1", "a")["is_generating_image"] is False
    assert store.get_project("user-1", "p1")["panels"][0]["image_url"] is None


def test_generate_image_timeout_surfaces_and_resets_flags(make_session, make_project, monkeypatch):
    async def slow_post(path, payload, timeout=30):
        await asyncio.sleep(1)
        return {}

    monkeypatch.setattr(gemini, "_post", slow_post)
    monkeypatch.setattr(gemini, "IMAGE_TIMEOUT", 0.05)

    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session()
        with pytest.raises(GenerationTimeout):
            await session.generate_image("p1", "a")
        return session

    session = asyncio.run(scenario())
    panel = session.sync.panel("p1", "a")
    assert panel["is_generating_image"] is False
    assert panel["image_url"] is None
    assert session.sync.job_state("p1", "a") == JobState.IDLE


def test_generate_image_quota_error(make_session, make_project, monkeypatch):
    async def quota_post(path, payload, timeout=30):
        raise gemini.GeminiHTTPError(429, "RESOURCE_EXHAUSTED")

    monkeypatch.setattr(gemini, "_post", quota_post)

    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session()
        with pytest.raises(QuotaExceededError, match="Quota exceeded"):
            await session.generate_image("p1", "a")

    asyncio.run(scenario())


def test_silent_failure_is_logged_not_raised(make_session, make_project, monkeypatch):
    async def broken(description, character=None, location=None):
        raise GenerationError("No candidates returned")

    monkeypatch.setattr(gemini, "generate_image", broken)

    async def scenario():
        await make_project(panels=[_panel("a")])
        return await make_session().generate_image("p1", "a", silent=True)

    result = asyncio.run(scenario())
    assert result["ok"] is False
    assert result["error"] == "No candidates returned"


def test_audio_refused_while_visuals_batch_runs(make_session, make_project):
    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session()
        session.sync.load("p1")
        session.sync.batch_tokens["p1"].acquire(VISUALS)
        with pytest.raises(BatchBusyError, match="image generation"):
            await session.generate_audio("p1", "a")
        session.sync.batch_tokens["p1"].release(VISUALS)
        session.sync.batch_tokens["p1"].acquire(AUDIO)
        with pytest.raises(BatchBusyError, match="audio generation"):
            await session.generate_image("p1", "a")

    asyncio.run(scenario())


def test_panel_with_running_audio_refuses_image(make_session, make_project):
    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session()
        await session.sync.set_job("p1", "a", JobState.GENERATING_AUDIO)
        with pytest.raises(BatchBusyError):
            await session.generate_image("p1", "a")
        # The refused job must not clear the running one
        return session.sync.job_state("p1", "a")

    assert asyncio.run(scenario()) == JobState.GENERATING_AUDIO


def test_generate_audio_uses_character_then_default_voice(make_session, make_project, store, monkeypatch):
    voices = []

    async def fake_speech(text, voice_id="Puck"):
        voices.append(voice_id)
        return WAV_URI

    monkeypatch.setattr(gemini, "generate_speech", fake_speech)

    async def scenario():
        await store.save_character("user-1", {
            "id": "c1", "name": "Rin", "image_url": "http://x/rin.png", "voice_id": "Kore",
        })
        await store.save_settings("user-1", {"default_narrator_voice_id": "Charon"})
        await make_project(panels=[_panel("a", character_id="c1"), _panel("b")])
        session = make_session()
        first = await session.generate_audio("p1", "a")
        second = await session.generate_audio("p1", "b")
        return first, second

    first, second = asyncio.run(scenario())
    assert voices == ["Kore", "Charon"]
    assert first["saved"] and second["saved"]
    assert "/panel_audio/" in first["panel"]["audio_url"]


def test_generate_audio_requires_dialogue(make_session, make_project):
    async def scenario():
        await make_project(panels=[_panel("a", dialogue="")])
        with pytest.raises(GenerationError, match="no dialogue"):
            await make_session().generate_audio("p1", "a")

    asyncio.run(scenario())


def test_generate_video_stores_video(make_session, make_project, monkeypatch):
    async def fake_video(description, character=None, location=None):
        return "data:video/mp4;base64,AAAAIGZ0eXA="

    monkeypatch.setattr(gemini, "generate_video", fake_video)

    async def scenario():
        await make_project(panels=[_panel("a")], mode="video")
        return await make_session().generate_video("p1", "a")

    result = asyncio.run(scenario())
    assert result["saved"] is True
    assert result["panel"]["video_url"].endswith(".mp4")


def test_unsaved_video_survives_snapshot_from_another_project(make_session, make_project, monkeypatch):
    video_uri = "data:video/mp4;base64,AAAAIGZ0eXA="

    async def fake_video(description, character=None, location=None):
        return video_uri

    async def failing_upload(user_id, kind, data_uri):
        raise UploadError("bucket unavailable")

    monkeypatch.setattr(gemini, "generate_video", fake_video)

    async def scenario():
        await make_project(panels=[_panel("a")], mode="video")
        await make_project(panels=[_panel("b")], project_id="p2")
        session = make_session()
        await session.start()
        session.storage.upload_data_uri = failing_upload
        result = await session.generate_video("p1", "a")
        await session.sync.apply_panel_change("p2", "b", {"dialogue": "Elsewhere"})
        await session.sync.save_now("p2")
        panel = session.sync.panel("p1", "a")
        marker = session.sync.upload_errors["p1"].get("a")
        await session.close()
        return result, panel, marker

    result, panel, marker = asyncio.run(scenario())
    assert result["saved"] is False
    assert panel["video_url"] == video_uri
    assert marker == "Save failed. Video is local only."


def test_manual_upload_rejects_non_images(make_session, make_project):
    async def scenario():
        await make_project(panels=[_panel("a")])
        with pytest.raises(ValueError, match="valid image"):
            await make_session().upload_panel_image("p1", "a", b"text", "text/plain")

    asyncio.run(scenario())


def test_manual_upload_failure_marks_panel(make_session, make_project):
    async def failing_upload(user_id, kind, data, mime_type, name=""):
        raise UploadError("disk full")

    async def scenario():
        await make_project(panels=[_panel("a")])
        session = make_session()
        session.storage.upload_bytes = failing_upload
        return await session.upload_panel_image("p1", "a", b"\x89PNG", "image/png", "me.png")

    result = asyncio.run(scenario())
    assert result["saved"] is False
    assert result["upload_error"] == "Upload failed. Image is local only."
    assert result["panel"]["image_url"].startswith("data:image/png;base64,")


def test_generate_script_appends_panels_and_remembers_inputs(make_session, make_project, store, monkeypatch):
    calls = []

    def fake_script(scene_description, mood, characters, prior_context=""):
        calls.append((scene_description, mood, [c["name"] for c in characters], prior_context))
        return llm.resolve_character_ids([
            {"description": "Rin looks up", "dialogue": "Rain again?", "character_name": "rin"},
            {"description": "Thunder", "dialogue": "", "character_name": "Narrator"},
        ], characters)

    monkeypatch.setattr(llm, "generate_script", fake_script)

    async def scenario():
        await store.save_character("user-1", {"id": "c1", "name": "Rin", "image_url": "http://x/rin.png"})
        await make_project(panels=[_panel("a")], summary="Two siblings keep a lighthouse running.")
        session = make_session()
        panels = await session.generate_script("p1", "A stormy night", "tense", ["c1"])
        await session.sync.save_now("p1")
        return panels, store.get_project("user-1", "p1")

    panels, saved = asyncio.run(scenario())
    assert calls == [("A stormy night", "tense", ["Rin"], "Two siblings keep a lighthouse running.")]
    assert [p["character_id"] for p in panels] == ["c1", None]
    assert len(saved["panels"]) == 3
    assert saved["scene_description"] == "A stormy night"
    assert saved["mood"] == "tense"
    assert saved["selected_character_ids"] == ["c1"]


def test_analyze_location_stores_description(make_session, store, monkeypatch):
    async def fake_describe(media_items):
        return f"{len(media_items)} views of a misty harbor"

    monkeypatch.setattr(gemini, "describe_location", fake_describe)

    async def scenario():
        await store.save_location("user-1", {
            "id": "l1", "name": "Harbor",
            "media": [{"id": "m1", "url": "http://x/1.png", "type": "image", "name": "1.png"}],
        })
        session = make_session()
        saved = await session.analyze_location("l1")
        with pytest.raises(NotFoundError):
            await session.analyze_location("missing")
        return saved

    saved = asyncio.run(scenario())
    assert saved["visual_description"] == "1 views of a misty harbor"


def test_analyze_character_surfaces_errors(make_session, store, monkeypatch):
    async def failing_fetch(url):
        raise GenerationError("Media fetch failed")

    monkeypatch.setattr(gemini, "fetch_media", failing_fetch)

    async def scenario():
        await store.save_character("user-1", {"id": "c1", "name": "Rin", "bio": "A pilot", "image_url": "http://x/rin.png"})
        with pytest.raises(GenerationError):
            await make_session().analyze_character("c1")
        # The image-generation pre-step falls back to the bio instead
        return await gemini.describe_character(store.get_character("user-1", "c1"))

    assert asyncio.run(scenario()) == "A pilot"

import asyncio

import pytest

from stryp.errors import BatchBusyError, NotFoundError
from stryp.models import new_panel, sanitize_panels
from stryp.services.synchronizer import (
    AUDIO, VISUALS, BatchToken, JobState, ProjectSynchronizer, merge_panels,
)


def _panel(pid, **fields):
    panel = new_panel("desc", "line")
    panel["id"] = pid
    panel.update(fields)
    return panel


# ===== Pure helpers =====

def test_sanitize_resets_flags_and_keeps_everything_else():
    panels = [_panel("a", is_generating_image=True, image_url="http://x/a.png"),
              _panel("b", is_generating_audio=True, is_generating_video=True)]
    clean = sanitize_panels(panels)
    assert all(not p[f] for p in clean for f in ("is_generating_image", "is_generating_video", "is_generating_audio"))
    assert clean[0]["image_url"] == "http://x/a.png"
    assert [p["id"] for p in clean] == ["a", "b"]
    assert panels[0]["is_generating_image"] is True


def test_merge_keeps_local_preview_when_remote_differs():
    local = [_panel("a", image_url="data:image/png;base64,AAAA"), _panel("b", image_url="http://x/b.png")]
    remote = [_panel("b", image_url="http://x/b2.png", dialogue="new"), _panel("a", image_url=None, dialogue="remote")]
    merged = merge_panels(local, remote)
    assert [p["id"] for p in merged] == ["b", "a"]
    assert merged[0]["image_url"] == "http://x/b2.png"
    assert merged[1]["image_url"] == "data:image/png;base64,AAAA"
    assert merged[1]["dialogue"] == "remote"


def test_merge_takes_remote_when_images_agree_or_local_is_durable():
    local = [_panel("a", image_url="http://x/old.png")]
    remote = [_panel("a", image_url="http://x/new.png")]
    assert merge_panels(local, remote)[0]["image_url"] == "http://x/new.png"


def test_merge_drops_panels_missing_remotely():
    local = [_panel("a", image_url="data:image/png;base64,AAAA")]
    assert merge_panels(local, []) == []


# ===== Batch token =====

def test_batch_token_mutual_exclusion():
    token = BatchToken()
    token.acquire(VISUALS)
    with pytest.raises(BatchBusyError, match="image generation"):
        token.acquire(AUDIO)
    with pytest.raises(BatchBusyError):
        token.acquire(VISUALS)
    token.check_free_for(VISUALS)
    with pytest.raises(BatchBusyError):
        token.check_free_for(AUDIO)
    token.release(AUDIO)
    assert token.holder == VISUALS
    token.release(VISUALS)
    assert not token.held


def test_batch_token_hold_releases_on_error():
    token = BatchToken()
    with pytest.raises(RuntimeError):
        with token.hold(AUDIO):
            assert token.holder == AUDIO
            raise RuntimeError("boom")
    assert not token.held


# ===== Synchronizer =====

def test_load_unknown_project_raises(store):
    sync = ProjectSynchronizer("user-1", store)
    with pytest.raises(NotFoundError):
        sync.load("missing")


def test_debounced_write_coalesces_edits(store, make_project):
    async def scenario():
        await make_project()
        sync = ProjectSynchronizer("user-1", store, debounce_seconds=0.05)
        panel_id = sync.get("p1")["panels"][0]["id"]
        await sync.apply_panel_change("p1", panel_id, {"dialogue": "first"})
        await sync.apply_panel_change("p1", panel_id, {"dialogue": "second"})
        assert sync.has_pending_write("p1")
        assert store.get_project("user-1", "p1")["panels"][0]["dialogue"] == "Meow"
        await asyncio.sleep(0.2)
        assert not sync.has_pending_write("p1")
        return store.get_project("user-1", "p1")["panels"][0]["dialogue"]

    assert asyncio.run(scenario()) == "second"


def test_local_update_is_not_written(store, make_project):
    async def scenario():
        await make_project()
        sync = ProjectSynchronizer("user-1", store, debounce_seconds=0.01)
        panel_id = sync.get("p1")["panels"][0]["id"]
        await sync.update_local_panel("p1", panel_id, {"image_url": "data:image/png;base64,AAAA"})
        await asyncio.sleep(0.05)
        return sync, store.get_project("user-1", "p1")["panels"][0]

    sync, durable = asyncio.run(scenario())
    assert durable["image_url"] is None
    assert sync.projects["p1"]["panels"][0]["image_url"] == "data:image/png;base64,AAAA"


def test_save_now_cancels_pending_write(store, make_project):
    writes = []

    async def scenario():
        await make_project()
        sync = ProjectSynchronizer("user-1", store, debounce_seconds=0.05)
        original = store.save_project

        async def counting_save(user_id, project):
            writes.append(project["id"])
            return await original(user_id, project)

        store.save_project = counting_save
        panel_id = sync.get("p1")["panels"][0]["id"]
        await sync.apply_panel_change("p1", panel_id, {"description": "edited"})
        await sync.save_now("p1")
        await asyncio.sleep(0.15)
        return store.get_project("user-1", "p1")

    saved = asyncio.run(scenario())
    assert writes == ["p1"]
    assert saved["panels"][0]["description"] == "edited"


def test_durable_write_never_stores_generation_flags(store, make_project):
    async def scenario():
        await make_project()
        sync = ProjectSynchronizer("user-1", store)
        panel_id = sync.get("p1")["panels"][0]["id"]
        await sync.set_job("p1", panel_id, JobState.GENERATING_IMAGE, "Generating...")
        assert sync.panel("p1", panel_id)["is_generating_image"] is True
        await sync.save_now("p1")
        return store.get_project("user-1", "p1")["panels"][0]

    durable = asyncio.run(scenario())
    assert durable["is_generating_image"] is False


def test_remote_snapshot_merges_and_keeps_preview(store, make_project):
    async def scenario():
        await make_project(panels=[_panel("a"), _panel("b")])
        sync = ProjectSynchronizer("user-1", store)
        await store.subscribe("user-1", "projects", sync.on_remote_snapshot)
        sync.load("p1")
        await sync.update_local_panel("p1", "a", {"image_url": "data:image/png;base64,AAAA"})
        # Another tab reorders and edits the panels
        remote = store.get_project("user-1", "p1")
        remote["panels"] = [dict(remote["panels"][1], dialogue="edited elsewhere"), remote["panels"][0]]
        await store.save_project("user-1", remote)
        return sync.get("p1")["panels"]

    panels = asyncio.run(scenario())
    assert [p["id"] for p in panels] == ["b", "a"]
    assert panels[0]["dialogue"] == "edited elsewhere"
    assert panels[1]["image_url"] == "data:image/png;base64,AAAA"


def test_remote_snapshot_ignored_while_batch_token_held(store, make_project):
    async def scenario():
        await make_project(panels=[_panel("a")])
        sync = ProjectSynchronizer("user-1", store)
        sync.load("p1")
        sync.batch_tokens["p1"].acquire(VISUALS)
        remote = store.get_project("user-1", "p1")
        remote["panels"][0]["dialogue"] = "remote"
        await sync.on_remote_snapshot([remote])
        return sync.get("p1")["panels"][0]["dialogue"]

    assert asyncio.run(scenario()) == "line"


def test_remote_snapshot_ignored_while_write_pending(store, make_project):
    async def scenario():
        await make_project(panels=[_panel("a")])
        sync = ProjectSynchronizer("user-1", store, debounce_seconds=10)
        sync.load("p1")
        await sync.apply_panel_change("p1", "a", {"dialogue": "local"})
        remote = store.get_project("user-1", "p1")
        remote["panels"][0]["dialogue"] = "remote"
        await sync.on_remote_snapshot([remote])
        result = sync.get("p1")["panels"][0]["dialogue"]
        await sync.save_now("p1")
        return result

    assert asyncio.run(scenario()) == "local"


def test_job_flags_survive_remote_merge(store, make_project):
    async def scenario():
        await make_project(panels=[_panel("a")])
        sync = ProjectSynchronizer("user-1", store)
        sync.load("p1")
        await sync.set_job("p1", "a", JobState.GENERATING_AUDIO, "Generating...")
        await sync.on_remote_snapshot([store.get_project("user-1", "p1")])
        return sync.get("p1")["panels"][0], sync.state("p1")

    panel, state = asyncio.run(scenario())
    assert panel["is_generating_audio"] is True
    assert state["jobs"] == {"a": "generating_audio"}
    assert state["statuses"] == {"a": "Generating..."}


def test_delete_panel_and_add_panels(store, make_project):
    async def scenario():
        await make_project(panels=[_panel("a"), _panel("b")])
        sync = ProjectSynchronizer("user-1", store)
        await sync.delete_panel("p1", "a")
        await sync.add_panels("p1", [_panel("c")])
        await sync.save_now("p1")
        with pytest.raises(NotFoundError):
            await sync.delete_panel("p1", "a")
        return [p["id"] for p in store.get_project("user-1", "p1")["panels"]]

    assert asyncio.run(scenario()) == ["b", "c"]


def test_progress_events_are_emitted(store, make_project):
    events = []

    async def notify(data):
        events.append(data)

    async def scenario():
        await make_project(panels=[_panel("a")])
        sync = ProjectSynchronizer("user-1", store, notify=notify)
        await sync.set_job("p1", "a", JobState.GENERATING_IMAGE, "Preparing...")
        await sync.set_status("p1", "a", "Generating...")
        await sync.clear_job("p1", "a")

    asyncio.run(scenario())
    progress = [e for e in events if e["type"] == "panel_progress"]
    assert [(e["job"], e["status"]) for e in progress] == [
        ("generating_image", "Preparing..."),
        ("generating_image", "Generating..."),
        ("idle", None),
    ]


def test_rapid_edits_produce_exactly_one_write(store, make_project):
    writes = []

    async def scenario():
        await make_project(panels=[_panel("a")])
        sync = ProjectSynchronizer("user-1", store, debounce_seconds=0.05)
        original = store.save_project

        async def counting_save(user_id, project):
            writes.append([p["dialogue"] for p in project["panels"]])
            return await original(user_id, project)

        store.save_project = counting_save
        for text in ("h", "he", "hel", "hello"):
            await sync.apply_panel_change("p1", "a", {"dialogue": text})
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    assert writes == [["hello"]]


def test_manual_save_without_edits_leaves_document_unchanged(store, make_project):
    async def scenario():
        await make_project(panels=[_panel("a", image_url="http://x/a.png")])
        before = store.get_project("user-1", "p1")
        sync = ProjectSynchronizer("user-1", store)
        await sync.save_now("p1")
        return before, store.get_project("user-1", "p1")

    before, after = asyncio.run(scenario())
    before.pop("updated_at")
    after.pop("updated_at")
    assert before == after

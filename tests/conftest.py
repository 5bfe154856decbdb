"""Shared fixtures: throwaway SQLite store and object storage per test."""

import os
import tempfile

# Point the process-wide database and storage at a scratch directory before
# any stryp module reads its configuration.
os.environ.setdefault("STRYP_DATA_DIR", tempfile.mkdtemp(prefix="stryp-tests-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stryp.models import Base, new_panel
from stryp.services.documents import DocumentStore
from stryp.services.storage import ObjectStorage
from stryp.services.studio import StudioSession


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(root=tmp_path / "storage", base_url="http://testserver")


@pytest.fixture
def make_project(store):
    """Persist a project with the given panels and return its id."""

    async def _make(user_id="user-1", panels=None, mode="static", project_id="p1", summary=""):
        await store.save_project(user_id, {
            "id": project_id,
            "title": "Test Strip",
            "summary": summary,
            "mode": mode,
            "panels": panels if panels is not None else [new_panel("A cat on a roof", "Meow")],
        })
        return project_id

    return _make


@pytest.fixture
def make_session(store, storage):
    """Build a StudioSession with fast debounce and no batch stagger."""

    def _make(user_id="user-1", notify=None):
        session = StudioSession(user_id, store, storage, notify=notify)
        session.sync.debounce_seconds = 0.01
        session.batch.visuals_stagger = 0
        session.batch.audio_stagger = 0
        return session

    return _make

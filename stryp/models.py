"""SQLAlchemy models: User → Project (with panels), Character, Location, Settings."""

import random
import time
from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, JSON,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

AVAILABLE_VOICES = [
    {"id": "Puck", "name": "Puck (Male, Soft)"},
    {"id": "Charon", "name": "Charon (Male, Deep)"},
    {"id": "Kore", "name": "Kore (Female, Calm)"},
    {"id": "Fenrir", "name": "Fenrir (Male, Intense)"},
    {"id": "Zephyr", "name": "Zephyr (Female, Bright)"},
]
VOICE_IDS = {v["id"] for v in AVAILABLE_VOICES}

PROJECT_MODES = ("static", "video")

DEFAULT_SETTINGS = {
    "default_narrator_voice_id": AVAILABLE_VOICES[0]["id"],
    "panel_delay": 2000,
}

GENERATION_FLAGS = ("is_generating_image", "is_generating_video", "is_generating_audio")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    """Time-based id with a random suffix so same-millisecond documents don't collide."""
    return f"{now_ms()}{random.randint(0, 999999):06d}"


def new_panel(description: str = "", dialogue: str = "", character_id: str | None = None) -> dict:
    return {
        "id": new_id(),
        "description": description,
        "dialogue": dialogue,
        "character_id": character_id,
        "image_url": None,
        "video_url": None,
        "audio_url": None,
        "is_generating_image": False,
        "is_generating_video": False,
        "is_generating_audio": False,
    }


def normalize_panel(data: dict) -> dict:
    """Fill missing keys so every panel dict has the full shape."""
    panel = new_panel()
    panel.update({k: v for k, v in data.items() if k in panel})
    if not data.get("id"):
        panel["id"] = new_id()
    for flag in GENERATION_FLAGS:
        panel[flag] = bool(panel[flag])
    return panel


class User(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    display_name = Column(String(200), default="")
    email = Column(String(320), default="")
    created_at = Column(BigInteger, default=now_ms)

    def to_dict(self):
        return {
            "id": self.id, "display_name": self.display_name,
            "email": self.email, "created_at": self.created_at,
        }


class Project(Base):
    __tablename__ = "projects"

    user_id = Column(String(128), primary_key=True)
    id = Column(String(64), primary_key=True)
    title = Column(String(300), nullable=False)
    summary = Column(Text, default="")
    mode = Column(String(20), default="static")  # static, video
    created_at = Column(BigInteger, default=now_ms)
    updated_at = Column(BigInteger, default=now_ms)
    panels = Column(JSON, default=list)
    selected_character_ids = Column(JSON, nullable=True)
    scene_description = Column(Text, nullable=True)
    mood = Column(Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id, "title": self.title, "summary": self.summary,
            "mode": self.mode, "created_at": self.created_at,
            "updated_at": self.updated_at,
            "panels": sanitize_panels(self.panels),
            "selected_character_ids": self.selected_character_ids,
            "scene_description": self.scene_description,
            "mood": self.mood,
        }


class Character(Base):
    __tablename__ = "characters"

    user_id = Column(String(128), primary_key=True)
    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    bio = Column(Text, default="")
    image_url = Column(Text, default="")
    image_url2 = Column(Text, default="")
    image_base64 = Column(Text, nullable=True)  # legacy, read-only fallback for image_url
    voice_id = Column(String(50), nullable=True)

    def to_dict(self):
        return {
            "id": self.id, "name": self.name, "bio": self.bio or "",
            "image_url": self.image_url or self.image_base64 or "",
            "image_url2": self.image_url2 or "",
            "voice_id": self.voice_id,
        }


class Location(Base):
    __tablename__ = "locations"

    user_id = Column(String(128), primary_key=True)
    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, default="")
    visual_description = Column(Text, nullable=True)
    media = Column(JSON, nullable=True)  # [{id, url, type, name}]
    # Deprecated single-media fields
    media_url = Column(Text, nullable=True)
    media_type = Column(String(10), nullable=True)
    created_at = Column(BigInteger, default=now_ms)

    def media_items(self) -> list[dict]:
        if self.media is not None:
            return list(self.media)
        if self.media_url:
            return [{
                "id": f"{self.id}-0", "url": self.media_url,
                "type": self.media_type or "image", "name": self.name,
            }]
        return []

    def to_dict(self):
        return {
            "id": self.id, "name": self.name, "description": self.description or "",
            "visual_description": self.visual_description,
            "media": self.media_items(),
            "created_at": self.created_at,
        }


class Settings(Base):
    __tablename__ = "settings"

    user_id = Column(String(128), primary_key=True)
    default_narrator_voice_id = Column(String(50), default=DEFAULT_SETTINGS["default_narrator_voice_id"])
    panel_delay = Column(Integer, default=DEFAULT_SETTINGS["panel_delay"])

    def to_dict(self):
        return {
            "default_narrator_voice_id": self.default_narrator_voice_id,
            "panel_delay": self.panel_delay,
        }


def sanitize_panels(panels: list[dict]) -> list[dict]:
    """Copy of the panel list with every generation flag forced to False.

    Applied on every durable read and write so a reload never shows a panel
    stuck mid-generation.
    """
    clean = []
    for p in panels or []:
        panel = normalize_panel(p)
        for flag in GENERATION_FLAGS:
            panel[flag] = False
        clean.append(panel)
    return clean

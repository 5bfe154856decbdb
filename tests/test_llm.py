from types import SimpleNamespace

import pytest

from stryp.errors import GenerationError
from stryp.services import llm


CHARACTERS = [
    {"id": "c1", "name": "Rin", "bio": "A pilot"},
    {"id": "c2", "name": "Old Tom", "bio": "A fisherman"},
]


def _response(panels):
    block = SimpleNamespace(type="tool_use", name="record_panels", input={"panels": panels})
    return SimpleNamespace(content=[SimpleNamespace(type="text", text="Here you go"), block])


class FakeMessages:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


def test_resolve_character_ids_is_case_insensitive_exact_match():
    panels = llm.resolve_character_ids([
        {"description": "Rin checks the sky", "dialogue": "Storm's coming.", "character_name": "rin"},
        {"description": "Tom laughs", "dialogue": "Ha!", "character_name": "Tom"},
        {"description": "Waves crash", "dialogue": ""},
    ], CHARACTERS)
    assert [p["character_id"] for p in panels] == ["c1", None, None]
    assert panels[0] == {"description": "Rin checks the sky", "dialogue": "Storm's coming.", "character_id": "c1"}


def test_generate_script_uses_forced_tool(monkeypatch):
    messages = FakeMessages(_response([
        {"description": "Rin climbs into the cockpit", "dialogue": "Let's fly.", "character_name": "Rin"},
        {"description": "Tom waves from the pier", "dialogue": "Good luck!", "character_name": "OLD TOM"},
    ]))
    monkeypatch.setattr(llm, "client", SimpleNamespace(messages=messages))

    panels = llm.generate_script("Take-off at dawn", "hopeful", CHARACTERS)

    assert [p["character_id"] for p in panels] == ["c1", "c2"]
    call = messages.calls[0]
    assert call["tool_choice"] == {"type": "tool", "name": "record_panels"}
    assert call["tools"] == [llm.SCRIPT_TOOL]
    prompt = call["messages"][0]["content"]
    assert "Take-off at dawn" in prompt
    assert "Rin" in prompt


def test_generate_script_rejects_malformed_output(monkeypatch):
    messages = FakeMessages(_response([{"description": "No dialogue here"}]))
    monkeypatch.setattr(llm, "client", SimpleNamespace(messages=messages))
    with pytest.raises(GenerationError, match="missing description or dialogue"):
        llm.generate_script("Scene", "calm", [])


def test_generate_script_without_tool_call(monkeypatch):
    response = SimpleNamespace(content=[SimpleNamespace(type="text", text="I refuse")])
    monkeypatch.setattr(llm, "client", SimpleNamespace(messages=FakeMessages(response)))
    with pytest.raises(GenerationError, match="no structured output"):
        llm.generate_script("Scene", "calm", [])

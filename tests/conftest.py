from __future__ import annotations

import io
import json
from typing import Any, Iterator, List, Optional

import pytest
from google.genai import types
from PIL import Image

import panels


def make_png(color: str = "red", size=(8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def text_part(text: str) -> types.Part:
    return types.Part(text=text)


def image_part(data: bytes, mime_type: str = "image/png") -> types.Part:
    return types.Part(inline_data=types.Blob(data=data, mime_type=mime_type))


def chunk(*parts: types.Part) -> types.GenerateContentResponse:
    return types.GenerateContentResponse(
        candidates=[types.Candidate(content=types.Content(role="model", parts=list(parts)))])


def script_json(n: int, character: str = "A tall woman with a red scarf") -> str:
    return json.dumps({
        "characterDescription": character,
        "panels": [{"text": f"Moment {i + 1}."} for i in range(n)],
    })


class FakeChat:
    pass


class DummyGAIC:
    """Stands in for panels.GAIC; replays canned script text and panel streams.

    Each entry of ``streams`` is a list of chunks, or an exception to raise
    after those chunks as ``(chunks, exc)``.
    """

    def __init__(self, script_text: str = "", streams: Optional[List[Any]] = None):
        self.script_text = script_text
        self.streams = list(streams or [])
        self.script_prompts: List[str] = []
        self.image_prompts: List[str] = []
        self.chats = 0
        self.verify_error: Optional[Exception] = None

    def verify(self) -> None:
        if self.verify_error:
            raise self.verify_error

    def generate_text(self, prompt: str) -> str:
        self.script_prompts.append(prompt)
        if isinstance(self.script_text, Exception):
            raise self.script_text
        return self.script_text

    def start_image_chat(self) -> FakeChat:
        self.chats += 1
        return FakeChat()

    def generate_image_stream(self, chat, prompt: str) -> Iterator[Any]:
        self.image_prompts.append(prompt)
        entry = self.streams.pop(0)
        if isinstance(entry, tuple):
            chunks, exc = entry
            yield from chunks
            raise exc
        yield from entry


@pytest.fixture
def png():
    return make_png()


@pytest.fixture(autouse=True)
def quiet_prompts(monkeypatch):
    monkeypatch.setattr(panels, "PRINT_PROMPTS", False)

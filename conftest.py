"""
Pytest configuration and fixtures shared by the root-level test modules.
"""

import io
import copy
import os
import re
import sys
import base64
import pytest
from typing import Any, Callable, Dict, List, Optional, Tuple

# Add the backend to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "storyboard_backend"))

from PIL import Image

from storyboard.errors import ProviderError
from storyboard.models import CharacterSlot, ImageAnalysis, PipelineConfig, StoryboardRequest
from storyboard.prompts import CHARACTER_SCHEMA, METADATA_SCHEMA, SCENE_SCHEMA
from storyboard.provider import CapabilityProvider

_BATCH_RE = re.compile(r"Return exactly (\d+) scenes, numbered from (\d+)")
_ACTION_RE = re.compile(r"Action: Action (\d+)\n")


def default_scene_batch(start: int, count: int) -> List[dict]:
    # Deliberately numbered from 1 every batch; the generator must renumber
    return [
        {"sceneNumber": i + 1, "action": f"Action {start + i}", "consistentContext": "rooftop at dusk"}
        for i in range(count)
    ]


class FakeProvider(CapabilityProvider):
    """Scriptable Capability Provider that records every call."""

    def __init__(self):
        self.text_calls: List[Tuple[str, dict]] = []
        self.scene_batches: List[Tuple[int, int]] = []
        self.image_calls: List[int] = []
        self.image_aspect_ratios: List[str] = []
        self.analysis_calls: List[Tuple[bytes, str]] = []
        self.speech_calls: List[str] = []

        self.text_failures: List[Exception] = []
        self.scene_responder: Callable[[int, int], Any] = default_scene_batch
        self.on_scene_batch: Optional[Callable[[int, int], None]] = None
        self.on_image: Optional[Callable[[int], None]] = None
        # scene number -> remaining failures
        self.failing_scenes: Dict[int, int] = {}
        self.analysis_failures = 0

        self.characters = [
            {"name": "Mara", "gender": "Female", "age": "24", "description": "Red coat, silver headphones"},
            {"name": "Jun", "gender": "Male", "age": "27", "description": "Denim jacket, round glasses"},
        ]
        self.metadata = {
            "title": "Neon Rooftops",
            "description": "A storyboard about two friends.",
            "hashtags": ["musicvideo", "#storyboard"],
            "keywords": ["music video", "animation"],
        }
        self.analysis = ImageAnalysis(
            style_description="soft watercolor",
            character_description="A girl with a yellow raincoat",
        )

    @property
    def scene_calls(self) -> int:
        return len(self.scene_batches)

    async def generate_structured_text(self, prompt: str, schema: dict) -> Any:
        self.text_calls.append((prompt, schema))
        if schema == SCENE_SCHEMA:
            match = _BATCH_RE.search(prompt)
            count, start = int(match.group(1)), int(match.group(2))
            self.scene_batches.append((start, count))
            if self.text_failures:
                raise self.text_failures.pop(0)
            if self.on_scene_batch is not None:
                self.on_scene_batch(start, count)
            return self.scene_responder(start, count)
        if self.text_failures:
            raise self.text_failures.pop(0)
        if schema == CHARACTER_SCHEMA:
            return copy.deepcopy(self.characters)
        if schema == METADATA_SCHEMA:
            return copy.deepcopy(self.metadata)
        raise AssertionError(f"Unexpected schema: {schema}")

    async def generate_image(self, prompt: str, aspect_ratio: str) -> str:
        match = _ACTION_RE.search(prompt)
        scene_number = int(match.group(1)) if match else 0
        self.image_calls.append(scene_number)
        self.image_aspect_ratios.append(aspect_ratio)
        if self.on_image is not None:
            self.on_image(scene_number)
        if self.failing_scenes.get(scene_number, 0) > 0:
            self.failing_scenes[scene_number] -= 1
            raise ProviderError(f"render failed for scene {scene_number}")
        return f"https://images.test/scene_{scene_number}_{len(self.image_calls)}.png"

    async def generate_speech(self, text: str, voice_id: Optional[str] = None) -> bytes:
        self.speech_calls.append(text)
        return b"ID3fake"

    async def analyze_image(self, image_bytes: bytes, mime_type: str) -> ImageAnalysis:
        self.analysis_calls.append((image_bytes, mime_type))
        if self.analysis_failures > 0:
            self.analysis_failures -= 1
            raise ProviderError("vision call failed")
        return self.analysis.model_copy()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fast_config() -> PipelineConfig:
    """No sleeping between batches, scenes or retries."""
    return PipelineConfig(batch_size=10, batch_delay=0, scene_delay=0, max_attempts=3, retry_delay=0)


@pytest.fixture
def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 40, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_base64(png_bytes) -> str:
    return base64.b64encode(png_bytes).decode("ascii")


@pytest.fixture
def make_request() -> Callable[..., StoryboardRequest]:
    def _make(scene_count: int = 10, **overrides) -> StoryboardRequest:
        fields = {
            "title": "Neon Rooftops",
            "synopsis": "Two friends chase a song across a city of rooftops.",
            "characters": [
                CharacterSlot(name="Mara", gender="Female", age="24", description="Red coat"),
                CharacterSlot(name="Jun", gender="Male", age="27", description="Denim jacket"),
            ],
            "scene_count": scene_count,
        }
        fields.update(overrides)
        return StoryboardRequest(**fields)
    return _make

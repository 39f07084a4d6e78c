"""
Capability Provider: the generative-AI boundary.

Each method is one network round trip with no retry of its own; callers
wrap calls in ``with_retry``. Structured-text results are not trusted:
callers re-validate length and fields.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from . import llm, replicate_client, elevenlabs_client
from .models import ImageAnalysis

logger = logging.getLogger(__name__)


class CapabilityProvider(ABC):

    @abstractmethod
    async def generate_structured_text(self, prompt: str, schema: dict) -> Any:
        """Return parsed JSON. Raises ProviderError or ParseError."""

    @abstractmethod
    async def generate_image(self, prompt: str, aspect_ratio: str) -> str:
        """Return a URL (or data URL) for one rendered image. Raises ProviderError."""

    @abstractmethod
    async def generate_speech(self, text: str, voice_id: Optional[str] = None) -> bytes:
        """Return encoded audio. Raises ProviderError."""

    @abstractmethod
    async def analyze_image(self, image_bytes: bytes, mime_type: str) -> ImageAnalysis:
        """Describe the style and main character of a reference image. Raises ProviderError."""


class StudioProvider(CapabilityProvider):
    """OpenAI for text and vision, Replicate for images, ElevenLabs for speech."""

    async def generate_structured_text(self, prompt: str, schema: dict) -> Any:
        return await llm.generate_structured_text(prompt, schema)

    async def generate_image(self, prompt: str, aspect_ratio: str) -> str:
        return await replicate_client.create_and_wait_image(prompt, aspect_ratio)

    async def generate_speech(self, text: str, voice_id: Optional[str] = None) -> bytes:
        return await elevenlabs_client.tts_to_bytes(text, voice_id)

    async def analyze_image(self, image_bytes: bytes, mime_type: str) -> ImageAnalysis:
        return await llm.analyze_image(image_bytes, mime_type)

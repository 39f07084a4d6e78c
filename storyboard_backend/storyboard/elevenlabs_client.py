import os, httpx, logging
from typing import Optional

from .errors import ProviderError

logger = logging.getLogger(__name__)

def _voice_id(voice_id: Optional[str] = None) -> str:
    vid = voice_id or os.getenv("ELEVENLABS_VOICE_ID", "")
    if not vid:
        raise ProviderError("ELEVENLABS_VOICE_ID is not set; please configure your .env")
    return vid

def _headers():
    api_key = os.getenv("ELEVENLABS_API_KEY", "")
    if not api_key:
        raise ProviderError("ELEVENLABS_API_KEY is not set; please configure your .env")
    return {
        "xi-api-key": api_key,
        "Content-Type": "application/json"
    }

async def tts_to_bytes(text: str, voice_id: Optional[str] = None) -> bytes:
    payload = {
        "text": text,
        "model_id": "eleven_multilingual_v2",
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
        "output_format": "mp3_22050_32"
    }
    url = f"https://api.elevenlabs.io/v1/text-to-speech/{_voice_id(voice_id)}"
    logger.info(f"Requesting speech from ElevenLabs ({len(text)} chars)")

    try:
        async with httpx.AsyncClient(timeout=60) as client:
            r = await client.post(url, headers=_headers(), json=payload)
            r.raise_for_status()
            return r.content
    except httpx.HTTPStatusError as e:
        raise ProviderError(
            f"ElevenLabs returned {e.response.status_code}",
            {"body": e.response.text[:200]},
        ) from e
    except httpx.HTTPError as e:
        raise ProviderError(f"ElevenLabs request error: {e}") from e

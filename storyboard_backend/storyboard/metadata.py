import logging
from typing import Any, List, Sequence

from .errors import ParseError
from .models import RunState, YouTubeMetadata
from .prompts import METADATA_SCHEMA, METADATA_TEMPLATE
from .provider import CapabilityProvider
from .retry import with_retry
from .settings import RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_S

logger = logging.getLogger(__name__)


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.replace(",", " ").split()
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def storyboard_context(synopsis: str, state: RunState, limit: int = 5) -> str:
    """Synopsis plus the opening scene actions, enough for a video description."""
    actions: Sequence[str] = [s.action for s in state.scenes[:limit] if s.action]
    parts = [synopsis.strip()] + [f"Scene {i + 1}: {a}" for i, a in enumerate(actions)]
    return "\n".join(p for p in parts if p)


async def generate_youtube_metadata(
    provider: CapabilityProvider,
    title: str,
    context: str,
    kind: str = "music video storyboard",
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    retry_delay: float = RETRY_BASE_DELAY_S,
) -> YouTubeMetadata:
    prompt = METADATA_TEMPLATE.format(kind=kind, title=title or "Untitled", context=context)

    async def _generate() -> YouTubeMetadata:
        payload = await provider.generate_structured_text(prompt, METADATA_SCHEMA)
        if not isinstance(payload, dict):
            raise ParseError(f"Expected a JSON object, got {type(payload).__name__}")
        hashtags = [t if t.startswith("#") else f"#{t}" for t in _string_list(payload.get("hashtags"))]
        return YouTubeMetadata(
            title=str(payload.get("title") or title),
            description=str(payload.get("description") or ""),
            hashtags=hashtags,
            keywords=_string_list(payload.get("keywords")),
        )

    logger.info(f"Generating YouTube metadata for '{title}'")
    return await with_retry(_generate, max_attempts, retry_delay, label="youtube_metadata")

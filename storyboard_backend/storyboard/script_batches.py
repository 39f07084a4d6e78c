"""
Batch Script Generator.

Long storyboards are requested a few scenes at a time: large structured
responses come back truncated or malformed, small ones parse. The provider
keeps no memory between calls, so every batch prompt restates the synopsis,
the cast and the style rules.
"""

import asyncio
import logging
import math
from typing import Callable, List, Optional

from .cancellation import CancellationToken
from .errors import ValidationError
from .models import SceneDraft
from .prompts import CONSISTENCY_INSTRUCTION, SCENE_BATCH_TEMPLATE, SCENE_PROMPT_TEMPLATE, SCENE_SCHEMA
from .provider import CapabilityProvider
from .retry import with_retry
from .settings import BATCH_SIZE, BATCH_DELAY_S, DEFAULT_STYLE, RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_S
from .utils import coerce_items, text_field

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def consistency_instruction(total_count: int, style: str) -> str:
    return CONSISTENCY_INSTRUCTION.format(scene_count=total_count, style=style)


def build_scene_prompt(style: str, character_context: str, action: str, setting: str, consistency: str) -> str:
    return SCENE_PROMPT_TEMPLATE.format(
        style=style, consistency=consistency, characters=character_context,
        action=action, setting=setting,
    )


def build_batch_prompt(
    synopsis: str, character_context: str, style: str, consistency: str,
    start_number: int, count: int, total_count: int,
) -> str:
    return SCENE_BATCH_TEMPLATE.format(
        consistency=consistency, start=start_number, end=start_number + count - 1,
        total=total_count, count=count, synopsis=synopsis, characters=character_context,
        style=style,
    )


async def generate_scenes_in_batches(
    provider: CapabilityProvider,
    synopsis: str,
    character_context: str,
    total_count: int,
    batch_size: int = BATCH_SIZE,
    *,
    style: str = DEFAULT_STYLE,
    cancel_token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    batch_delay: float = BATCH_DELAY_S,
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    retry_delay: float = RETRY_BASE_DELAY_S,
) -> List[SceneDraft]:
    """
    Generate ``total_count`` scene drafts, ``batch_size`` per provider call.

    Scene numbers are reassigned from the accumulator, so the result is
    always numbered 1..N without gaps whatever the provider returns. A short
    batch is accepted and the next batch continues from where it stopped.

    ``on_progress`` receives the fraction of scenes written so far (0..1).
    If ``cancel_token`` is set before a batch, the scenes accumulated so far
    are returned.

    Raises:
        ValidationError: non-positive counts
        ExhaustedRetries: a batch kept failing; no partial script is returned
    """
    if total_count < 1:
        raise ValidationError("Scene count must be at least 1", {"total_count": total_count})
    if batch_size < 1:
        raise ValidationError("Batch size must be at least 1", {"batch_size": batch_size})

    num_batches = math.ceil(total_count / batch_size)
    consistency = consistency_instruction(total_count, style)
    scenes: List[SceneDraft] = []
    batch_index = 0

    while len(scenes) < total_count:
        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"Script generation cancelled after {len(scenes)} scenes")
            break

        start_number = len(scenes) + 1
        count_in_batch = min(batch_size, total_count - len(scenes))
        batch_index += 1
        logger.info(
            f"Writing batch {batch_index}/{num_batches}: scenes {start_number}-{start_number + count_in_batch - 1}"
        )
        prompt = build_batch_prompt(
            synopsis, character_context, style, consistency, start_number, count_in_batch, total_count
        )

        async def _request_batch() -> List[dict]:
            payload = await provider.generate_structured_text(prompt, SCENE_SCHEMA)
            return coerce_items(payload)

        items = await with_retry(_request_batch, max_attempts, retry_delay, label=f"scene_batch_{batch_index}")
        items = items[:count_in_batch]
        if len(items) < count_in_batch:
            logger.warning(f"Batch {batch_index} returned {len(items)} of {count_in_batch} scenes")

        for local_index, item in enumerate(items):
            action = text_field(item, "action")
            setting = text_field(item, "consistentContext", "consistent_context")
            scenes.append(SceneDraft(
                scene_number=start_number + local_index,
                action=action,
                consistent_context=setting,
                full_prompt=build_scene_prompt(style, character_context, action, setting, consistency),
            ))

        if on_progress is not None:
            on_progress(len(scenes) / total_count)

        if len(scenes) < total_count and batch_delay > 0:
            await asyncio.sleep(batch_delay)

    return scenes

"""
Cast Builder: derives character profiles from a synopsis.

The character context string built here is injected into every later
prompt so faces and outfits stay the same across scenes.
"""

import logging
from typing import List, Optional, Sequence

from .errors import ValidationError
from .models import CharacterProfile, CharacterSlot, ImageAnalysis, ImageReference
from .prompts import CHARACTER_SCHEMA, CHARACTER_TEMPLATE, REFERENCE_CONSTRAINT
from .provider import CapabilityProvider
from .retry import with_retry
from .settings import DEFAULT_STYLE, MAX_CHARACTERS, RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_S
from .utils import coerce_items, decode_reference, is_blank, text_field

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "gender", "age", "description")


async def analyze_reference(
    provider: CapabilityProvider,
    reference: ImageReference,
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    retry_delay: float = RETRY_BASE_DELAY_S,
) -> ImageAnalysis:
    image_bytes = decode_reference(reference.base64)
    return await with_retry(
        lambda: provider.analyze_image(image_bytes, reference.mime_type),
        max_attempts, retry_delay, label="analyze_image",
    )


async def build_cast(
    provider: CapabilityProvider,
    synopsis: str,
    desired_count: int,
    reference_image: Optional[ImageReference] = None,
    *,
    style: str = DEFAULT_STYLE,
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    retry_delay: float = RETRY_BASE_DELAY_S,
) -> List[CharacterProfile]:
    """
    Ask the provider for ``desired_count`` characters in one call.

    With a reference image the image is analysed first and its description
    is folded into the prompt as a hard constraint. The result keeps the
    provider's order and may be shorter than requested; use
    ``fill_cast_slots`` to pad it.

    Raises:
        ValidationError: blank synopsis or count outside 1..MAX_CHARACTERS
        ExhaustedRetries: analysis or generation kept failing
    """
    if is_blank(synopsis):
        raise ValidationError("A synopsis or topic is required to build a cast")
    if not 1 <= desired_count <= MAX_CHARACTERS:
        raise ValidationError(
            f"Character count must be between 1 and {MAX_CHARACTERS}",
            {"desired_count": desired_count},
        )

    reference = ""
    if reference_image is not None:
        analysis = await analyze_reference(provider, reference_image, max_attempts, retry_delay)
        reference = REFERENCE_CONSTRAINT.format(
            style_description=analysis.style_description,
            character_description=analysis.character_description,
        )

    prompt = CHARACTER_TEMPLATE.format(
        count=desired_count, synopsis=synopsis.strip(), style=style, reference=reference
    )

    async def _generate() -> List[dict]:
        payload = await provider.generate_structured_text(prompt, CHARACTER_SCHEMA)
        return coerce_items(payload, allow_empty=True)

    logger.info(f"Generating {desired_count} characters")
    items = await with_retry(_generate, max_attempts, retry_delay, label="generate_characters")
    profiles = [
        CharacterProfile(
            name=text_field(item, "name"),
            gender=text_field(item, "gender"),
            age=text_field(item, "age"),
            description=text_field(item, "description"),
        )
        for item in items[:desired_count]
    ]
    if len(profiles) < desired_count:
        logger.warning(f"Provider returned {len(profiles)} of {desired_count} characters")
    return profiles


def fill_cast_slots(profiles: Sequence[CharacterProfile], count: int) -> List[CharacterProfile]:
    """Exactly ``count`` profiles; missing slots become empty profiles."""
    filled = [p.model_copy() for p in list(profiles)[:count]]
    filled.extend(CharacterProfile() for _ in range(count - len(filled)))
    return filled


def merge_cast(slots: Sequence[CharacterSlot], generated: Sequence[CharacterProfile]) -> List[CharacterSlot]:
    """Fill blank fields of each slot from the generated profile at the same index.

    Fields the user already filled in are kept as they are.
    """
    merged = []
    for i, slot in enumerate(slots):
        slot = slot.model_copy(deep=True)
        source = generated[i] if i < len(generated) else None
        if source is not None:
            for field in PROFILE_FIELDS:
                if is_blank(getattr(slot, field)) and not is_blank(getattr(source, field)):
                    setattr(slot, field, getattr(source, field))
        merged.append(slot)
    return merged


def build_character_context(characters: Sequence[CharacterProfile]) -> str:
    blocks = []
    for idx, c in enumerate(characters):
        traits = ", ".join(t for t in (c.gender, c.age) if not is_blank(t))
        line = f"Character {idx + 1} ({c.name or 'Unnamed'}): {c.description}".rstrip()
        if traits:
            line += f" ({traits})"
        blocks.append(line)
    return "\n\n".join(blocks)

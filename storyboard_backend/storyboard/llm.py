import os, json, base64, logging
from typing import Any

from .errors import ProviderError, ParseError
from .models import ImageAnalysis
from .prompts import SYSTEM_PROMPT, ANALYSIS_PROMPT
from .settings import OPENAI_MODEL, OPENAI_VISION_MODEL

logger = logging.getLogger(__name__)

_client = None

# JSON-object mode cannot return a bare array, so arrays travel under this key
ARRAY_KEY = "items"

def _get_client():
    global _client
    if _client is None:
        from openai import AsyncOpenAI
        api_key = os.getenv("OPENAI_API_KEY", "")
        if not api_key:
            raise ProviderError("OPENAI_API_KEY is not set; please configure your .env")
        _client = AsyncOpenAI(api_key=api_key)
    return _client

def clean_json(text: str) -> str:
    if not text:
        return ""
    return text.replace("```json", "").replace("```", "").strip()

def parse_json(text: str) -> Any:
    try:
        return json.loads(clean_json(text))
    except json.JSONDecodeError as e:
        raise ParseError(f"Model returned invalid JSON: {e}", {"preview": (text or "")[:200]}) from e

def _wrap_schema(schema: dict) -> dict:
    if schema.get("type") == "array":
        return {"type": "object", "properties": {ARRAY_KEY: schema}, "required": [ARRAY_KEY]}
    return schema

def build_user_prompt(prompt: str, schema: dict) -> str:
    return f"{prompt}\n\nSchema:\n{json.dumps(_wrap_schema(schema), indent=2)}\nReturn ONLY valid JSON for the schema above."

async def _complete_json(messages: list, model: str) -> str:
    client = _get_client()
    try:
        resp = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.7,
            response_format={"type": "json_object"},
        )
    except Exception as e:
        logger.error(f"OpenAI API call failed: {str(e)}")
        raise ProviderError(f"OpenAI request failed: {e}") from e
    content = resp.choices[0].message.content
    if not content:
        raise ParseError("OpenAI returned an empty message")
    return content

async def generate_structured_text(prompt: str, schema: dict) -> Any:
    logger.info(f"Calling OpenAI for structured output ({len(prompt)} chars)")
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_user_prompt(prompt, schema)},
    ]
    data = parse_json(await _complete_json(messages, OPENAI_MODEL))
    if schema.get("type") == "array" and isinstance(data, dict) and ARRAY_KEY in data:
        data = data[ARRAY_KEY]
    logger.info("Successfully received response from OpenAI")
    return data

async def analyze_image(image_bytes: bytes, mime_type: str) -> ImageAnalysis:
    logger.info(f"Analyzing reference image ({mime_type}, {len(image_bytes)} bytes)")
    data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": [
            {"type": "text", "text": ANALYSIS_PROMPT},
            {"type": "image_url", "image_url": {"url": data_url}},
        ]},
    ]
    data = parse_json(await _complete_json(messages, OPENAI_VISION_MODEL))
    if not isinstance(data, dict):
        raise ParseError("Image analysis did not return an object")
    return ImageAnalysis(
        style_description=str(data.get("artStyle") or ""),
        character_description=str(data.get("characterDescription") or ""),
    )

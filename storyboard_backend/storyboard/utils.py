import base64, binascii
from typing import Any, List, Optional

from .errors import ParseError, ValidationError

# Keys a model may wrap an array in when it answers with an object
_ARRAY_KEYS = ("items", "scenes", "characters", "results", "data")

def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()

def coerce_items(payload: Any, allow_empty: bool = False) -> List[dict]:
    """Pull a list of objects out of an untrusted structured response."""
    items = payload
    if isinstance(payload, dict):
        items = next((payload[k] for k in _ARRAY_KEYS if isinstance(payload.get(k), list)), None)
        if items is None:
            items = next((v for v in payload.values() if isinstance(v, list)), None)
    if not isinstance(items, list):
        raise ParseError(f"Expected a JSON array, got {type(payload).__name__}")
    items = [i for i in items if isinstance(i, dict)]
    if not items and not allow_empty:
        raise ParseError("Provider returned no usable items")
    return items

def decode_reference(data: str) -> bytes:
    """Decode a base64 payload, tolerating a data-URL prefix."""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Reference image is not valid base64: {e}") from e

def text_field(item: dict, *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return str(value)
    return ""

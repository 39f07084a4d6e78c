import os, io, json, base64, binascii, logging
import httpx
from typing import List, Optional
from PIL import Image, UnidentifiedImageError

from .errors import ProviderError, ValidationError
from .models import RunState

logger = logging.getLogger(__name__)


def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)

def write_text(path: str, text: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)

def scene_filename(scene_number: int) -> str:
    return f"MV_Scene_{scene_number}.png"

def decode_data_url(url: str) -> bytes:
    header, _, payload = url.partition(",")
    if not header.startswith("data:") or not payload:
        raise ValidationError("Malformed data URL")
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload, validate=True)
        return payload.encode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Data URL is not valid base64: {e}") from e

async def fetch_image_bytes(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    """Raw bytes of a scene image; the URL may be a data URL or a provider download link."""
    if url.startswith("data:"):
        return decode_data_url(url)
    try:
        async with httpx.AsyncClient(timeout=60, transport=transport) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        raise ProviderError(f"Failed to download image: {e}", {"url": url}) from e

def to_png(image_data: bytes) -> bytes:
    """Re-encode any image Pillow understands (WebP from Replicate included) as PNG."""
    try:
        with Image.open(io.BytesIO(image_data)) as pil_img:
            if pil_img.format == "PNG":
                return image_data
            if pil_img.mode in ("RGBA", "LA"):
                # Flatten onto white so viewers without alpha support show the same frame
                background = Image.new("RGB", pil_img.size, (255, 255, 255))
                if pil_img.mode == "LA":
                    pil_img = pil_img.convert("RGBA")
                background.paste(pil_img, mask=pil_img.split()[-1])
                pil_img = background
            elif pil_img.mode != "RGB":
                pil_img = pil_img.convert("RGB")
            png_buffer = io.BytesIO()
            pil_img.save(png_buffer, format="PNG")
            return png_buffer.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Unreadable image data: {e}") from e

async def scene_png(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    return to_png(await fetch_image_bytes(url, transport))

async def export_storyboard(state: RunState, out_dir: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[str]:
    """
    Write every rendered scene as ``MV_Scene_{n}.png`` plus a ``storyboard.json``
    with the script. Scenes without an image are listed in the JSON only.
    A scene whose image cannot be fetched is logged and skipped.
    """
    written = []
    for scene in sorted(state.scenes, key=lambda s: s.scene_number):
        if not scene.image_url:
            continue
        try:
            data = await scene_png(scene.image_url, transport)
        except (ProviderError, ValidationError) as e:
            logger.warning(f"Skipping scene {scene.scene_number} export: {e}")
            continue
        path = os.path.join(out_dir, scene_filename(scene.scene_number))
        write_bytes(path, data)
        written.append(path)

    script = {
        "run_id": state.run_id,
        "status": state.status.value,
        "characters": [c.profile().model_dump() for c in state.characters],
        "scenes": [
            s.model_dump(include={"scene_number", "action", "consistent_context", "full_prompt", "image_url"})
            for s in state.scenes
        ],
    }
    json_path = os.path.join(out_dir, "storyboard.json")
    write_text(json_path, json.dumps(script, indent=2))
    written.append(json_path)
    logger.info(f"Exported {len(written) - 1} scene images to {out_dir}")
    return written

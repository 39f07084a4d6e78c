import os, time, httpx, asyncio, logging

from .errors import ProviderError
from .settings import REPLICATE_POLL_INTERVAL_MS, REPLICATE_POLL_TIMEOUT_S, REPLICATE_MODEL_VERSION

logger = logging.getLogger(__name__)

API_BASE = "https://api.replicate.com/v1"

def _headers():
    token = os.getenv("REPLICATE_API_TOKEN", "")
    if not token:
        raise ProviderError("REPLICATE_API_TOKEN is not set; please configure your .env")
    return {"Authorization": f"Token {token}"}

def _model_selector() -> str:
    # Prefer explicit version from env for stability; fall back to a public model alias (latest).
    return REPLICATE_MODEL_VERSION or "black-forest-labs/flux-schnell"

def _parse_selector(selector: str):
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    if "/" in selector:
        owner_name, _, _version_alias = selector.partition(":")
        if "/" in owner_name:
            owner, name = owner_name.split("/", 1)
            return "model", {"owner": owner, "name": name}
    return "version", {"version": selector}

async def _resolve_latest_version(client: httpx.AsyncClient, owner: str, name: str) -> str:
    logger.info(f"Resolving latest version for {owner}/{name}")
    resp = await client.get(f"{API_BASE}/models/{owner}/{name}", headers=_headers())
    resp.raise_for_status()
    version_id = (resp.json().get("latest_version") or {}).get("id")
    if not version_id:
        raise ProviderError(f"Could not resolve latest version for {owner}/{name}")
    return version_id

async def _create_prediction(client: httpx.AsyncClient, body: dict) -> dict:
    mode, data = _parse_selector(_model_selector())
    if mode == "version":
        url = f"{API_BASE}/predictions"
        body = {**body, "version": data["version"]}
    else:
        url = f"{API_BASE}/models/{data['owner']}/{data['name']}/predictions"

    r = await client.post(url, headers={**_headers(), "Content-Type": "application/json"}, json=body)
    if r.status_code == 404 and mode == "model":
        # Model endpoint can 404 for aliased models; retry through an explicit version
        logger.info("Falling back to latest version resolution for model")
        version_id = await _resolve_latest_version(client, data["owner"], data["name"])
        r = await client.post(
            f"{API_BASE}/predictions",
            headers={**_headers(), "Content-Type": "application/json"},
            json={**body, "version": version_id},
        )
    if r.status_code >= 400:
        logger.error(f"Replicate create failed {r.status_code}: {r.text}")
        raise ProviderError(f"Replicate create failed {r.status_code}: {r.text}")
    return r.json()

async def create_and_wait_image(prompt: str, aspect_ratio: str = "16:9") -> str:
    logger.info(f"Starting Replicate image generation for prompt: {prompt[:100]}...")
    body = {"input": {"prompt": prompt, "aspect_ratio": aspect_ratio, "num_outputs": 1}}

    try:
        async with httpx.AsyncClient(timeout=30) as client:
            pred = await _create_prediction(client, body)
            pred_id = pred["id"]
            logger.info(f"Replicate prediction created with ID: {pred_id}")

            start = time.time()
            while True:
                s = await client.get(f"{API_BASE}/predictions/{pred_id}", headers=_headers())
                if s.status_code >= 400:
                    logger.error(f"Replicate status failed {s.status_code}: {s.text}")
                    raise ProviderError(f"Replicate status failed {s.status_code}: {s.text}")
                status_body = s.json()
                status = status_body.get("status")
                logger.info(f"Replicate prediction {pred_id} status: {status}")

                if status in ("succeeded", "failed", "canceled"):
                    if status != "succeeded":
                        error_detail = status_body.get("error")
                        raise ProviderError(f"Replicate failed: {status}. error={error_detail}")
                    output = status_body.get("output")
                    if isinstance(output, list) and output:
                        return output[0]
                    if isinstance(output, str) and output:
                        return output
                    raise ProviderError("Replicate succeeded but no output URL")
                if time.time() - start > REPLICATE_POLL_TIMEOUT_S:
                    raise ProviderError("Replicate polling timeout")
                await asyncio.sleep(REPLICATE_POLL_INTERVAL_MS / 1000.0)
    except httpx.HTTPError as e:
        logger.error(f"Replicate request error: {str(e)}")
        raise ProviderError(f"Replicate request error: {e}") from e

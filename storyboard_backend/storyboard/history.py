"""
Project history: the global list of saved storyboard projects.

Snapshots are prepended to a list stored under one key, either in Vercel KV
(so history survives serverless invocations) or in a local JSON file.
"""
import os
import json
import time
import uuid
import httpx
import asyncio
import logging
import tempfile
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import (
    CharacterSlot, ProjectSnapshot, RenderedScene, RunState, RunStatus, StoryboardRequest,
)
from .settings import HISTORY_KEY, HISTORY_PATH, KV_REST_API_URL, KV_REST_API_TOKEN, MAX_SCENES
from .utils import text_field

logger = logging.getLogger(__name__)

TOOL_NAME = "story-generated-mv"


def snapshot_from_state(state: RunState, req: StoryboardRequest, title: Optional[str] = None) -> ProjectSnapshot:
    scenes = []
    for scene in state.scenes:
        data = scene.model_dump(mode="json")
        data["is_loading"] = False
        scenes.append(data)
    return ProjectSnapshot(
        id=str(uuid.uuid4()),
        timestamp=int(time.time() * 1000),
        tool=TOOL_NAME,
        category="storyboard",
        title=title or req.title or req.synopsis[:60],
        data={
            "run_id": state.run_id,
            "synopsis": req.synopsis,
            "characters": [c.model_dump(mode="json") for c in state.characters or req.characters],
            "scenes": scenes,
            "scene_count": req.scene_count,
            "style": req.style,
            "aspect_ratio": req.aspect_ratio,
            "auto_cast": req.auto_cast,
        },
    )


def _scene_from_dict(item: Dict[str, Any], fallback_number: int) -> RenderedScene:
    # Accepts both our snake_case dumps and the browser studio's camelCase entries
    number = item.get("scene_number", item.get("sceneNumber"))
    return RenderedScene(
        scene_number=int(number) if number is not None else fallback_number,
        action=text_field(item, "action", "description"),
        consistent_context=text_field(item, "consistent_context", "consistentContext"),
        full_prompt=text_field(item, "full_prompt", "fullPrompt", "promptUsed"),
        image_url=item.get("image_url") or item.get("imageUrl") or None,
        is_loading=False,
        last_error=item.get("last_error"),
        error_message=item.get("error_message"),
    )


def state_from_snapshot(snapshot: ProjectSnapshot, run_id: Optional[str] = None) -> Tuple[StoryboardRequest, RunState]:
    """Rebuild the run inputs and state a saved project describes."""
    data = snapshot.data
    characters = [CharacterSlot.model_validate(c) for c in data.get("characters") or [] if isinstance(c, dict)]
    raw_scenes = [s for s in data.get("scenes") or [] if isinstance(s, dict)]
    scenes = sorted(
        (_scene_from_dict(s, i + 1) for i, s in enumerate(raw_scenes)),
        key=lambda s: s.scene_number,
    )
    scene_count = data.get("scene_count") or data.get("sceneCount") or len(scenes) or 12
    req = StoryboardRequest(
        title=snapshot.title,
        synopsis=data.get("synopsis") or "",
        characters=characters,
        scene_count=max(1, min(MAX_SCENES, int(scene_count))),
        auto_cast=bool(data.get("auto_cast", False)),
        **{k: data[k] for k in ("style", "aspect_ratio") if data.get(k)},
    )
    complete = bool(scenes) and all(s.image_url for s in scenes)
    state = RunState(
        run_id=run_id or data.get("run_id") or str(uuid.uuid4()),
        status=RunStatus.DONE if complete else RunStatus.IDLE,
        progress_percent=100 if complete else 0,
        scenes=scenes,
        characters=characters,
    )
    return req, state


def merge_projects(incoming: Sequence[ProjectSnapshot], existing: Sequence[ProjectSnapshot]) -> List[ProjectSnapshot]:
    """Incoming first; the first entry seen for an id wins."""
    seen = set()
    merged = []
    for project in list(incoming) + list(existing):
        if project.id in seen:
            continue
        seen.add(project.id)
        merged.append(project)
    return merged


def _parse_projects(raw: Any) -> List[ProjectSnapshot]:
    if not isinstance(raw, list):
        return []
    projects = []
    for entry in raw:
        try:
            projects.append(ProjectSnapshot.model_validate(entry))
        except ValueError as e:
            logger.warning(f"Skipping malformed history entry: {e}")
    return projects


class HistoryStore:
    """Shared list operations; subclasses only read and write the raw list."""

    async def _load(self) -> List[ProjectSnapshot]:
        raise NotImplementedError

    async def _store(self, projects: List[ProjectSnapshot]) -> bool:
        raise NotImplementedError

    async def list_projects(self) -> List[ProjectSnapshot]:
        return await self._load()

    async def get_project(self, project_id: str) -> Optional[ProjectSnapshot]:
        for project in await self._load():
            if project.id == project_id:
                return project
        return None

    async def save_project(self, snapshot: ProjectSnapshot) -> bool:
        projects = await self._load()
        ok = await self._store([snapshot] + [p for p in projects if p.id != snapshot.id])
        if ok:
            logger.info(f"Saved project {snapshot.id} ({snapshot.title})")
        return ok

    async def delete_project(self, project_id: str) -> bool:
        projects = await self._load()
        remaining = [p for p in projects if p.id != project_id]
        if len(remaining) == len(projects):
            return False
        return await self._store(remaining)

    async def clear(self) -> bool:
        return await self._store([])

    async def import_projects(self, incoming: Sequence[ProjectSnapshot]) -> List[ProjectSnapshot]:
        merged = merge_projects(incoming, await self._load())
        await self._store(merged)
        return merged


class FileHistoryStore(HistoryStore):
    """
    History in a local JSON file. File access runs in a worker thread, and
    writes go to a temp file that replaces the old one only once complete.
    """

    def __init__(self, path: str = HISTORY_PATH):
        self.path = path

    def _read(self):
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, payload: Dict[str, Any]):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".history-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    async def _load(self) -> List[ProjectSnapshot]:
        if not os.path.exists(self.path):
            return []
        try:
            raw = await asyncio.to_thread(self._read)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to read history from {self.path}: {e}")
            return []
        return _parse_projects(raw.get(HISTORY_KEY) if isinstance(raw, dict) else raw)

    async def _store(self, projects: List[ProjectSnapshot]) -> bool:
        payload = {HISTORY_KEY: [p.model_dump(mode="json") for p in projects]}
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as e:
            logger.error(f"Failed to write history to {self.path}: {e}")
            return False
        return True


class KVHistoryStore(HistoryStore):
    """History in Vercel KV through its REST API."""

    def __init__(self, url: str = KV_REST_API_URL, token: str = KV_REST_API_TOKEN, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.kv_rest_api_url = url.rstrip("/")
        self.kv_rest_api_token = token
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=10, transport=self._transport)

    async def _load(self) -> List[ProjectSnapshot]:
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.kv_rest_api_url}/get",
                    headers=self._headers(),
                    json=[HISTORY_KEY]
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Failed to retrieve history from KV: {e}")
            return []
        if not data.get("result"):
            return []
        try:
            return _parse_projects(json.loads(data["result"]))
        except json.JSONDecodeError as e:
            logger.error(f"History in KV is not valid JSON: {e}")
            return []

    async def _store(self, projects: List[ProjectSnapshot]) -> bool:
        payload = json.dumps([p.model_dump(mode="json") for p in projects])
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.kv_rest_api_url}/set",
                    headers=self._headers(),
                    json=[HISTORY_KEY, payload]
                )
                response.raise_for_status()
                logger.info(f"Stored {len(projects)} projects in KV")
                return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to store history in KV: {e}")
            return False


def get_history_store() -> HistoryStore:
    if KV_REST_API_URL and KV_REST_API_TOKEN:
        logger.info("Project history stored in KV")
        return KVHistoryStore()
    logger.info(f"KV storage not configured - using {HISTORY_PATH}")
    return FileHistoryStore()

import os, logging, tempfile
from functools import lru_cache
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS, MAX_RUNS
from .errors import (
    ExhaustedRetries, ParseError, ProviderError, RunActiveError, SceneBusyError, SceneNotFoundError,
    StoryboardError, ValidationError,
)
from .history import HistoryStore, get_history_store, snapshot_from_state
from .media import export_storyboard, scene_filename, scene_png
from .metadata import generate_youtube_metadata, storyboard_context
from .models import (
    CastRequest, CharacterProfile, PipelineConfig, ProjectSnapshot, RenderedScene,
    RunState, RunStatus, StoryboardRequest, YouTubeMetadata,
)
from .orchestrator import StoryboardOrchestrator, validate_request
from .provider import CapabilityProvider, StudioProvider

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storyboard Studio Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# In-memory run registry, capped at MAX_RUNS by dropping the oldest finished runs
RUNS: Dict[str, StoryboardOrchestrator] = {}
_FINISHED = (RunStatus.DONE, RunStatus.CANCELLED, RunStatus.FAILED)

_STATUS_CODES = (
    (ValidationError, 400),
    (SceneNotFoundError, 404),
    (RunActiveError, 409),
    (SceneBusyError, 409),
    (ProviderError, 502),
    (ParseError, 502),
    (ExhaustedRetries, 502),
)


class TitleRequest(BaseModel):
    title: Optional[str] = None


def get_provider() -> CapabilityProvider:
    if not has_all_keys():
        logger.error("API keys missing, cannot reach providers")
        raise HTTPException(500, "Server configuration error: missing required API keys")
    return StudioProvider()


def get_config() -> PipelineConfig:
    return PipelineConfig()


@lru_cache(maxsize=1)
def get_history() -> HistoryStore:
    return get_history_store()


def _register_run(orch: StoryboardOrchestrator):
    RUNS[orch.run_id] = orch
    finished = [run_id for run_id, other in RUNS.items() if other.state.status in _FINISHED]
    for run_id in finished[:max(0, len(RUNS) - MAX_RUNS)]:
        logger.info(f"Evicting finished run {run_id}")
        del RUNS[run_id]


def _get_run(run_id: str) -> StoryboardOrchestrator:
    orch = RUNS.get(run_id)
    if orch is None:
        raise HTTPException(404, "run not found")
    return orch


async def _background_run(orch: StoryboardOrchestrator, run: Callable[[], Awaitable[RunState]]):
    try:
        logger.info(f"Starting background run {orch.run_id}")
        state = await run()
        logger.info(f"Background run {orch.run_id} finished: {state.status.value}")
    except Exception as e:
        # The orchestrator has already recorded the failure on the run state
        logger.error(f"Background run {orch.run_id} failed: {str(e)}")


@app.exception_handler(StoryboardError)
async def storyboard_error_handler(request: Request, exc: StoryboardError):
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"detail": exc.message, "details": exc.details})


@app.get("/health")
def health():
    keys_ok = has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "has_keys": keys_ok, "runs": len(RUNS)}


@app.post("/v1/storyboard:start")
async def start_run(
    req: StoryboardRequest,
    background_tasks: BackgroundTasks,
    provider: CapabilityProvider = Depends(get_provider),
    config: PipelineConfig = Depends(get_config),
):
    logger.info(f"Starting storyboard for synopsis: {req.synopsis[:50]}...")
    validate_request(req)
    orch = StoryboardOrchestrator(provider, config)
    _register_run(orch)
    background_tasks.add_task(_background_run, orch, lambda: orch.start(req))
    return {"run_id": orch.run_id, "status": "queued"}


@app.get("/v1/runs/{run_id}", response_model=RunState)
async def run_status(run_id: str):
    return _get_run(run_id).snapshot()


@app.post("/v1/runs/{run_id}:cancel")
async def cancel_run(run_id: str):
    orch = _get_run(run_id)
    orch.cancel()
    logger.info(f"Cancellation requested for run {run_id}")
    return {"run_id": run_id, "status": orch.state.status.value}


@app.post("/v1/runs/{run_id}/scenes/{scene_number}:regenerate", response_model=RenderedScene)
async def regenerate_scene(run_id: str, scene_number: int):
    return await _get_run(run_id).regenerate_scene(scene_number)


@app.get("/v1/runs/{run_id}/scenes/{scene_number}/image")
async def scene_image(run_id: str, scene_number: int):
    orch = _get_run(run_id)
    scene = next((s for s in orch.state.scenes if s.scene_number == scene_number), None)
    if scene is None:
        raise SceneNotFoundError(scene_number)
    if not scene.image_url:
        raise HTTPException(409, "scene has no image yet")
    data = await scene_png(scene.image_url)
    headers = {"Content-Disposition": f'attachment; filename="{scene_filename(scene_number)}"'}
    return Response(content=data, media_type="image/png", headers=headers)


@app.post("/v1/runs/{run_id}:export")
async def export_run(run_id: str):
    orch = _get_run(run_id)
    if orch.is_active:
        raise RunActiveError("Wait for the run to finish before exporting it")
    out_dir = os.path.join(tempfile.gettempdir(), "storyboard", run_id)
    written = await export_storyboard(orch.snapshot(), out_dir)
    return {"run_id": run_id, "out_dir": out_dir, "files": [os.path.basename(p) for p in written]}


@app.post("/v1/runs/{run_id}/metadata", response_model=YouTubeMetadata)
async def run_metadata(run_id: str, body: TitleRequest = TitleRequest()):
    orch = _get_run(run_id)
    if orch.request is None:
        raise ValidationError("Run has no story to describe yet")
    title = body.title or orch.request.title or "Music Video Storyboard"
    return await generate_youtube_metadata(
        orch.provider, title, storyboard_context(orch.request.synopsis, orch.state),
        max_attempts=orch.config.max_attempts, retry_delay=orch.config.retry_delay,
    )


@app.post("/v1/runs/{run_id}:save", response_model=ProjectSnapshot)
async def save_run(run_id: str, body: TitleRequest = TitleRequest(), history: HistoryStore = Depends(get_history)):
    orch = _get_run(run_id)
    if orch.request is None or not orch.state.scenes:
        raise ValidationError("Nothing to save: the run has no scenes")
    if orch.is_active:
        raise RunActiveError("Wait for the run to finish before saving it")
    snapshot = snapshot_from_state(orch.snapshot(), orch.request, body.title)
    if not await history.save_project(snapshot):
        raise HTTPException(502, "Failed to save project")
    return snapshot


@app.post("/v1/cast:generate", response_model=List[CharacterProfile])
async def generate_cast(
    req: CastRequest,
    run_id: Optional[str] = None,
    provider: CapabilityProvider = Depends(get_provider),
    config: PipelineConfig = Depends(get_config),
):
    orch = _get_run(run_id) if run_id else StoryboardOrchestrator(provider, config)
    return await orch.generate_cast(req.synopsis, req.count, req.reference_image, req.style)


@app.get("/v1/history", response_model=List[ProjectSnapshot])
async def list_history(history: HistoryStore = Depends(get_history)):
    return await history.list_projects()


@app.get("/v1/history/{project_id}", response_model=ProjectSnapshot)
async def get_history_entry(project_id: str, history: HistoryStore = Depends(get_history)):
    project = await history.get_project(project_id)
    if project is None:
        raise HTTPException(404, "project not found")
    return project


@app.delete("/v1/history/{project_id}")
async def delete_history_entry(project_id: str, history: HistoryStore = Depends(get_history)):
    if not await history.delete_project(project_id):
        raise HTTPException(404, "project not found")
    return {"deleted": project_id}


@app.delete("/v1/history")
async def clear_history(history: HistoryStore = Depends(get_history)):
    await history.clear()
    return {"ok": True}


@app.post("/v1/history:import", response_model=List[ProjectSnapshot])
async def import_history(projects: List[ProjectSnapshot], history: HistoryStore = Depends(get_history)):
    logger.info(f"Importing {len(projects)} projects")
    return await history.import_projects(projects)


@app.post("/v1/history/{project_id}:load")
async def load_history_entry(
    project_id: str,
    background_tasks: BackgroundTasks,
    provider: CapabilityProvider = Depends(get_provider),
    config: PipelineConfig = Depends(get_config),
    history: HistoryStore = Depends(get_history),
):
    project = await history.get_project(project_id)
    if project is None:
        raise HTTPException(404, "project not found")
    orch = StoryboardOrchestrator(provider, config)
    state = orch.load_snapshot(project)
    if not state.scenes:
        validate_request(orch.request)
    _register_run(orch)
    if state.status != RunStatus.DONE:
        background_tasks.add_task(_background_run, orch, orch.resume)
    return {"run_id": orch.run_id, "status": state.status.value}

import uuid, asyncio, logging
from typing import Callable, List, Optional
from typing_extensions import TypedDict
from langgraph.graph import StateGraph, END

from .cancellation import CancellationToken
from .cast_builder import analyze_reference, build_cast, build_character_context, fill_cast_slots, merge_cast
from .errors import (
    Cancelled, ExhaustedRetries, RunActiveError, SceneBusyError,
    SceneNotFoundError, ValidationError,
)
from .history import state_from_snapshot
from .models import (
    ACTIVE_STATUSES, CharacterProfile, CharacterSlot, ErrorKind, ImageReference, PipelineConfig,
    ProjectSnapshot, RenderedScene, RunState, RunStatus, StoryboardRequest,
)
from .provider import CapabilityProvider
from .retry import with_retry
from .script_batches import generate_scenes_in_batches
from .settings import DEFAULT_ASPECT_RATIO, DEFAULT_STYLE, MAX_CHARACTERS, MAX_SCENES
from .utils import decode_reference, is_blank

logger = logging.getLogger(__name__)

# Share of the progress bar each stage ends at
CAST_START, CAST_END, SCRIPT_END = 5, 15, 25

Subscriber = Callable[[RunState], None]


class GraphState(TypedDict):
    status: str


def validate_request(req: StoryboardRequest) -> None:
    """Raise ValidationError for input that must never reach the provider."""
    if is_blank(req.synopsis):
        raise ValidationError("A story synopsis is required")
    if not req.characters:
        raise ValidationError("At least one character slot is required")
    if len(req.characters) > MAX_CHARACTERS:
        raise ValidationError(f"At most {MAX_CHARACTERS} characters are supported", {"count": len(req.characters)})
    if not 1 <= req.scene_count <= MAX_SCENES:
        raise ValidationError(f"Scene count must be between 1 and {MAX_SCENES}", {"scene_count": req.scene_count})
    incomplete = []
    for i, slot in enumerate(req.characters):
        if slot.reference_image is not None:
            decode_reference(slot.reference_image.base64)
        if req.auto_cast:
            continue
        if is_blank(slot.name) or (is_blank(slot.description) and slot.reference_image is None):
            incomplete.append(i + 1)
    if incomplete:
        raise ValidationError(
            "Every character needs a name and a description or reference image",
            {"slots": incomplete},
        )


class StoryboardOrchestrator:
    """
    Runs one storyboard production: cast, then script, then images.

    ``state`` is owned here; observers get deep copies through ``subscribe``
    or ``snapshot``. Cast and script failures end the run as ``failed``;
    a failed image is recorded on its scene and the run carries on.
    """

    def __init__(self, provider: CapabilityProvider, config: Optional[PipelineConfig] = None):
        self.provider = provider
        self.config = config or PipelineConfig()
        self.state = RunState(run_id=str(uuid.uuid4()))
        self.request: Optional[StoryboardRequest] = None
        self.last_exception: Optional[Exception] = None
        self._token = CancellationToken()
        self._subscribers: List[Subscriber] = []
        self._graph = self._build_graph()

    # --- observation ---

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def snapshot(self) -> RunState:
        return self.state.model_copy(deep=True)

    def _notify(self):
        for callback in list(self._subscribers):
            try:
                callback(self.snapshot())
            except Exception:
                logger.exception(f"Subscriber failed for run {self.state.run_id}")

    @property
    def run_id(self) -> str:
        return self.state.run_id

    @property
    def is_active(self) -> bool:
        return self.state.status in ACTIVE_STATUSES

    @property
    def aspect_ratio(self) -> str:
        return self.request.aspect_ratio if self.request else DEFAULT_ASPECT_RATIO

    def _set_progress(self, value: float):
        value = max(0, min(100, int(round(value))))
        self.state.progress_percent = max(self.state.progress_percent, value)

    def _set_status(self, status: RunStatus, text: str = ""):
        logger.info(f"Run {self.run_id}: {self.state.status.value} -> {status.value}")
        self.state.status = status
        self.state.status_text = text
        self._notify()
        return {"status": status.value}

    # --- graph ---

    def _build_graph(self):
        g = StateGraph(GraphState)
        g.add_node("cast", self.node_cast)
        g.add_node("script", self.node_script)
        g.add_node("render", self.node_render)
        routes = {"cast": "cast", "script": "script", "render": "render", END: END}
        g.set_conditional_entry_point(self._route, routes)
        for node in ("cast", "script", "render"):
            g.add_conditional_edges(node, self._route, routes)
        return g.compile()

    @staticmethod
    def _route(graph_state: GraphState) -> str:
        return {
            RunStatus.BUILDING_CAST.value: "cast",
            RunStatus.WRITING_SCRIPT.value: "script",
            RunStatus.RENDERING_IMAGES.value: "render",
        }.get(graph_state["status"], END)

    async def _run_graph(self):
        try:
            await self._graph.ainvoke({"status": self.state.status.value})
        except asyncio.CancelledError:
            self._set_status(RunStatus.CANCELLED, "Cancelled")
            raise
        except Exception as e:
            logger.error(f"Run {self.run_id} crashed: {str(e)}")
            self.last_exception = e
            self.state.error = str(e)
            self._set_status(RunStatus.FAILED)
            raise
        finally:
            # A cancel that lands after this point belongs to the next run
            self._token = CancellationToken()
        return self.snapshot()

    def _cancelled(self):
        logger.info(f"Run {self.run_id} cancelled with {len(self.state.scenes)} scenes")
        return self._set_status(RunStatus.CANCELLED, "Cancelled")

    def _failed(self, error: ExhaustedRetries, stage: str):
        logger.error(f"Run {self.run_id}: {stage} failed: {error}")
        self.last_exception = error
        self.state.error = f"{stage} failed: {error.last_error}"
        return self._set_status(RunStatus.FAILED)

    # --- operations ---

    async def start(self, req: StoryboardRequest, cancel_token: Optional[CancellationToken] = None) -> RunState:
        """
        Validate the request and run it to done, cancelled or failed.

        Returns the final state. A fatal stage error is reported through
        ``state.error`` and ``last_exception``; the whole run can then be
        started again from scratch. Without ``cancel_token`` the run uses the
        orchestrator's own token, so a ``cancel()`` made while the run is
        still queued stops it before the first stage.
        """
        validate_request(req)
        if self.is_active:
            raise RunActiveError(f"Run {self.run_id} is already in progress")

        self.request = req.model_copy(deep=True)
        if cancel_token is not None:
            self._token = cancel_token
        self.last_exception = None
        self.state = RunState(
            run_id=self.run_id,
            characters=[c.model_copy(deep=True) for c in self.request.characters],
        )
        logger.info(f"Starting run {self.run_id}: {req.scene_count} scenes, {len(req.characters)} characters")
        self._set_status(RunStatus.BUILDING_CAST, "Building cast...")
        return await self._run_graph()

    def cancel(self):
        self._token.cancel()

    async def node_cast(self, graph_state: GraphState) -> GraphState:
        if self._token.cancelled:
            return self._cancelled()
        self._set_progress(CAST_START)
        try:
            characters = await self._build_run_cast()
        except ExhaustedRetries as e:
            return self._failed(e, "Cast generation")
        self.state.characters = characters
        self._set_progress(CAST_END)
        return self._set_status(RunStatus.WRITING_SCRIPT, "Writing story script...")

    async def _build_run_cast(self) -> List[CharacterSlot]:
        req = self.request
        slots = [s.model_copy(deep=True) for s in req.characters]
        cfg = self.config
        if req.auto_cast:
            reference = next((s.reference_image for s in slots if s.reference_image is not None), None)
            generated = await build_cast(
                self.provider, req.synopsis, len(slots), reference,
                style=req.style, max_attempts=cfg.max_attempts, retry_delay=cfg.retry_delay,
            )
            return merge_cast(slots, generated)

        for i, slot in enumerate(slots):
            if slot.reference_image is None or not is_blank(slot.description):
                continue
            self.state.status_text = f"Analyzing character {i + 1}/{len(slots)}..."
            self._notify()
            slot.analysis = await analyze_reference(self.provider, slot.reference_image, cfg.max_attempts, cfg.retry_delay)
            slot.description = slot.analysis.character_description
        return slots

    async def node_script(self, graph_state: GraphState) -> GraphState:
        if self._token.cancelled:
            return self._cancelled()
        req, cfg = self.request, self.config
        # Prompts are built from copies so later edits to the cast cannot leak in
        profiles = [c.profile() for c in self.state.characters]
        context = build_character_context(profiles)

        def on_progress(fraction: float):
            self._set_progress(CAST_END + fraction * (SCRIPT_END - CAST_END))
            self.state.status_text = f"Writing script ({int(fraction * 100)}%)..."
            self._notify()

        try:
            drafts = await generate_scenes_in_batches(
                self.provider, req.synopsis, context, req.scene_count, cfg.batch_size,
                style=req.style, cancel_token=self._token, on_progress=on_progress,
                batch_delay=cfg.batch_delay, max_attempts=cfg.max_attempts, retry_delay=cfg.retry_delay,
            )
        except ExhaustedRetries as e:
            return self._failed(e, "Script generation")

        self.state.scenes = [RenderedScene(**d.model_dump()) for d in drafts]
        if self._token.cancelled:
            return self._cancelled()
        self._set_progress(SCRIPT_END)
        return self._set_status(RunStatus.RENDERING_IMAGES, "Rendering scenes...")

    async def node_render(self, graph_state: GraphState) -> GraphState:
        ordered = sorted(self.state.scenes, key=lambda s: s.scene_number)
        pending = [s for s in ordered if not s.image_url]
        already_done = len(ordered) - len(pending)

        try:
            for i, scene in enumerate(pending):
                self._token.check()
                self.state.status_text = f"Rendering scene {scene.scene_number} of {len(ordered)}..."
                await self._render_scene(scene)
                self._set_progress(SCRIPT_END + (already_done + i + 1) / len(ordered) * (100 - SCRIPT_END))
                self._notify()
                if i < len(pending) - 1 and self.config.scene_delay > 0:
                    await asyncio.sleep(self.config.scene_delay)
        except Cancelled:
            return self._cancelled()

        failed = sum(1 for s in ordered if s.last_error is not None)
        if failed:
            logger.warning(f"Run {self.run_id} finished with {failed} failed scenes")
        self._set_progress(100)
        return self._set_status(RunStatus.DONE)

    async def _render_scene(self, scene: RenderedScene):
        scene.is_loading = True
        scene.last_error = None
        scene.error_message = None
        self._notify()
        prompt = scene.full_prompt
        try:
            scene.image_url = await with_retry(
                lambda: self.provider.generate_image(prompt, self.aspect_ratio),
                self.config.max_attempts, self.config.retry_delay,
                label=f"render_scene_{scene.scene_number}",
            )
        except ExhaustedRetries as e:
            logger.warning(f"Scene {scene.scene_number} failed to render: {e.last_error}")
            scene.last_error = ErrorKind.EXHAUSTED_RETRIES
            scene.error_message = str(e.last_error)
        finally:
            scene.is_loading = False

    def _find_scene(self, scene_number: int) -> RenderedScene:
        for scene in self.state.scenes:
            if scene.scene_number == scene_number:
                return scene
        raise SceneNotFoundError(scene_number)

    async def regenerate_scene(self, scene_number: int) -> RenderedScene:
        """Render one scene again from its stored prompt, touching no other scene."""
        if self.is_active:
            raise RunActiveError("Wait for the run to finish before regenerating a scene")
        scene = self._find_scene(scene_number)
        if scene.is_loading:
            raise SceneBusyError(scene_number)
        if is_blank(scene.full_prompt):
            raise ValidationError(f"Scene {scene_number} has no prompt to render")
        logger.info(f"Regenerating scene {scene_number} of run {self.run_id}")
        await self._render_scene(scene)
        self._notify()
        return scene.model_copy()

    async def generate_cast(
        self,
        synopsis: str,
        count: int,
        reference_image: Optional[ImageReference] = None,
        style: str = DEFAULT_STYLE,
    ) -> List[CharacterProfile]:
        """On-demand cast generation; the result is handed back, never applied to the run."""
        if self.is_active:
            raise RunActiveError("Cast generation is disabled while a run is in progress")
        profiles = await build_cast(
            self.provider, synopsis, count, reference_image, style=style,
            max_attempts=self.config.max_attempts, retry_delay=self.config.retry_delay,
        )
        return fill_cast_slots(profiles, count)

    def _check_no_scene_busy(self):
        busy = next((s for s in self.state.scenes if s.is_loading), None)
        if busy is not None:
            raise SceneBusyError(busy.scene_number)

    def load_snapshot(self, snapshot: ProjectSnapshot) -> RunState:
        if self.is_active:
            raise RunActiveError("Cannot load a project while a run is in progress")
        self._check_no_scene_busy()
        self.request, self.state = state_from_snapshot(snapshot, run_id=self.run_id)
        self.last_exception = None
        self._notify()
        return self.snapshot()

    async def resume(self, cancel_token: Optional[CancellationToken] = None) -> RunState:
        """
        Continue a loaded project. Existing scenes skip the cast and script
        stages; only scenes without an image are rendered. Refused while a
        single-scene regeneration is still in flight.
        """
        if self.is_active:
            raise RunActiveError(f"Run {self.run_id} is already in progress")
        self._check_no_scene_busy()
        if not self.state.scenes:
            if self.request is None:
                raise ValidationError("Nothing to resume: no scenes and no request")
            return await self.start(self.request, cancel_token)

        if cancel_token is not None:
            self._token = cancel_token
        self.last_exception = None
        self.state.error = None
        rendered = sum(1 for s in self.state.scenes if s.image_url)
        self._set_progress(SCRIPT_END + rendered / len(self.state.scenes) * (100 - SCRIPT_END))
        self._set_status(RunStatus.RENDERING_IMAGES, "Resuming render...")
        return await self._run_graph()

from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from .settings import (
    BATCH_SIZE, BATCH_DELAY_S, SCENE_DELAY_S, RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_S,
    DEFAULT_STYLE, DEFAULT_ASPECT_RATIO,
)


class RunStatus(str, Enum):
    IDLE = "idle"
    BUILDING_CAST = "building_cast"
    WRITING_SCRIPT = "writing_script"
    RENDERING_IMAGES = "rendering_images"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_STATUSES = (RunStatus.BUILDING_CAST, RunStatus.WRITING_SCRIPT, RunStatus.RENDERING_IMAGES)


class ErrorKind(str, Enum):
    PROVIDER = "provider_error"
    PARSE = "parse_error"
    EXHAUSTED_RETRIES = "exhausted_retries"


class ImageReference(BaseModel):
    base64: str
    mime_type: str = "image/png"


class ImageAnalysis(BaseModel):
    style_description: str = ""
    character_description: str = ""


class CharacterProfile(BaseModel):
    name: str = ""
    gender: str = ""
    age: str = ""
    description: str = ""


class CharacterSlot(CharacterProfile):
    reference_image: Optional[ImageReference] = None
    analysis: Optional[ImageAnalysis] = None

    def profile(self) -> CharacterProfile:
        return CharacterProfile(name=self.name, gender=self.gender, age=self.age, description=self.description)


class SceneDraft(BaseModel):
    scene_number: int
    action: str = ""
    consistent_context: str = ""
    full_prompt: str = ""


class RenderedScene(SceneDraft):
    image_url: Optional[str] = None
    is_loading: bool = False
    last_error: Optional[ErrorKind] = None
    error_message: Optional[str] = None


class RunState(BaseModel):
    run_id: str = ""
    status: RunStatus = RunStatus.IDLE
    status_text: str = ""
    progress_percent: int = 0
    error: Optional[str] = None
    scenes: List[RenderedScene] = Field(default_factory=list)
    characters: List[CharacterSlot] = Field(default_factory=list)


class StoryboardRequest(BaseModel):
    title: str = ""
    synopsis: str = ""
    characters: List[CharacterSlot] = Field(default_factory=list)
    scene_count: int = 12
    style: str = DEFAULT_STYLE
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    auto_cast: bool = False


class PipelineConfig(BaseModel):
    batch_size: int = BATCH_SIZE
    batch_delay: float = BATCH_DELAY_S
    scene_delay: float = SCENE_DELAY_S
    max_attempts: int = RETRY_MAX_ATTEMPTS
    retry_delay: float = RETRY_BASE_DELAY_S


class CastRequest(BaseModel):
    synopsis: str
    count: int = 2
    style: str = DEFAULT_STYLE
    reference_image: Optional[ImageReference] = None


class YouTubeMetadata(BaseModel):
    title: str = ""
    description: str = ""
    hashtags: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class ProjectSnapshot(BaseModel):
    id: str
    timestamp: int
    tool: str = "story-generated-mv"
    category: str = "storyboard"
    title: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

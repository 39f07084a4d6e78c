import os
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_MODEL_VERSION = os.getenv("REPLICATE_MODEL_VERSION", "")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "")

REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
REPLICATE_POLL_TIMEOUT_S = int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "120"))

# Pipeline knobs. Batches above ~10 scenes tend to come back truncated.
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "10"))
BATCH_DELAY_S = float(os.getenv("BATCH_DELAY_S", "1.0"))
SCENE_DELAY_S = float(os.getenv("SCENE_DELAY_S", "1.0"))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY_S = float(os.getenv("RETRY_BASE_DELAY_S", "1.0"))

DEFAULT_STYLE = os.getenv("DEFAULT_STYLE", "3D Pixar/Disney")
DEFAULT_ASPECT_RATIO = os.getenv("DEFAULT_ASPECT_RATIO", "16:9")
MAX_SCENES = int(os.getenv("MAX_SCENES", "600"))
MAX_CHARACTERS = int(os.getenv("MAX_CHARACTERS", "6"))
# Runs the API keeps in memory; the oldest finished ones are dropped first
MAX_RUNS = int(os.getenv("MAX_RUNS", "100"))

# Project history: Vercel KV when configured, local JSON file otherwise
HISTORY_PATH = os.getenv(
    "HISTORY_PATH",
    os.path.join(os.path.dirname(__file__), "..", "project_history.json"),
)
HISTORY_KEY = "global_project_history"
KV_REST_API_URL = os.getenv("KV_REST_API_URL", "").strip()
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "").strip()

# Comma-separated list of allowed origins for CORS (e.g., "https://app.vercel.app,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]

def has_all_keys() -> bool:
    keys_present = all([OPENAI_API_KEY, REPLICATE_API_TOKEN, ELEVENLABS_API_KEY, ELEVENLABS_VOICE_ID])
    if not keys_present:
        missing = []
        if not OPENAI_API_KEY: missing.append("OPENAI_API_KEY")
        if not REPLICATE_API_TOKEN: missing.append("REPLICATE_API_TOKEN")
        if not ELEVENLABS_API_KEY: missing.append("ELEVENLABS_API_KEY")
        if not ELEVENLABS_VOICE_ID: missing.append("ELEVENLABS_VOICE_ID")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present

import logging
import os
import tempfile

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def get_required_env_var(var_name: str) -> str:
    value = os.getenv(var_name)
    if not value:
        raise ValueError(f"Environment variable {var_name} is not set")
    return value.strip().strip("'\"")


def _get_float(var_name: str, default: str) -> float:
    return float(os.getenv(var_name, default))


class Config:
    API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:3000")
    SERVER_API_KEY = os.getenv("SERVER_API_KEY", "").strip().strip("'\"")
    ASSET_STORE = os.getenv("ASSET_STORE", "memory").lower()
    FINALIZER = os.getenv("FINALIZER", "copy").lower()

    PROBE_TIMEOUT_SECONDS = _get_float("PROBE_TIMEOUT_SECONDS", "30")
    CLASSIFY_TIMEOUT_SECONDS = _get_float("CLASSIFY_TIMEOUT_SECONDS", "60")
    CLASSIFY_FLAG_PROBABILITY = _get_float("CLASSIFY_FLAG_PROBABILITY", "0.2")
    CLASSIFY_SIMULATED_DELAY_SECONDS = _get_float(
        "CLASSIFY_SIMULATED_DELAY_SECONDS", "0"
    )

    STUCK_RUN_THRESHOLD_SECONDS = int(os.getenv("STUCK_RUN_THRESHOLD_SECONDS", "600"))
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    NOTIFIER_QUEUE_SIZE = int(os.getenv("NOTIFIER_QUEUE_SIZE", "100"))
    STREAM_CHUNK_SIZE_BYTES = int(
        os.getenv("STREAM_CHUNK_SIZE_BYTES", str(64 * 1024))
    )  # Default 64KB

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8080"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Validate and set PROCESSED_DIR
    _processed_dir = os.getenv(
        "PROCESSED_DIR",
        os.path.join(tempfile.gettempdir(), "media-pipeline", "processed"),
    )

    if not os.path.isabs(_processed_dir):
        raise ValueError(
            f"PROCESSED_DIR must be an absolute path. Got: {_processed_dir}\n"
            "Please provide a full path starting with '/'"
        )

    PROCESSED_DIR = _processed_dir.rstrip("/")

    # Create directory if it doesn't exist
    try:
        os.makedirs(PROCESSED_DIR, exist_ok=True)
        logger.debug("Verified/created processed directory: %s", PROCESSED_DIR)
    except OSError as e:
        raise ValueError(
            f"Failed to create/verify processed directory {PROCESSED_DIR}: {str(e)}"
        )

    @staticmethod
    def timeout_or_none(seconds: float):
        """Map a configured timeout onto ``asyncio.wait_for`` (0 disables)."""
        return seconds if seconds > 0 else None


config = Config()


def api_headers() -> dict:
    return {"Authorization": f"Bearer {get_required_env_var('SERVER_API_KEY')}"}

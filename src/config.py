import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_PROJECT_ROOT = Path(__file__).parent.parent.resolve()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


class Config:
    # Backend bridge
    BACKEND_URL = os.getenv("TALKTYPE_BACKEND_URL", "http://127.0.0.1:1421").rstrip("/")
    # Transport ceiling per command; keep it above STOP_TIMEOUT_SEC so the client race decides.
    COMMAND_TIMEOUT_SEC = _float_env("TALKTYPE_COMMAND_TIMEOUT_SEC", 120.0)
    EVENT_RECONNECT_SEC = _float_env("TALKTYPE_EVENT_RECONNECT_SEC", 2.0)

    # Recording session
    STOP_TIMEOUT_SEC = _float_env("TALKTYPE_STOP_TIMEOUT_SEC", 60.0)
    MAX_RECORDING_SEC = _float_env("TALKTYPE_MAX_RECORDING_SEC", 300.0)
    ELAPSED_TICK_SEC = _float_env("TALKTYPE_ELAPSED_TICK_SEC", 0.1)

    # Permissions
    PERMISSION_POLL_SEC = _float_env("TALKTYPE_PERMISSION_POLL_SEC", 5.0)

    # Models. Fixed on purpose: never read from the environment or the backend.
    RECOMMENDED_MODEL_ID = "large-v3-turbo-q8_0"

    # Local persistence and rendering surface
    SETTINGS_DB = os.getenv("TALKTYPE_SETTINGS_DB", str(_PROJECT_ROOT / "settings.db"))
    WEB_HOST = os.getenv("TALKTYPE_WEB_HOST", "127.0.0.1")
    WEB_PORT = int(os.getenv("TALKTYPE_WEB_PORT", "8766"))

    @classmethod
    def events_url(cls) -> str:
        base = cls.BACKEND_URL
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/events"


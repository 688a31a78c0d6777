"""
Runtime configuration for PixelMap, read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

SPRITE_WIDTH = 120
COLOR_DISTANCE_THRESHOLD = 20
MOVE_AMOUNT = 0.001  # degrees per arrow key press at zoom 1
CLUSTER_ZOOM_THRESHOLD = 6
CLUSTER_RADIUS_PX = 90
DUPLICATE_OFFSET_PX = (40, 20)
SCALE_STEP = 1.1

DEFAULT_CENTER = (20.0, 0.0)
DEFAULT_ZOOM = 2
MIN_ZOOM = 2
MAX_ZOOM = 18
EXIF_FLY_TO_ZOOM = 16
SEARCH_FLY_TO_ZOOM = 13

EXPORT_VERSION = "2.0.0"
EXPORT_EXTENSION = ".pixmap"
DEFAULT_MAP_NAME = "My Travel Map"
SUPPORTED_LANGUAGES = ("en", "zh")

def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")

@dataclass
class Settings:
    """Settings shared by the editor, the REST client and the server."""
    db_path: str = "pixelmap.db"
    api_url: str = "http://localhost:8080"
    passkey_api_url: Optional[str] = None
    gemini_api_key: Optional[str] = None
    dev_mode: bool = False
    language: str = "en"
    nominatim_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = "pixelmap/1.0"
    port: int = 8080
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("PIXELMAP_DB_PATH", "pixelmap.db"),
            api_url=os.getenv("PIXELMAP_API_URL", "http://localhost:8080").rstrip("/"),
            passkey_api_url=os.getenv("PASSKEY_API_URL") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            dev_mode=_env_flag("PIXELMAP_DEV_MODE"),
            language=os.getenv("PIXELMAP_LANGUAGE", "en"),
            nominatim_url=os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org").rstrip("/"),
            port=int(os.getenv("PORT", "8080")),
        )

from typing import List, Optional
from pathlib import Path
import logging
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    app_name: str = Field("friends-radio-sync", validation_alias="APP_NAME")
    host: str = Field("0.0.0.0", validation_alias="HOST")
    port: int = Field(4000, validation_alias="PORT")
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    # Shared secret that gates DJ login. This is the only value that
    # changes core behavior.
    room_password: str = Field(..., validation_alias="ROOM_PASSWORD")

    # comma-separated list of origins allowed by CORS ("*" for any)
    allowed_origins: str = Field("*", validation_alias="ALLOWED_ORIGINS")

    # Music platform Web API
    spotify_api_url: str = Field("https://api.spotify.com/v1", validation_alias="SPOTIFY_API_URL")
    upstream_timeout: float = Field(10.0, validation_alias="UPSTREAM_TIMEOUT")

    # Backoff for rate-limited queue submissions (seconds)
    retry_base_delay: float = Field(1.0, validation_alias="RETRY_BASE_DELAY")
    retry_growth_factor: float = Field(1.5, validation_alias="RETRY_GROWTH_FACTOR")
    retry_max_delay: float = Field(30.0, validation_alias="RETRY_MAX_DELAY")
    retry_jitter: float = Field(0.1, validation_alias="RETRY_JITTER")

    # How often to ask the platform what the DJ is playing; 0 disables.
    poll_interval_seconds: float = Field(5.0, validation_alias="POLL_INTERVAL_SECONDS")

    # Unset means DJ tokens live until the process exits.
    session_ttl_seconds: Optional[int] = Field(None, validation_alias="SESSION_TTL_SECONDS")

    # Most tracks queued from one playlist link.
    playlist_track_limit: int = Field(50, validation_alias="PLAYLIST_TRACK_LIMIT")

    # point to a component-local .env file (server/.env) like the client does
    model_config = SettingsConfigDict(env_file=str(Path(__file__).parent / ".env"), extra="ignore")

    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


# Lazy settings accessor to avoid import-time instantiation
_settings_instance = None

def get_settings():
    """Return a cached Settings instance.

    When no `.env` file or environment provides `ROOM_PASSWORD` (CI, test
    collection) validation fails; fall back to a default configuration so
    imports stay safe. The fallback password is logged as a warning because
    it must never be used in a real deployment.
    """
    global _settings_instance
    if _settings_instance is None:
        try:
            _settings_instance = Settings()
        except Exception:
            logger.warning("ROOM_PASSWORD not configured; falling back to default settings")
            _settings_instance = Settings.model_construct(
                app_name="friends-radio-sync",
                host="127.0.0.1",
                port=4000,
                log_level="INFO",
                room_password="default_password",
                allowed_origins="*",
                spotify_api_url="https://api.spotify.com/v1",
                upstream_timeout=10.0,
                retry_base_delay=1.0,
                retry_growth_factor=1.5,
                retry_max_delay=30.0,
                retry_jitter=0.1,
                poll_interval_seconds=5.0,
                session_ttl_seconds=None,
                playlist_track_limit=50,
            )
    return _settings_instance

from pydantic import Field, AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pathlib import Path


class ClientSettings(BaseSettings):
    # Required client settings: validated at runtime in client startup
    server_url: AnyUrl = Field(..., validation_alias="SYNC_SERVER_URL")
    username: str = Field(..., validation_alias="SYNC_USERNAME")
    # Platform credentials stay on the listener's machine; the server never sees them
    access_token: str = Field(..., validation_alias="SPOTIFY_ACCESS_TOKEN")
    device_id: Optional[str] = Field(None, validation_alias="SPOTIFY_DEVICE_ID")
    spotify_api_url: str = Field("https://api.spotify.com/v1", validation_alias="SPOTIFY_API_URL")

    model_config = SettingsConfigDict(env_file=str(Path(__file__).parent / ".env"), extra="ignore")


# Do not instantiate settings at import time; the client will validate and
# create a `ClientSettings` instance at startup. Tests should set `client_module.settings`
# directly when needed.

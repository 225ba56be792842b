from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv, find_dotenv
from pydantic import computed_field, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from comfyexec.utils.introspection import get_absolute_path

DOTENV = get_absolute_path(".env")

# Upper bound for any caller supplied execution timeout.
MAX_WAIT_TIME_S = 60 * 60


class ComfyUISettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix='comfyui_', env_file=DOTENV, extra="ignore")

    base_url: str = "http://127.0.0.1:8188"
    request_timeout_s: float = Field(default=300.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_s: float = Field(default=1.0, ge=0)
    max_backoff_s: float = Field(default=30.0, ge=0)
    poll_interval_s: float = Field(default=1.0, gt=0)
    max_wait_s: float = Field(default=300.0, gt=0, le=MAX_WAIT_TIME_S)
    max_file_size_mb: int = Field(default=50, gt=0)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator('base_url', mode='after')
    @classmethod
    def ensure_http_url(cls, value: str) -> str:
        """
        The server URL must be an absolute http(s) URL. A trailing slash is dropped so paths
        such as '/prompt' can be appended directly.
        :param value:
        :return:
        """
        parsed = urlparse(value)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"ComfyUI URL must be a valid HTTP/HTTPS URL, got '{value}'")
        return value.rstrip('/')

    @computed_field  # type: ignore
    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix='app_', env_file=DOTENV, extra="ignore")

    api_key: str
    listen_address: str = "127.0.0.1"
    listen_port: int = 8000


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    load_dotenv(find_dotenv())
    return AppSettings()

@lru_cache(maxsize=1)
def get_comfyui_settings() -> ComfyUISettings:
    load_dotenv(find_dotenv())
    return ComfyUISettings()


if __name__ == "__main__":
    print(get_comfyui_settings().model_dump())

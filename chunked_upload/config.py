from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    SECRET_KEY: str = "secret-key"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    SECURITY_TOKEN_EXPIRE_MINUTES: int = 240
    CSRF_ENABLED: bool = True

    TEMP_UPLOAD_DIR: str = "temp_uploads"
    PERM_UPLOAD_DIR: str = "perm_uploads"
    PUBLIC_URL_PREFIX: str = "/assets"

    UPLOAD_FIELD_NAME: str = "Uploads"
    UPLOAD_DISABLED: bool = False
    UPLOAD_READONLY: bool = False

    # php.ini style shorthand, e.g. "2M"
    SERVER_UPLOAD_LIMIT: str = "64M"
    SERVER_POST_SIZE_LIMIT: str = "64M"
    COPY_BUFFER_SIZE: int = 64 * 1024

    ALLOWED_EXTENSIONS: List[str] = []  # empty list allows everything
    MAX_FILE_SIZE: Optional[int] = None

    CLEANUP_INTERVAL: int = 3600  # seconds
    STALE_THRESHOLD: int = 24 * 3600  # seconds

    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None


_UNITS = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def ini_to_bytes(value: str) -> int:
    """Convert a php.ini size shorthand ("512K", "2M", "1G", "1048576") to bytes."""
    value = str(value).strip().lower()
    if not value:
        raise ValueError("Empty size value")
    unit = value[-1]
    if unit in _UNITS:
        return int(float(value[:-1]) * _UNITS[unit])
    return int(value)


class UploadConfig(BaseModel):
    """Values the orchestrator needs, computed once by the hosting process."""

    model_config = ConfigDict(frozen=True)

    temp_dir: Path
    field_name: str
    max_chunk_size: int
    copy_buffer_size: int = 64 * 1024
    disabled: bool = False
    readonly: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadConfig":
        upload_limit = ini_to_bytes(settings.SERVER_UPLOAD_LIMIT)
        post_limit = ini_to_bytes(settings.SERVER_POST_SIZE_LIMIT)
        return cls(
            temp_dir=Path(settings.TEMP_UPLOAD_DIR),
            field_name=settings.UPLOAD_FIELD_NAME,
            # ~90%, leaves room for the multipart envelope
            max_chunk_size=round(min(upload_limit, post_limit) * 0.9),
            copy_buffer_size=settings.COPY_BUFFER_SIZE,
            disabled=settings.UPLOAD_DISABLED,
            readonly=settings.UPLOAD_READONLY,
        )


settings = Settings()

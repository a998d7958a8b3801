from dataclasses import dataclass
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fieldsync.core.retry import BackoffPolicy


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Field Reading Sync"
    DEBUG: bool = False
    HOST: str = "127.0.0.1"
    PORT: int = 8765
    LOG_LEVEL: str = "INFO"
    LOG_BUFFER_SIZE: int = Field(default=1000, ge=1)

    # Reader identity; when unset the shell calls /start explicitly
    READER_ID: Optional[str] = None

    # CORS settings for the local shell
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:8081",
        "capacitor://localhost"
    ]

    # Local database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./fieldsync.db"
    DATABASE_ECHO: bool = False

    # Remote backend settings
    REMOTE_API_URL: str = "http://localhost:54321"
    REMOTE_API_KEY: str = ""
    REMOTE_ROUTES_RESOURCE: str = "routes"
    REMOTE_READINGS_RESOURCE: str = "readings"

    # Connectivity settings
    CONNECTIVITY_SOURCE: str = "push"  # "push" or "probe"
    CONNECTIVITY_PROBE_URL: Optional[str] = None
    CONNECTIVITY_PROBE_INTERVAL_SECONDS: float = Field(default=15.0, gt=0)
    CONNECTIVITY_PROBE_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    CONNECTIVITY_DEBOUNCE_SECONDS: float = Field(default=0.3, ge=0)

    # Retry settings
    SYNC_MAX_RETRIES: int = Field(default=3, ge=0)
    SYNC_INITIAL_DELAY_SECONDS: float = Field(default=2.0, ge=0)
    SYNC_MAX_DELAY_SECONDS: float = Field(default=15.0, ge=0)
    SYNC_GROWTH_FACTOR: float = Field(default=2.0, ge=1)
    SYNC_JITTER: float = Field(default=0.0, ge=0)

    # Session and request timeouts
    SYNC_SESSION_DEADLINE_SECONDS: float = Field(default=120.0, gt=0)
    DOWN_SYNC_REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    UP_SYNC_REQUEST_TIMEOUT_SECONDS: float = Field(default=25.0, gt=0)

    # Batching
    DOWN_SYNC_BATCH_SIZE: int = Field(default=4, ge=1)
    DOWN_SYNC_RESIDENCE_BATCH_SIZE: int = Field(default=10, ge=1)
    DOWN_SYNC_BATCH_PAUSE_SECONDS: float = Field(default=1.2, ge=0)
    DOWN_SYNC_RESIDENCE_PAUSE_SECONDS: float = Field(default=0.5, ge=0)
    UP_SYNC_BATCH_SIZE: int = Field(default=5, ge=1)
    UP_SYNC_BATCH_PAUSE_SECONDS: float = Field(default=1.2, ge=0)

    # Up-sync payload placeholders for missing foreign keys
    DEFAULT_RESIDENCE_ID: str = "default-residence-id"
    DEFAULT_CLIENT_ID: str = "default-client-id"
    DEFAULT_READER_ID: str = "default-reader-id"

    PURGE_SYNCED_READINGS: bool = False

    # Weekday labels as stored by the backend, Monday first
    WEEKDAY_LABELS: List[str] = [
        "Segunda-feira",
        "Terça-feira",
        "Quarta-feira",
        "Quinta-feira",
        "Sexta-feira",
        "Sábado",
        "Domingo"
    ]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @field_validator("CONNECTIVITY_SOURCE")
    @classmethod
    def validate_connectivity_source(cls, v):
        if v not in ("push", "probe"):
            raise ValueError("CONNECTIVITY_SOURCE must be 'push' or 'probe'")
        return v

    @field_validator("WEEKDAY_LABELS")
    @classmethod
    def validate_weekday_labels(cls, v):
        if len(v) != 7:
            raise ValueError("WEEKDAY_LABELS needs exactly 7 entries")
        return v


@dataclass(frozen=True)
class SyncTuning:
    """Engine and session parameters derived from settings."""
    backoff: BackoffPolicy = BackoffPolicy()
    session_deadline: float = 120.0
    down_request_timeout: float = 30.0
    up_request_timeout: float = 25.0
    down_batch_size: int = 4
    residence_batch_size: int = 10
    down_batch_pause: float = 1.2
    residence_pause: float = 0.5
    up_batch_size: int = 5
    up_batch_pause: float = 1.2
    default_residence_id: str = "default-residence-id"
    default_client_id: str = "default-client-id"
    default_reader_id: str = "default-reader-id"
    purge_synced: bool = False
    weekday_labels: tuple = (
        "Segunda-feira", "Terça-feira", "Quarta-feira", "Quinta-feira",
        "Sexta-feira", "Sábado", "Domingo"
    )

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncTuning":
        return cls(
            backoff=BackoffPolicy(
                max_retries=s.SYNC_MAX_RETRIES,
                initial_delay=s.SYNC_INITIAL_DELAY_SECONDS,
                max_delay=s.SYNC_MAX_DELAY_SECONDS,
                growth_factor=s.SYNC_GROWTH_FACTOR,
                jitter=s.SYNC_JITTER
            ),
            session_deadline=s.SYNC_SESSION_DEADLINE_SECONDS,
            down_request_timeout=s.DOWN_SYNC_REQUEST_TIMEOUT_SECONDS,
            up_request_timeout=s.UP_SYNC_REQUEST_TIMEOUT_SECONDS,
            down_batch_size=s.DOWN_SYNC_BATCH_SIZE,
            residence_batch_size=s.DOWN_SYNC_RESIDENCE_BATCH_SIZE,
            down_batch_pause=s.DOWN_SYNC_BATCH_PAUSE_SECONDS,
            residence_pause=s.DOWN_SYNC_RESIDENCE_PAUSE_SECONDS,
            up_batch_size=s.UP_SYNC_BATCH_SIZE,
            up_batch_pause=s.UP_SYNC_BATCH_PAUSE_SECONDS,
            default_residence_id=s.DEFAULT_RESIDENCE_ID,
            default_client_id=s.DEFAULT_CLIENT_ID,
            default_reader_id=s.DEFAULT_READER_ID,
            purge_synced=s.PURGE_SYNCED_READINGS,
            weekday_labels=tuple(s.WEEKDAY_LABELS)
        )


settings = Settings()

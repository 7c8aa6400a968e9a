"""
Runtime settings, read from the environment once at startup.
"""
import os
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "video_rooms"

    livekit_url: str = "http://localhost:7880"
    livekit_api_key: str = "devkey"
    livekit_api_secret: str = "secret"
    room_prefix: str = "room"
    empty_timeout_seconds: int = Field(300, ge=0)
    token_ttl_hours: int = Field(6, ge=1)
    provider_timeout_seconds: float = Field(10.0, gt=0)

    live_session_limit: int = Field(500, ge=1)
    breakout_max_attempts: int = Field(10, ge=1)
    breakout_retry_backoff_seconds: float = Field(0.05, ge=0)
    allow_breakout_on_archived: bool = False
    reconcile_interval_seconds: float = Field(0, ge=0)
    orphan_grace_seconds: float = Field(300, ge=0)

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = Field(5000, ge=1, le=65535)

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "database_url": os.getenv("DATABASE_URL") or None,
            "database_name": os.getenv("DATABASE_NAME"),
            "livekit_url": os.getenv("LIVEKIT_URL"),
            "livekit_api_key": os.getenv("LIVEKIT_API_KEY"),
            "livekit_api_secret": os.getenv("LIVEKIT_API_SECRET"),
            "room_prefix": os.getenv("ROOM_PREFIX"),
            "empty_timeout_seconds": os.getenv("EMPTY_TIMEOUT_SECONDS"),
            "token_ttl_hours": os.getenv("TOKEN_TTL_HOURS"),
            "provider_timeout_seconds": os.getenv("PROVIDER_TIMEOUT_SECONDS"),
            "live_session_limit": os.getenv("LIVE_SESSION_LIMIT"),
            "breakout_max_attempts": os.getenv("BREAKOUT_MAX_ATTEMPTS"),
            "breakout_retry_backoff_seconds": os.getenv("BREAKOUT_RETRY_BACKOFF_SECONDS"),
            "reconcile_interval_seconds": os.getenv("RECONCILE_INTERVAL_SECONDS"),
            "orphan_grace_seconds": os.getenv("ORPHAN_GRACE_SECONDS"),
            "allow_breakout_on_archived": os.getenv("ALLOW_BREAKOUT_ON_ARCHIVED"),
            "log_level": os.getenv("LOG_LEVEL"),
            "port": os.getenv("PORT"),
        }
        if os.getenv("CORS_ORIGINS"):
            env["cors_origins"] = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
        # Unset variables fall back to the field defaults
        return cls(**{k: v for k, v in env.items() if v is not None})

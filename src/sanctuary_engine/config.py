from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    app_env: str = Field("dev", alias="APP_ENV")

    # Persistence / coordination
    database_url: str = Field("sqlite:///./sanctuary.db", alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    coordination_backend: str = Field("local", alias="COORDINATION_BACKEND")  # local|redis
    redis_lock_timeout_seconds: float = Field(10.0, alias="REDIS_LOCK_TIMEOUT_SECONDS")

    # Media transport
    media_token_secret: str = Field("change-me", alias="MEDIA_TOKEN_SECRET")
    media_token_ttl_seconds: int = Field(4 * 3600, alias="MEDIA_TOKEN_TTL_SECONDS")
    media_channel_prefix: str = Field("sanctuary", alias="MEDIA_CHANNEL_PREFIX")

    # Lifecycle
    lobby_open_minutes: int = Field(15, alias="LOBBY_OPEN_MINUTES")
    session_expiry_grace_minutes: int = Field(30, alias="SESSION_EXPIRY_GRACE_MINUTES")
    default_duration_minutes: int = Field(60, alias="DEFAULT_DURATION_MINUTES")
    default_max_participants: int = Field(50, alias="DEFAULT_MAX_PARTICIPANTS")
    max_session_participants: int = Field(200, alias="MAX_SESSION_PARTICIPANTS")

    # Breakout rooms
    breakout_min_participants: int = Field(2, alias="BREAKOUT_MIN_PARTICIPANTS")
    breakout_max_participants: int = Field(20, alias="BREAKOUT_MAX_PARTICIPANTS")

    # Ephemeral state
    reaction_ttl_seconds: float = Field(3.0, alias="REACTION_TTL_SECONDS")
    hand_raise_ttl_seconds: float = Field(600.0, alias="HAND_RAISE_TTL_SECONDS")
    telemetry_stale_seconds: float = Field(10.0, alias="TELEMETRY_STALE_SECONDS")
    telemetry_window: int = Field(5, alias="TELEMETRY_WINDOW")

    # Safety pipeline
    auto_escalation_enabled: bool = Field(True, alias="AUTO_ESCALATION_ENABLED")
    min_alert_confidence: float = Field(0.0, alias="MIN_ALERT_CONFIDENCE")
    classifier_url: str | None = Field(None, alias="CLASSIFIER_URL")
    classifier_timeout_seconds: float = Field(2.0, alias="CLASSIFIER_TIMEOUT_SECONDS")
    classifier_max_attempts: int = Field(3, alias="CLASSIFIER_MAX_ATTEMPTS")
    classifier_backoff_seconds: float = Field(0.5, alias="CLASSIFIER_BACKOFF_SECONDS")
    emergency_webhook_url: str | None = Field(None, alias="EMERGENCY_WEBHOOK_URL")
    emergency_timeout_seconds: float = Field(5.0, alias="EMERGENCY_TIMEOUT_SECONDS")
    emergency_max_attempts: int = Field(3, alias="EMERGENCY_MAX_ATTEMPTS")
    emergency_backoff_seconds: float = Field(1.0, alias="EMERGENCY_BACKOFF_SECONDS")
    emergency_resend_interval_seconds: float = Field(60.0, alias="EMERGENCY_RESEND_INTERVAL_SECONDS")
    required_crisis_steps: str = Field("ensure_safety,private_channel,contact_professional", alias="REQUIRED_CRISIS_STEPS")

    # Fan-out
    fanout_buffer_size: int = Field(256, alias="FANOUT_BUFFER_SIZE")

    # Idempotency
    idempotency_ttl_hours: int = Field(24, alias="IDEMPOTENCY_TTL_HOURS")

    # Beat intervals
    tick_interval_seconds: float = Field(15.0, alias="TICK_INTERVAL_SECONDS")
    sweep_interval_seconds: float = Field(1.0, alias="SWEEP_INTERVAL_SECONDS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [p.strip() for p in raw.split(",") if p.strip()]

import logging
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/clinic_outreach"
    DATABASE_URL_SYNC: str = "postgresql+psycopg2://postgres:postgres@db:5432/clinic_outreach"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Outbound messaging
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    SMS_MAX_RETRIES: int = 3

    # Placeholders available to recall message templates
    CLINIC_NAME: str = "our clinic"
    CLINIC_PHONE: str = ""

    # IANA zone the clinic schedules in; time-of-day, weekday and offer text use it
    CLINIC_TIMEZONE: str = "UTC"

    # Waitlist slot-fill
    WAITLIST_OFFER_TTL_HOURS: int = 24
    WAITLIST_MAX_MATCHES: int = 10
    WAITLIST_AUTO_FILL_MAX_NOTIFICATIONS: int = 3
    WAITLIST_STATS_WINDOW_DAYS: int = 90
    # Per-patient offer limits (0 disables a limit)
    WAITLIST_MAX_OFFERS_PER_HOUR: int = 1
    WAITLIST_MAX_OFFERS_PER_DAY: int = 3
    WAITLIST_OFFER_COOLDOWN_MINUTES: int = 60

    # Recall targeting / outreach
    RECALL_IDENTIFY_LIMIT: int = 1000
    RECALL_DEFAULT_DUE_DAYS: int = 7
    RECALL_OUTREACH_BATCH_LIMIT: int = 50

    # In-app expiry sweep (0 disables; run `python -m clinic_outreach.jobs expire` from cron instead)
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300

    # Database connection pool (tune per environment via env vars)
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    # Reject wildcard CORS in production
    if settings.APP_ENV == "production":
        origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
        if "*" in origins:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS contains '*' which is not allowed in production. "
                "Set explicit allowed origins, e.g. CORS_ORIGINS=https://app.example.com"
            )

        if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
            logger.warning(
                "TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN not set. "
                "Waitlist offers and recall SMS will be recorded as failed deliveries."
            )

    if settings.WAITLIST_OFFER_TTL_HOURS <= 0:
        raise RuntimeError("WAITLIST_OFFER_TTL_HOURS must be a positive number of hours")

    try:
        ZoneInfo(settings.CLINIC_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        raise RuntimeError(f"CLINIC_TIMEZONE {settings.CLINIC_TIMEZONE!r} is not a known IANA time zone")

    return settings


def clear_settings_cache() -> None:
    """Clear the cached Settings so the next call to ``get_settings()``
    re-reads environment variables.
    """
    get_settings.cache_clear()

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./studio_booking.db"
    DATABASE_ECHO: bool = False
    AUTO_CREATE_TABLES: bool = True
    LOG_LEVEL: str = "INFO"

    # Extraction (language model)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Studio calendar
    BUSINESS_TIMEZONE: str = "Africa/Nairobi"
    OPENING_HOUR: int = 9
    CLOSING_HOUR: int = 17
    SLOT_GRANULARITY_MINUTES: int = 30
    DEFAULT_DURATION_MINUTES: int = 60
    MAX_SUGGESTIONS: int = 10
    LOOKAHEAD_DAYS: int = 7
    LOOKAHEAD_MAX_DAYS_WITH_SLOTS: int = 3
    LOOKAHEAD_SLOTS_PER_DAY: int = 5
    POLICY_WINDOW_HOURS: int = 72

    # M-Pesa Daraja
    MPESA_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = "174379"
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = "https://example.com/api/v1/payments/mpesa/callback"
    MPESA_TIMEOUT_SECONDS: float = 30.0

    # Payment reconciliation
    RECEIPT_ATTEMPT_LIMIT: int = 5
    RECEIPT_ATTEMPT_WINDOW_MINUTES: int = 5
    RECEIPT_MAX_AGE_HOURS: int = 24
    PAYMENT_POLL_ATTEMPTS: int = 6
    PAYMENT_POLL_INTERVAL_SECONDS: float = 10.0
    # A pending row with no checkout id younger than this is a push in progress
    PAYMENT_PUSH_CLAIM_SECONDS: float = 60.0

    # Draft garbage collection
    STALE_FAILED_GRACE_MINUTES: int = 60
    STALE_UNPAID_HOURS: int = 48
    STALE_HARD_CEILING_DAYS: int = 7
    STALE_SWEEP_INTERVAL_SECONDS: float = 900.0

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Slotrent API"
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = "changeme"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 8
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "12345"
    POSTGRES_DB: str = "slotrent_db"
    POSTGRES_PORT: int = 5432
    DATABASE_URL: str = ""

    # Payment gateway
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    PLATFORM_CURRENCY: str = "gbp"

    # Marketplace rules (defaults; platform_settings row overrides the first three)
    DEFAULT_COMMISSION_RATE: int = 20
    CANCELLATION_WINDOW_HOURS: int = 24
    MAX_ADVANCE_BOOKING_DAYS: int = 30
    MIN_OPERATING_MINUTES: int = 4 * 60
    MAX_RESCHEDULES: int = 3
    PENDING_PAYMENT_MINUTES: int = 15
    SLOT_DISPLAY_BUFFER_MINUTES: int = 5
    FAILED_PAYOUT_RETRY_HOURS: int = 24
    RECURRING_CONFLICT_HORIZON_DAYS: int = 60

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    COMPLETION_SWEEP_MINUTES: int = 30
    HOLD_EXPIRY_MINUTES: int = 5
    SETTLEMENT_SWEEP_MINUTES: int = 60
    EVENT_DISPATCH_SECONDS: int = 30
    RECONCILIATION_HOUR: int = 9

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    def assemble_db_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"


settings = Settings()
settings.DATABASE_URL = settings.assemble_db_url()

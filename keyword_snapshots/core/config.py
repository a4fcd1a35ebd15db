from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Keyword Snapshots"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"
    LOG_LEVEL: str = "INFO"

    # Database (PostgreSQL in production, SQLite file for local dev)
    DATABASE_URL: str = "sqlite:///./keyword_snapshots.db"

    # Admin endpoints (queue stats, manual worker trigger)
    ADMIN_SECRET: str = ""

    # Error tracking
    SENTRY_DSN: str = ""

    # Run the APScheduler jobs inside the API process
    RUN_SCHEDULER: bool = False

    # Enrichment provider (Rainforest-style search API)
    RAINFOREST_API_KEY: str = ""
    RAINFOREST_BASE_URL: str = "https://api.rainforestapi.com"
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_LISTINGS: int = 49  # Page-one organic results

    # Background worker
    WORKER_BATCH_SIZE: int = 10  # Entries claimed per cycle
    WORKER_CONCURRENCY: int = 3  # Parallel provider calls per cycle
    WORKER_MAX_ATTEMPTS: int = 3  # Provider attempts per entry per cycle
    WORKER_BACKOFF_BASE_SECONDS: float = 2.0
    WORKER_BACKOFF_MAX_SECONDS: float = 30.0
    WORKER_IDLE_SLEEP_SECONDS: float = 60.0  # Sleep when a cycle claims nothing
    WORKER_ERROR_BACKOFF_SECONDS: float = 120.0  # Sleep after the store was unreachable
    WORKER_INTERVAL_MINUTES: int = 2  # Scheduler-driven cycle interval
    QUEUE_CLAIM_TIMEOUT_MINUTES: int = 30  # Processing entries older than this are reclaimed
    MAX_KEYWORDS_PER_DAY: int = 200  # Provider budget (completed refreshes per UTC day)

    # Manual refresh quota
    MAX_MANUAL_REFRESHES_PER_DAY: int = 10

    DEFAULT_MARKETPLACE: str = "amazon.com"

    # Housekeeping
    QUEUE_RETENTION_DAYS: int = 7
    STALE_SWEEP_LIMIT: int = 50

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()

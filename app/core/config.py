from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "postgresql://moodpulse:moodpulse@db:5432/moodpulse"
    # Durable cache (rate limits, streaks, trending) and time-series store.
    # Empty means "same database as DATABASE_URL".
    CACHE_DATABASE_URL: str = ""
    TIMESERIES_DATABASE_URL: str = ""

    APP_ENV: str = "development"
    SECRET_KEY: str = "changeme-secret-key"
    LOG_LEVEL: str = "INFO"
    AUTO_CREATE_TABLES: bool = False

    # Comma-separated allowed origins, or "*" to allow all.
    CORS_ORIGINS: str = "*"

    # --- Rate limiting ---
    RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60 * 24
    RATE_LIMIT_FALLBACK_CAPACITY: int = 10_000

    # --- Check-in validation ---
    NOTE_MAX_LENGTH: int = 280
    DEFAULT_INTENSITY: int = 3
    TIMESTAMP_MAX_FUTURE_SECONDS: int = 5 * 60
    TIMESTAMP_MAX_AGE_DAYS: int = 7

    # --- Streak & history ---
    STREAK_TIMEZONE: str = "UTC"
    STREAK_TTL_DAYS: int = 90
    HISTORY_MAX_ITEMS: int = 100
    STREAK_MAX_LOOKBACK_DAYS: int = 365

    # --- Trending ---
    TRENDING_TTL_SECONDS: int = 60 * 60 * 24
    HOURLY_TRENDING_TTL_SECONDS: int = 60 * 60 * 6
    TRENDING_DECAY_HOURS: float = 6.0
    TRENDING_MIN_NOTE_LENGTH: int = 5
    TRENDING_INCLUDE_PHRASES: bool = False
    TRENDING_MAX_LIMIT: int = 100

    # --- Timeouts / fan-out ---
    DB_TIMEOUT_SECONDS: float = 3.0
    CACHE_TIMEOUT_SECONDS: float = 0.5
    FANOUT_TIMEOUT_SECONDS: float = 2.0
    STREAK_RESPONSE_WAIT_SECONDS: float = 0.5
    FANOUT_WORKERS: int = 8
    # Calls allowed in flight per breaker; each breaker has its own workers.
    DB_MAX_CONCURRENT: int = 32
    CACHE_MAX_CONCURRENT: int = 32
    FANOUT_MAX_CONCURRENT: int = 4
    RETRY_AFTER_SECONDS: int = 30

    # --- Event bus ---
    # "local" keeps events in a bounded in-process queue; "kafka" publishes
    # to KAFKA_TOPIC on KAFKA_BOOTSTRAP_SERVERS.
    EVENT_BUS_BACKEND: str = "local"
    KAFKA_BOOTSTRAP_SERVERS: str = "localhost:9092"
    KAFKA_TOPIC: str = "check-ins"
    EVENT_QUEUE_MAXSIZE: int = 10_000

    # --- Region ---
    REGION_PREFERENCE_TTL_DAYS: int = 365

    @property
    def cors_origins_list(self) -> list[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def cache_database_url(self) -> str:
        return self.CACHE_DATABASE_URL or self.DATABASE_URL

    @property
    def timeseries_database_url(self) -> str:
        return self.TIMESERIES_DATABASE_URL or self.DATABASE_URL


settings = Settings()

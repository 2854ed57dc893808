from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        enable_decoding=False,
    )

    ENV: str = "dev"
    DATABASE_URL: str
    REDIS_URL: str
    DB_STATEMENT_TIMEOUT_SECONDS: float = 30.0

    POLYMARKET_GAMMA_URL: str = "https://gamma-api.polymarket.com"
    POLYMARKET_CLOB_URL: str = "https://clob.polymarket.com"
    POLYMARKET_WS_URL: str = "wss://ws-live-data.polymarket.com"
    POLY_HTTP_TIMEOUT_SECONDS: float = 15.0
    POLY_CIRCUIT_MAX_FAILURES: int = 5
    POLY_CIRCUIT_RESET_SECONDS: int = 60
    EXTERNAL_MAX_CONCURRENT_POLY_CALLS: int | None = 4
    RESOLUTION_LISTING_LIMIT: int = 100

    WS_PING_INTERVAL_SECONDS: float = 20.0
    WS_RECONNECT_BASE_SECONDS: float = 1.0
    WS_RECONNECT_MAX_SECONDS: float = 30.0
    WS_RECONNECT_MAX_ATTEMPTS: int = 10
    TICK_QUEUE_MAX_SIZE: int = 10000

    SPIKE_MAX_DEVIATION: float = 0.25
    SPIKE_SUSTAIN_TOLERANCE: float = 0.05
    SPIKE_SUSTAIN_COUNT: int = 3
    MAX_ALLOWED_SPREAD: float = 0.30
    DEFAULT_LIQUIDITY_PARAMETER: float = 20000.0
    ODDS_HISTORY_BUCKET_SECONDS: int = 1800

    BACKFILL_MAX_ATTEMPTS: int = 3
    BACKFILL_FIDELITY_MINUTES: int = 30
    BACKFILL_DEFAULT_LOOKBACK_DAYS: int = 365
    BACKFILL_BUSY_DELAY_SECONDS: float = 0.1
    BACKFILL_IDLE_DELAY_SECONDS: float = 5.0

    SETTLEMENT_FEE_RATE: str = "0.02"
    SETTLEMENT_TOKEN_SYMBOL: str = "TUSD"
    RESOLUTION_WIN_THRESHOLD: float = 0.95
    HEDGE_STALE_SECONDS: int = 120
    HEDGE_RECONCILE_BATCH_SIZE: int = 50

    MAPPING_REFRESH_SECONDS: int = 300
    RECONCILE_INTERVAL_SECONDS: int = 300
    RESOLUTION_INTERVAL_SECONDS: int = 600
    HEDGE_RECONCILE_INTERVAL_SECONDS: int = 60
    HISTORY_SYNC_INTERVAL_SECONDS: int = 1800
    HISTORY_SYNC_PACING_SECONDS: float = 0.05
    HEARTBEAT_INTERVAL_SECONDS: int = 30
    HEARTBEAT_TTL_SECONDS: int = 90

    DRY_RUN: bool = False
    BROADCAST_ENABLED: bool = True
    BACKFILL_ENABLED: bool = True
    HEDGE_RECONCILE_ENABLED: bool = True
    HISTORY_SYNC_ENABLED: bool = True
    BROADCAST_CHANNEL: str = "sports-odds"
    EVENT_CHANNEL_PREFIX: str = "event-updates"
    LIQUIDITY_CACHE_TTL_SECONDS: int = 30

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator("EXTERNAL_MAX_CONCURRENT_POLY_CALLS", mode="before")
    @classmethod
    def _none_str_to_none(cls, value):
        if value is None:
            return None
        if isinstance(value, str) and value.strip().lower() in {"", "none", "null"}:
            return None
        return value

    @field_validator("POLYMARKET_GAMMA_URL", "POLYMARKET_CLOB_URL", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

settings = Settings()

import pathlib

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DBSettings(BaseModel):
    sqlite_path: str = "bookcache.sqlite"
    """Relative path to the sqlite database given the config directory. If absolute, it ignores the config dir location."""
    use_postgres: bool = False
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "shelfscan"
    postgres_user: str = "shelfscan"
    postgres_password: str = "password"
    postgres_ssl_mode: str = "prefer"

    pool_size: int = 10
    """SQLAlchemy connection pool size (number of connections to maintain in pool)"""
    max_overflow: int = 20
    """Maximum number of overflow connections beyond pool_size"""
    pool_timeout: int = 30
    """Timeout (seconds) to wait for a connection from the pool"""
    pool_pre_ping: bool = True
    """Enable ping to detect stale connections before using them"""


class ApplicationSettings(BaseModel):
    debug: bool = False
    config_dir: str = "/config"
    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR)"""
    log_format: str = "text"
    """Log format: 'text' for human-readable, 'json' for machine-readable"""
    log_file: str | None = None
    """Optional log file path (relative to config_dir/logs/). If not set, logs to stdout only"""

    google_books_api_key: str = ""
    """Optional Google Books API key (works without key but has lower quotas)"""

    openai_api_key: str = ""
    """OpenAI API key. Ratings and summaries fall back to local sources when empty"""
    openai_model: str = "gpt-4o"
    openai_timeout: float = 15.0
    openai_max_retries: int = 2

    http_timeout: float = 10.0
    """Total timeout (seconds) for a single catalog request"""
    search_max_results: int = 5

    fuzzy_match_min_length: int = 0
    """Minimum normalized title length before partial (substring) cache matches are tried. 0 disables the check"""

    max_concurrent_enrichments: int = 8
    """Upper bound on candidates enriched at the same time within one batch"""


class CacheTTLSettings(BaseModel):
    catalog_primary_days: int = 365
    catalog_fallback_days: int = 7
    generative_days: int = 120
    user_saved_days: int = 365

    generative_rating_days: int = 90
    """Lifetime of a freshly generated rating"""
    generative_summary_days: int = 120
    """Lifetime of a freshly generated summary"""

    reset_expiry_offset_seconds: int = 60
    """How far in the past reset_for_testing pushes expires_at"""


class RateLimitBudget(BaseModel):
    max_calls: int
    window_seconds: float


def _default_rate_limits() -> dict[str, RateLimitBudget]:
    return {
        "google-books": RateLimitBudget(max_calls=1000, window_seconds=86400),
        "open-library": RateLimitBudget(max_calls=100, window_seconds=60),
        "openai": RateLimitBudget(max_calls=500, window_seconds=86400),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        env_prefix="SHELFSCAN_",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_file=(".env.local", ".env"),
        extra="ignore",
    )

    db: DBSettings = DBSettings()
    app: ApplicationSettings = ApplicationSettings()
    cache: CacheTTLSettings = CacheTTLSettings()
    rate_limits: dict[str, RateLimitBudget] = Field(default_factory=_default_rate_limits)

    def get_sqlite_path(self):
        if self.db.sqlite_path.startswith("/"):
            return self.db.sqlite_path
        return str(pathlib.Path(self.app.config_dir) / self.db.sqlite_path)

from dataclasses import dataclass
import os

DEFAULT_CRAWLER_BASE_URL = "https://missav.ai"
DEFAULT_ACCEPT_LANGUAGE = "ja-JP,ja;q=0.9,en-US;q=0.8,en;q=0.7"


class ConfigurationError(ValueError):
    pass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "reelwatch")
    server_port: int = _env_int("SERVER_PORT", 8080)
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://reelwatch:reelwatch@db:5432/reelwatch",
    )
    database_pool_mode: str = _env_str("DATABASE_POOL_MODE", "auto")
    database_pool_size: int = _env_int("DATABASE_POOL_SIZE", 5)
    database_pool_max_overflow: int = _env_int("DATABASE_POOL_MAX_OVERFLOW", 10)
    database_pool_timeout_seconds: int = _env_int("DATABASE_POOL_TIMEOUT_SECONDS", 30)
    log_level: str = _env_str("LOG_LEVEL", "INFO")
    log_format: str = _env_str("LOG_FORMAT", "console")
    log_requests: bool = _env_bool("LOG_REQUESTS", True)
    log_uvicorn_access: bool = _env_bool("LOG_UVICORN_ACCESS", False)
    log_request_skip_paths: str = _env_str("LOG_REQUEST_SKIP_PATHS", "/healthz")
    log_redact_fields: str = os.getenv("LOG_REDACT_FIELDS", "")
    bot_enabled: bool = _env_bool("BOT_ENABLED", True)
    bot_token: str = os.getenv("BOT_TOKEN", "").strip()
    bot_username: str = os.getenv("BOT_USERNAME", "").strip()
    crawler_enabled: bool = _env_bool("CRAWLER_ENABLED", True)
    crawler_base_url: str = _env_str("CRAWLER_BASE_URL", DEFAULT_CRAWLER_BASE_URL)
    crawler_interval_seconds: int = _env_int("CRAWLER_INTERVAL_SECONDS", 900)
    crawler_initial_delay_seconds: float = _env_float("CRAWLER_INITIAL_DELAY_SECONDS", 5.0)
    crawler_initial_pages: int = _env_int("CRAWLER_INITIAL_PAGES", 2)
    crawler_rate_limit: float = _env_float("CRAWLER_RATE_LIMIT", 0.5)
    crawler_timeout_seconds: float = _env_float("CRAWLER_TIMEOUT_SECONDS", 30.0)
    crawler_max_retries: int = _env_int("CRAWLER_MAX_RETRIES", 3)
    crawler_retry_backoff_seconds: float = _env_float("CRAWLER_RETRY_BACKOFF_SECONDS", 1.0)
    crawler_page_pacing_seconds: float = _env_float("CRAWLER_PAGE_PACING_SECONDS", 2.0)
    crawler_jitter_min_seconds: float = _env_float("CRAWLER_JITTER_MIN_SECONDS", 1.0)
    crawler_jitter_max_seconds: float = _env_float("CRAWLER_JITTER_MAX_SECONDS", 3.0)
    crawler_user_agent: str = os.getenv("CRAWLER_USER_AGENT", "").strip()
    crawler_rotate_user_agent: bool = _env_bool("CRAWLER_ROTATE_USER_AGENT", False)
    crawler_accept_language: str = _env_str("CRAWLER_ACCEPT_LANGUAGE", DEFAULT_ACCEPT_LANGUAGE)
    crawler_proxy_url: str = os.getenv("CRAWLER_PROXY_URL", "").strip()
    crawler_warmup_requests: int = _env_int("CRAWLER_WARMUP_REQUESTS", 3)
    crawler_warmup_interval_seconds: float = _env_float("CRAWLER_WARMUP_INTERVAL_SECONDS", 1.0)
    crawler_warmup_ttl_seconds: float = _env_float("CRAWLER_WARMUP_TTL_SECONDS", 600.0)
    rendering_enabled: bool = _env_bool("RENDERING_ENABLED", True)
    rendering_headless: bool = _env_bool("RENDERING_HEADLESS", True)
    rendering_timeout_seconds: float = _env_float("RENDERING_TIMEOUT_SECONDS", 60.0)
    rendering_challenge_settle_seconds: float = _env_float("RENDERING_CHALLENGE_SETTLE_SECONDS", 5.0)
    rendering_selector_timeout_seconds: float = _env_float("RENDERING_SELECTOR_TIMEOUT_SECONDS", 20.0)
    rendering_content_settle_seconds: float = _env_float("RENDERING_CONTENT_SETTLE_SECONDS", 3.0)
    delivery_rate_limit: float = _env_float("DELIVERY_RATE_LIMIT", 30.0)
    delivery_same_chat_delay_seconds: float = _env_float("DELIVERY_SAME_CHAT_DELAY_SECONDS", 1.0)
    search_result_limit: int = _env_int("SEARCH_RESULT_LIMIT", 10)
    latest_page_size: int = _env_int("LATEST_PAGE_SIZE", 5)
    manual_harvest_limit: int = _env_int("MANUAL_HARVEST_LIMIT", 20)


def validate_settings(value: Settings) -> None:
    if value.bot_enabled and not value.bot_token:
        raise ConfigurationError("BOT_TOKEN is required when BOT_ENABLED is true.")
    if value.crawler_rate_limit <= 0:
        raise ConfigurationError("CRAWLER_RATE_LIMIT must be positive.")
    if value.delivery_rate_limit <= 0:
        raise ConfigurationError("DELIVERY_RATE_LIMIT must be positive.")
    if not 0 < value.server_port < 65536:
        raise ConfigurationError("SERVER_PORT must be between 1 and 65535.")
    if value.crawler_jitter_max_seconds < value.crawler_jitter_min_seconds:
        raise ConfigurationError("CRAWLER_JITTER_MAX_SECONDS must not be below the minimum.")


settings = Settings()

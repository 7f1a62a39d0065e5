from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Upstream (OpenRouter)
    openrouter_api_key: str = ""
    openrouter_url: str = "https://openrouter.ai/api/v1/chat/completions"
    upstream_referer: str = "https://signal-app.com"
    upstream_title: str = "Signal Analogy Engine"
    upstream_timeout_seconds: float = 60.0

    # Redis: durable daily quota store; empty = in-memory counters
    redis_url: str = ""
    redis_timeout_seconds: float = 0.5  # connect and read timeout for quota calls

    # Burst protection (per caller, fixed window)
    burst_window_seconds: float = 60.0
    burst_max_requests: int = 10

    # Free tier
    free_tier_daily_limit: int = 5
    free_tier_default_model: str = "google/gemini-2.5-flash-lite"
    # comma-separated, in fallback order
    free_tier_models: str = (
        "google/gemini-2.5-flash-lite,"
        "google/gemini-2.0-flash-lite-001,"
        "meta-llama/llama-4-scout,"
        "meta-llama/llama-4-scout:free,"
        "openrouter/free"
    )
    no_json_mode_models: str = "openrouter/free"

    # Circuit breaker
    breaker_failure_threshold: int = 3
    breaker_cooldown_seconds: float = 30.0

    # Retry / backoff
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0
    retry_jitter: float = 0.2
    retryable_statuses: str = "429,500,502,503,504"

    # Enrichment (web search plugin)
    enrichment_max_results: int = 5

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def free_tier_model_list(self) -> list[str]:
        return _split_csv(self.free_tier_models)

    @property
    def no_json_mode_model_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.no_json_mode_models))

    @property
    def retryable_status_set(self) -> frozenset[int]:
        return frozenset(int(s) for s in _split_csv(self.retryable_statuses))

    @property
    def origin_list(self) -> list[str]:
        return _split_csv(self.allowed_origins)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.burst_max_requests < 1:
        errors.append("BURST_MAX_REQUESTS must be at least 1")
    if settings.breaker_failure_threshold < 1:
        errors.append("BREAKER_FAILURE_THRESHOLD must be at least 1")
    if settings.retry_max_attempts < 1:
        errors.append("RETRY_MAX_ATTEMPTS must be at least 1")
    if not settings.free_tier_model_list:
        errors.append("FREE_TIER_MODELS must list at least one model")
    elif settings.free_tier_default_model not in settings.free_tier_model_list:
        errors.append("FREE_TIER_DEFAULT_MODEL must be one of FREE_TIER_MODELS")

    if settings.app_env == "production":
        if not settings.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY must be set in production")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))

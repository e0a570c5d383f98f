from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_env: str = "dev"
    app_name: str = "Finance Jobs"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    database_url: str = "postgresql+psycopg://app:app@db:5432/app"
    redis_url: str = "redis://redis:6379/0"

    # Worker pool
    default_concurrency: int = 5
    queue_concurrency: dict[str, int] = {}  # e.g. {"calculations": 2, "email": 10}
    worker_poll_interval_seconds: float = 1.0
    worker_max_poll_backoff_seconds: float = 30.0
    run_embedded_workers: bool = False  # Run the pool inside the API process
    calculation_isolation: str = "process"  # process or thread

    # Retry / timeout defaults (overridable per queue and per job)
    default_max_attempts: int = 3
    default_backoff_delay_ms: int = 5000
    backoff_max_delay_ms: int = 300_000
    handler_timeout_seconds: float = 60.0
    queue_timeouts: dict[str, float] = {}  # Per-queue handler timeout overrides
    reclaim_grace_seconds: float = 30.0

    # Supervisor / retention
    reclaim_interval_seconds: float = 15.0
    cleanup_interval_seconds: float = 3600.0
    completed_job_retention_hours: int = 24
    dead_letter_retention_days: int = 7
    delivery_log_retention_days: int = 30

    # Email configuration
    smtp_host: str = ""  # Empty selects simulated delivery
    smtp_port: int = 1025
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "notifications@finance-app.com"
    smtp_from_name: str = "Finance App"
    smtp_timeout_seconds: float = 10.0

    # SMS configuration (Twilio)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_api_base_url: str = "https://api.twilio.com"
    sms_default_region: str = "US"

    # Push gateway configuration
    push_gateway_url: str = ""
    push_gateway_key: str = ""
    provider_timeout_seconds: float = 10.0

    # In-app delivery
    websocket_redis_bridge: bool = False
    websocket_channel: str = "finjobs:websocket"

    # Generated documents
    pdf_output_dir: str = "/tmp/finjobs/pdfs"

    # Middleware configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_format: str = "json"  # json or text
    enable_request_logging: bool = True
    cors_origins: str = ""  # Comma-separated list of allowed origins
    enable_gzip: bool = True

    # Metrics configuration (OpenTelemetry)
    enable_metrics: bool = True
    metrics_namespace: str = ""  # OpenTelemetry meter name (defaults to app_name)
    otel_service_name: str = ""  # OpenTelemetry service name (defaults to app_name)
    otel_exporter_otlp_endpoint: str = ""  # OTLP endpoint (e.g., http://localhost:4318)

    # Rate limiting configuration
    enable_rate_limiting: bool = False
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests_per_ip: int = 100
    rate_limit_max_requests_per_user: int = 1000

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
    }

    def concurrency_for(self, queue_name: str) -> int:
        """Return the configured slot count for a queue."""
        return self.queue_concurrency.get(queue_name, self.default_concurrency)


settings = Settings()

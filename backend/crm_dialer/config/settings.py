# /crm_dialer/config/settings.py

import sys
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Deployment
    environment: str = "development"
    log_level: str = "INFO"
    service_name: str = "crm-dialer-bridge"

    # Redis (pub/sub transport between services)
    redis_url: str = "redis://localhost:6379"
    event_subject_pattern: str = "events.leads.*"
    subscriber_workers: int = 4
    subscriber_buffer_size: int = 1000

    # MongoDB (flow definitions)
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_database: str = "crm_dialer"
    flows_collection: str = "integration_flows"

    # CRM (amoCRM API v4)
    crm_domain: str | None = None
    crm_access_token: str | None = None

    # Dialer
    dialer_api_url: str | None = None
    dialer_api_key: str | None = None

    http_timeout_seconds: float = 15.0

    # Dispatch limits enforced towards the external platforms
    requests_per_second: int = 7
    max_entities_per_batch: int = 200
    dispatch_queue_capacity: int = 1000
    dispatch_max_concurrency: int | None = None

    # Lead update coalescing
    coalesce_window_seconds: float = 5.0
    coalesce_flush_threshold: int = 100

    shutdown_timeout_seconds: float = 30.0

    # ---------------- Validators ---------------- #

    @field_validator(
        "requests_per_second",
        "max_entities_per_batch",
        "dispatch_queue_capacity",
        "coalesce_flush_threshold",
        "subscriber_workers",
        "subscriber_buffer_size",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("coalesce_window_seconds", "http_timeout_seconds", "shutdown_timeout_seconds")
    @classmethod
    def duration_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("duration must be greater than zero")
        return v

    @field_validator("crm_domain", mode="before")
    @classmethod
    def strip_crm_domain(cls, v):
        """Accept both 'company.amocrm.ru' and 'https://company.amocrm.ru/'."""
        if isinstance(v, str):
            v = v.strip().rstrip("/")
            for prefix in ("https://", "http://"):
                if v.startswith(prefix):
                    v = v[len(prefix):]
            return v or None
        return v

    @property
    def crm_base_url(self) -> str | None:
        return f"https://{self.crm_domain}" if self.crm_domain else None

    @property
    def effective_max_concurrency(self) -> int:
        return self.dispatch_max_concurrency or self.requests_per_second

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            for var in ["crm_domain", "crm_access_token", "dialer_api_url", "dialer_api_key"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)

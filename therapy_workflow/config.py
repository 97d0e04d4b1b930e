from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="THERAPY_WORKFLOW_", env_file=".env", extra="ignore"
    )

    app_name: str = "Therapy Assignment Workflow"
    version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8000

    # Admin side
    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 15.0
    mutation_timeout_seconds: float = 10.0
    # "global": one tier update in flight across the whole list, keyed by a
    # wildcard id in the in-flight registry; "entity": one per enquiry
    tier_update_guard: Literal["entity", "global"] = "global"

    # Backend
    notification_max_attempts: int = 3
    notification_retry_delay_seconds: float = 2.0
    recommendation_limit: int = 5

    log_level: str = "INFO"
    log_json: bool = False


settings = Settings()

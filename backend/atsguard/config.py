from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "ATS Guardrail API"
    app_env: str = "development"
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"
    auth_enabled: bool = False
    cognito_region: str = ""
    cognito_user_pool_id: str = ""
    cognito_app_client_id: str = ""
    cognito_issuer: str = ""

    aws_region: str = "us-east-1"
    # Region-agnostic foundation model IDs. Some accounts need an inference profile ID instead
    # (e.g. `us.amazon.nova-pro-v1:0`).
    bedrock_model_id: str = "amazon.nova-pro-v1:0"
    bedrock_lite_model_id: str = "amazon.nova-lite-v1:0"
    bedrock_validate_model_ids_on_startup: bool = False
    agent_temperature: float = 0.2
    drafting_max_tokens: int = 2400
    checklist_max_tokens: int = 800
    drafting_timeout_seconds: float = 60.0

    require_lesson_learned_on_incidents: bool = True
    checklist_enrichment_enabled: bool = True
    fallback_on_drafting_failure: bool = False
    min_hazards: int = Field(default=3, ge=1, le=6)
    min_steps: int = Field(default=4, ge=1, le=5)
    max_hazards: int = Field(default=12, ge=6, le=40)
    max_recommendations: int = Field(default=10, ge=0, le=25)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@dataclass(frozen=True)
class EngineConfig:
    """Switches the reconciliation engine reads. Built once per app from Settings."""

    require_lesson_learned_on_incidents: bool = True
    checklist_enrichment_enabled: bool = True
    fallback_on_drafting_failure: bool = False
    min_hazards: int = 3
    min_steps: int = 4
    max_hazards: int = 12
    max_recommendations: int = 10


def build_engine_config(source: Settings) -> EngineConfig:
    return EngineConfig(
        require_lesson_learned_on_incidents=source.require_lesson_learned_on_incidents,
        checklist_enrichment_enabled=source.checklist_enrichment_enabled,
        fallback_on_drafting_failure=source.fallback_on_drafting_failure,
        min_hazards=source.min_hazards,
        min_steps=source.min_steps,
        max_hazards=max(source.max_hazards, source.min_hazards),
        max_recommendations=source.max_recommendations,
    )


settings = Settings()

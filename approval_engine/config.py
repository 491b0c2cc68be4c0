from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_roles(raw: str) -> list[str]:
    return [r.strip() for r in raw.split(",") if r.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )

    APP_NAME: str = "approval-engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Async URL (postgresql+asyncpg://...), shared with the alembic environment
    DATABASE_URL: str = ""
    DB_POOL_SIZE: int = Field(default=5, ge=1)
    DB_MAX_OVERFLOW: int = Field(default=5, ge=0)
    DB_POOL_RECYCLE: int = 300

    ESCALATION_SCAN_ENABLED: bool = True
    ESCALATION_SCAN_INTERVAL_SECONDS: int = Field(default=900, ge=1)

    # Extra read-validate-write cycles after a version conflict
    MAX_CONFLICT_RETRIES: int = Field(default=3, ge=0)

    # Role sets behind the MANAGER / ORGANIZATION_HEAD approver types
    MANAGER_ROLES: str = "MANAGER,ADMIN,SUPER_ADMIN"
    ORGANIZATION_HEAD_ROLES: str = "ADMIN,SUPER_ADMIN"

    INTERNAL_JOB_SECRET: Optional[str] = None  # Required outside DEBUG for /internal/jobs/*

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @property
    def manager_roles_list(self) -> list[str]:
        return _split_roles(self.MANAGER_ROLES)

    @property
    def organization_head_roles_list(self) -> list[str]:
        return _split_roles(self.ORGANIZATION_HEAD_ROLES)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

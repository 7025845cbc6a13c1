# SPDX-License-Identifier: Apache-2.0
"""All configuration via environment variables (12-factor). No hardcoded values."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./studyhub.db", description="Database URL")

    # Security: required in production; set in .env
    secret_key: str = Field(default="dev-secret-key-change-in-production", min_length=16)

    # CORS
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Level for the studyhub logger")

    # Data versions
    data_version_pattern: str = Field(
        default=r"^\d{1,3}(\.\d{1,2}){0,2}$",
        description="Accepted shape of data version names",
    )

    # Projects
    pseudonym_prefix_length: int = Field(default=2, ge=1, le=32)

    @property
    def production(self) -> bool:
        return self.secret_key != "dev-secret-key-change-in-production"


settings = Settings()

DATABASE_URL = settings.database_url
DATA_VERSION_PATTERN = settings.data_version_pattern
PSEUDONYM_PREFIX_LENGTH = settings.pseudonym_prefix_length
ALL_ACCESS_PATTERN = ".*"

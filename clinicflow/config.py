# clinicflow/config.py - Configuration management
from dotenv import load_dotenv

load_dotenv()
from pathlib import Path
from typing import Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

DEFAULT_ARTIFACT_MIME_TYPES = ["image/jpeg", "image/png", "image/gif", "application/pdf"]


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "Clinic Operations Core"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./clinicflow.db", alias="DATABASE_URL")

    # Artifact storage
    uploads_dir: str = Field(default="uploads", alias="UPLOADS_DIR")
    artifact_url_prefix: str = Field(default="/uploads/prescriptions", alias="ARTIFACT_URL_PREFIX")
    max_artifact_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_ARTIFACT_BYTES")
    allowed_artifact_mime_types: Union[str, list[str]] = Field(
        default=DEFAULT_ARTIFACT_MIME_TYPES, alias="ALLOWED_ARTIFACT_MIME_TYPES"
    )

    # PDF rendering
    pdf_render_timeout_seconds: float = Field(default=30.0, alias="PDF_RENDER_TIMEOUT_SECONDS")
    clinic_name: str = Field(default="City Care Clinic", alias="CLINIC_NAME")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=True, alias="JSON_LOGS")

    # --- Pydantic V2 Validators ---
    @field_validator("allowed_artifact_mime_types", mode="before")
    @classmethod
    def parse_mime_types(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return list(DEFAULT_ARTIFACT_MIME_TYPES)
            return [mime.strip().lower() for mime in v.split(",") if mime.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("pdf_render_timeout_seconds")
    @classmethod
    def validate_render_timeout(cls, v):
        if v <= 0:
            raise ValueError("PDF_RENDER_TIMEOUT_SECONDS must be positive")
        return v

    @field_validator("max_artifact_bytes")
    @classmethod
    def validate_max_artifact_bytes(cls, v):
        if v <= 0:
            raise ValueError("MAX_ARTIFACT_BYTES must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def artifact_root(self) -> Path:
        return Path(self.uploads_dir) / "prescriptions"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Environment-specific configurations
class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = True
    environment: str = "development"
    json_logs: bool = False


class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = False
    environment: str = "production"


class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite:///./test.db"
    json_logs: bool = False


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()

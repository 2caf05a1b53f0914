"""
Ops Desk - Configuration
========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Ops Desk"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./opsdesk.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Authentication
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 12

    # ==========================================================================
    # Agent Webhooks
    # ==========================================================================
    AGENT_WEBHOOK_SECRET: str | None = None  # X-Webhook-Secret, checked when set
    AGENT_TRIGGER_TIMEOUT_SECONDS: float = 10.0

    # ==========================================================================
    # Approval Policy
    # ==========================================================================
    POLICY_REPEATED_REJECTION_THRESHOLD: int = 2
    POLICY_RATIONALE_REQUIRED_CHECKPOINTS: list[str] = ["proposal_review"]
    POLICY_LEGAL_BRAND_KEYWORDS: list[str] = [
        "trademark",
        "copyright",
        "infringement",
        "cease and desist",
        "lawsuit",
        "legal action",
        "unauthorized",
        "counterfeit",
        "compliance violation",
        "recall",
        "safety issue",
        "regulatory",
    ]
    # Tier pricing boundaries (CAD)
    TIER_PRICING: dict[str, tuple[int, int]] = {
        "TIER_1": (4000, 5500),
        "TIER_2": (8000, 15000),
        "TIER_3": (15000, 35000),
    }

    # ==========================================================================
    # Delivery SOP
    # ==========================================================================
    SOP_SEED_ON_STARTUP: bool = True  # insert missing default SOP steps

    # ==========================================================================
    # Event Stream
    # ==========================================================================
    EVENT_SUBSCRIBER_QUEUE_SIZE: int = 256

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()

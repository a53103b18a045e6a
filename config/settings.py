"""
Configuration settings for the application
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGS_DIR = Path("./logs")

# Purchase kinds accepted by checkout and carried in Stripe metadata
PURCHASE_CREDITS = "credits"
PURCHASE_SUBSCRIPTION = "subscription"
PURCHASE_LIFETIME = "lifetime"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")
    operator_api_key: Optional[str] = Field(default=None, alias="OPERATOR_API_KEY")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_subscription: Optional[str] = Field(default=None, alias="STRIPE_PRICE_SUBSCRIPTION")
    stripe_price_credits: Optional[str] = Field(default=None, alias="STRIPE_PRICE_CREDITS")
    stripe_price_lifetime: Optional[str] = Field(default=None, alias="STRIPE_PRICE_LIFETIME")
    credits_per_pack: int = Field(default=10, alias="CREDITS_PER_PACK")

    # Completion API (OpenRouter speaks the OpenAI protocol)
    openrouter_api_key: Optional[str] = Field(default=None, alias="OPENROUTER_API_KEY")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    completion_base_url: str = Field(default="https://openrouter.ai/api/v1", alias="COMPLETION_BASE_URL")
    completion_model: str = Field(default="openai/gpt-4.1-mini", alias="COMPLETION_MODEL")
    completion_temperature: float = Field(default=0.85, alias="COMPLETION_TEMPERATURE")
    completion_max_tokens: int = Field(default=250, alias="COMPLETION_MAX_TOKENS")
    completion_timeout_seconds: float = Field(default=30.0, alias="COMPLETION_TIMEOUT_SECONDS")

    # Chat entitlement and context tuning
    free_quota: int = Field(default=5, alias="FREE_QUOTA")
    history_limit: int = Field(default=20, alias="HISTORY_LIMIT")
    signup_credits: int = Field(default=10, alias="SIGNUP_CREDITS")
    personas_file: Optional[str] = Field(default=None, alias="PERSONAS_FILE")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")
    rate_limit_per_minute: int = Field(default=60, alias="RATE_LIMIT_PER_MINUTE")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")
    render_external_url: Optional[str] = Field(default=None, alias="RENDER_EXTERNAL_URL")
    render_service_name: Optional[str] = Field(default=None, alias="RENDER_SERVICE_NAME")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    @property
    def completion_api_key(self) -> Optional[str]:
        return self.openrouter_api_key or self.openai_api_key


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or (settings.env and settings.env.lower() == "production")

"""
Configuration management using Pydantic settings.
Loads environment variables and provides type-safe configuration.
"""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type safety.
    """

    # Google OAuth Configuration
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_REVOKE_URI: str = "https://oauth2.googleapis.com/revoke"

    # Gmail push notifications (projects/{project-id}/topics/{topic-name})
    GMAIL_PUBSUB_TOPIC: Optional[str] = None

    # OpenAI Configuration (optional)
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_MAX_RETRIES: int = 2

    # Encryption Configuration
    ENCRYPTION_KEY: str = ""

    # Application Configuration
    APP_ENV: str = "local"  # local, development, staging, production
    FRONTEND_URL: str = "http://localhost:3000"

    # Database Configuration
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/mail_sweep.db"

    # Token lifecycle
    TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS: int = 60

    # Sync
    FULL_SYNC_MAX_MESSAGES: int = 10
    SYNC_BATCH_SIZE: int = 10

    # Prompt truncation
    LINK_PROMPT_BODY_CHARS: int = 2000
    PAGE_PROMPT_HTML_CHARS: int = 3000
    SUMMARY_PROMPT_BODY_CHARS: int = 3000

    # Unsubscribe HTTP behaviour
    UNSUBSCRIBE_MAX_REDIRECTS: int = 5
    UNSUBSCRIBE_CONNECT_TIMEOUT: float = 10.0
    UNSUBSCRIBE_READ_TIMEOUT: float = 30.0
    UNSUBSCRIBE_SUCCESS_INDICATORS: List[str] = ["unsubscribed", "success", "successfully"]

    # Job queue
    SYNC_JOB_MAX_ATTEMPTS: int = 3
    PROCESS_JOB_MAX_ATTEMPTS: int = 3
    UNSUBSCRIBE_JOB_MAX_ATTEMPTS: int = 2
    JOB_RETRY_BASE_SECONDS: int = 15

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.APP_ENV == "production"

    def is_local(self) -> bool:
        """Check if running in local environment."""
        return self.APP_ENV == "local"


# Global settings instance
settings = Settings()

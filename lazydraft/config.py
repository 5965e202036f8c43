"""
Configuration management using Pydantic settings.
"""

from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Settings
    database_path: str = Field(
        default="./data/lazydraft.db",
        description="Path to SQLite database"
    )

    # API Settings
    api_host: str = Field(
        default="0.0.0.0",
        description="Host interface for the HTTP API"
    )
    api_port: int = Field(
        default=5000,
        description="HTTP API port"
    )
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173"],
        description="Origins allowed to call the API from a browser"
    )
    public_url: Optional[str] = Field(
        default=None,
        description="Public base URL of this service, used in tracking pixels"
    )

    # Google / Gmail Settings
    google_client_id: Optional[str] = Field(
        default=None,
        description="OAuth client ID used to refresh Gmail access tokens"
    )
    google_client_secret: Optional[str] = Field(
        default=None,
        description="OAuth client secret used to refresh Gmail access tokens"
    )
    google_token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google OAuth token endpoint"
    )
    gmail_api_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1",
        description="Base URL of the Gmail REST API"
    )
    vendor_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single call to the mail provider"
    )

    # AI Settings
    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="Anthropic API key for Claude (AI features disabled if not set)"
    )
    agent_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model to use for drafting"
    )
    max_tokens: int = Field(
        default=2048,
        description="Max tokens for AI responses"
    )

    # Scheduler Settings
    scheduler_enabled: bool = Field(
        default=True,
        description="Run the scheduled/recurring mail sweeps in this process"
    )
    scheduler_interval_seconds: int = Field(
        default=15,
        description="How often each sweep runs (seconds)"
    )
    scheduler_batch_size: int = Field(
        default=25,
        description="Maximum due items processed per sweep"
    )

    # Auto-reply Settings
    auto_reply_interval_seconds: int = Field(
        default=300,
        description="How often enabled users' inboxes are checked (seconds)"
    )
    auto_reply_batch_size: int = Field(
        default=20,
        description="Maximum inbound messages read per user per run"
    )
    auto_reply_lookback_hours: int = Field(
        default=24,
        description="How far back the first run for a user reads the inbox"
    )

    # Tracking Settings
    reply_check_days: int = Field(
        default=14,
        description="Only look for replies to mails sent within this many days"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Log file path (stdout if not set)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def default_tracking_base_url(self) -> str:
        """Base URL used for tracking pixels when no request origin is known."""
        if self.public_url:
            return self.public_url.rstrip("/")
        host = "localhost" if self.api_host == "0.0.0.0" else self.api_host
        return f"http://{host}:{self.api_port}"


# Global settings instance
settings = Settings()

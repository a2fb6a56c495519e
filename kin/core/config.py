"""Configuration management for kin."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # SQLite Configuration
    sqlite_db_path: str = Field(default="./data/kin.db", description="Path to the SQLite database file")

    # OpenRouter Configuration
    openrouter_api_key: str | None = Field(default=None, description="OpenRouter API key for image verification")
    model_id: str = Field(
        default="openai/gpt-4o-mini",
        description="Vision-capable model ID on OpenRouter used to judge proof images",
    )
    model_provider: str | None = Field(default=None, description="Restrict OpenRouter routing to a single provider")

    # Object Storage Configuration
    storage_url: str = Field(default="http://127.0.0.1:54321", description="Base URL of the storage REST API")
    storage_api_key: str | None = Field(default=None, description="Service key for the storage REST API")
    storage_bucket: str = Field(default="task-proofs", description="Bucket that receives proof images")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")

    # Points & Goals Configuration
    task_completion_points: int = Field(default=10, description="Points granted for each finalized completion")
    weekly_goal_bonus_points: int = Field(default=20, description="Bonus points for reaching the weekly goal")
    default_weekly_goal: int = Field(default=3, description="Weekly goal (distinct days) for new members")
    week_start_day: int = Field(
        default=6,
        ge=0,
        le=6,
        description="First day of the display week (0=Monday, 6=Sunday)",
    )

    def require_credential(self, field_name: str, service_name: str) -> str:
        """Validate that a required credential is set, raising a clear error if missing.

        Args:
            field_name: Name of the field to check
            service_name: Human-readable service name for error message

        Returns:
            The credential value

        Raises:
            ValueError: If the credential is None or empty
        """
        value = getattr(self, field_name)
        if not value:
            raise ValueError(
                f"{service_name} credential not configured. "
                f"Set {field_name.upper()} environment variable or add to .env file."
            )
        return value


# Application Constants
class Constants:
    """Application-wide constants."""

    # API Configuration
    VERIFICATION_TIMEOUT_SECONDS: int = 45  # Per model call
    JUDGMENT_DEADLINE_SECONDS: int = 120  # Whole judgment including retries
    UPLOAD_TIMEOUT_SECONDS: int = 30

    # Verification
    VERIFICATION_REASON_MAX_CHARS: int = 200

    # Streaks
    STREAK_LOOKBACK_DAYS: int = 365  # Bounded walk-back window for cost control

    # Weekly view
    DAYS_PER_WEEK: int = 7

    # Pagination Defaults
    DEFAULT_PER_PAGE_LIMIT: int = 500

    # Family views
    RECENT_ACTIVITY_LIMIT: int = 20


# Global settings instance
settings = Settings()
constants = Constants()

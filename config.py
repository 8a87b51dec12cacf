"""
Configuration management for the Lead Enrichment Console
"""
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Supabase Configuration
    supabase_url: str = Field(alias="SUPABASE_URL")
    supabase_anon_key: str = Field(alias="SUPABASE_ANON_KEY")

    # API Keys
    getprospect_api_key: str = Field(alias="GETPROSPECT_API_KEY")
    perplexity_api_key: Optional[str] = Field(None, alias="PERPLEXITY_API_KEY")

    # Remote services
    getprospect_base_url: str = Field(
        "https://api.getprospect.com/public/v1/email", alias="GETPROSPECT_BASE_URL"
    )
    perplexity_model: str = Field("sonar", alias="PERPLEXITY_MODEL")
    webhook_url: Optional[str] = Field(None, alias="WEBHOOK_URL")
    request_timeout: int = Field(30, alias="REQUEST_TIMEOUT")

    # Processing Configuration
    row_delay_ms: int = Field(300, alias="ROW_DELAY_MS")  # pause between sequential rows
    cache_lookup_limit: int = Field(50, alias="CACHE_LOOKUP_LIMIT")

    # History Configuration
    history_cap: int = Field(100, alias="HISTORY_CAP")
    history_fetch_limit: int = Field(200, alias="HISTORY_FETCH_LIMIT")
    dedup_window_ms: int = Field(2000, alias="DEDUP_WINDOW_MS")

    # Logging Configuration
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file_enabled: bool = Field(False, alias="LOG_FILE_ENABLED")
    log_file_path: str = Field("logs", alias="LOG_FILE_PATH")
    log_rotation: str = Field("10 MB", alias="LOG_ROTATION")
    log_retention: str = Field("30 days", alias="LOG_RETENTION")

    # Development
    debug_mode: bool = Field(False, alias="DEBUG_MODE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",  # Allow extra fields in env file for compatibility
    )

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level is one of the standard Python logging levels"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @validator("row_delay_ms")
    def validate_row_delay(cls, v):
        """Keep the inter-row pause within a sane window"""
        if v < 0 or v > 10000:
            raise ValueError("row_delay_ms must be between 0 and 10000")
        return v

    @validator("history_cap", "history_fetch_limit", "cache_lookup_limit")
    def validate_positive_limit(cls, v):
        if v < 1:
            raise ValueError("Limits must be at least 1")
        return v

    @validator("dedup_window_ms")
    def validate_dedup_window(cls, v):
        if v < 0:
            raise ValueError("dedup_window_ms cannot be negative")
        return v

    @property
    def row_delay_seconds(self) -> float:
        return self.row_delay_ms / 1000


# Global settings instance - lazy loaded
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

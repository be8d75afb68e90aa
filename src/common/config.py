"""
Configuration loader for the bulk operations pipeline.

Loads all settings from environment variables (.env file).
Validates required settings and provides type-safe access.
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _optional(name: str) -> Optional[str]:
    """Read an env var, treating blank values as unset."""
    value = os.getenv(name, "").strip()
    return value or None


class Config:
    """
    Centralized configuration for all pipeline components.

    All values loaded from environment variables - NO SECRETS IN CODE.
    """

    # ===== MongoDB =====
    MONGODB_URI: str = os.getenv("MONGODB_URI", "")
    MONGODB_DATABASE: str = os.getenv("MONGODB_DATABASE", "agency")

    # ===== Hosted functions =====
    # e.g. https://us-central1-<project>.cloudfunctions.net
    CLOUD_FUNCTIONS_BASE_URL: str = os.getenv("CLOUD_FUNCTIONS_BASE_URL", "")
    CLOUD_FUNCTIONS_AUTH_TOKEN: str = os.getenv("CLOUD_FUNCTIONS_AUTH_TOKEN", "")
    CLOUD_FUNCTIONS_TIMEOUT_SECONDS: float = float(
        os.getenv("CLOUD_FUNCTIONS_TIMEOUT_SECONDS", "120")
    )

    # ===== Bulk operation tuning =====
    # 5 companies at a time keeps the hosted functions under their rate limits
    BULK_BATCH_SIZE: int = int(os.getenv("BULK_BATCH_SIZE", "5"))
    BULK_MAX_RETRIES: int = int(os.getenv("BULK_MAX_RETRIES", "2"))
    BULK_RETRY_DELAY_MS: int = int(os.getenv("BULK_RETRY_DELAY_MS", "2000"))
    BULK_INTER_BATCH_DELAY_MS: int = int(os.getenv("BULK_INTER_BATCH_DELAY_MS", "1000"))

    # ===== Company field mappings =====
    # Unset WEBSITE_CUSTOM_FIELD means the top-level `website` field is used
    WEBSITE_CUSTOM_FIELD: Optional[str] = _optional("WEBSITE_CUSTOM_FIELD")
    PROGRAM_URL_FIELD: Optional[str] = _optional("PROGRAM_URL_FIELD")
    BLOG_URL_FIELD: Optional[str] = _optional("BLOG_URL_FIELD")

    # ===== Blog analysis =====
    BLOG_SKIP_RECENT_DAYS: int = int(os.getenv("BLOG_SKIP_RECENT_DAYS", "7"))

    DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"

    @classmethod
    def validate(cls) -> None:
        """
        Validate that all required configuration is present.
        Raises ValueError if critical settings are missing or out of range.
        """
        required_settings = {
            "MONGODB_URI": cls.MONGODB_URI,
            "CLOUD_FUNCTIONS_BASE_URL": cls.CLOUD_FUNCTIONS_BASE_URL,
        }

        missing = [name for name, value in required_settings.items() if not value]

        if missing:
            raise ValueError(
                f"Missing required configuration: {', '.join(missing)}. "
                f"Please check your .env file."
            )

        if cls.BULK_BATCH_SIZE < 1:
            raise ValueError("BULK_BATCH_SIZE must be at least 1")
        if cls.BULK_MAX_RETRIES < 0:
            raise ValueError("BULK_MAX_RETRIES cannot be negative")

    @classmethod
    def summary(cls) -> str:
        """Return a summary of the current configuration (safe for logging)."""
        return f"""
Configuration Summary:
  MongoDB: {'✓ Configured' if cls.MONGODB_URI else '✗ Missing'} (database: {cls.MONGODB_DATABASE})
  Cloud Functions: {cls.CLOUD_FUNCTIONS_BASE_URL or '✗ Missing'}
  Cloud Functions Auth: {'✓ Token set' if cls.CLOUD_FUNCTIONS_AUTH_TOKEN else '✗ Anonymous'}
  Batch: size={cls.BULK_BATCH_SIZE}, retries={cls.BULK_MAX_RETRIES}, retry_delay={cls.BULK_RETRY_DELAY_MS}ms
  Website Field: {cls.WEBSITE_CUSTOM_FIELD or 'website (top-level)'}
  Program URL Field: {cls.PROGRAM_URL_FIELD or '✗ Not mapped'}
  Blog URL Field: {cls.BLOG_URL_FIELD or '✗ Not mapped'}
        """.strip()

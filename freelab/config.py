"""
Freelab Configuration

Loads configuration from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


UNKNOWN_ID_POLICIES = ("accept", "strip", "reject")


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Local LLM (Ollama) endpoint, only used when LLM_PROVIDER=ollama
    OLLAMA_BASE_URL: str | None = os.getenv("OLLAMA_BASE_URL")

    # Metering: per-token prices in micro-USD, quota in cents
    PRICE_IN_MICRO_USD_PER_TOKEN: float = float(
        os.getenv("PRICE_IN_MICRO_USD_PER_TOKEN", "0.15")
    )
    PRICE_OUT_MICRO_USD_PER_TOKEN: float = float(
        os.getenv("PRICE_OUT_MICRO_USD_PER_TOKEN", "0.6")
    )
    DEFAULT_QUOTA_CENTS: int = int(os.getenv("DEFAULT_QUOTA_CENTS", "500"))

    # Step engine
    HISTORY_WINDOW: int = int(os.getenv("HISTORY_WINDOW", "3"))
    UNKNOWN_ID_POLICY: str = os.getenv("UNKNOWN_ID_POLICY", "accept")

    # Usage storage
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/freelab")
    USAGE_DIR: Path = Path(os.getenv("USAGE_DIR", "usage"))

    # Debugging
    DEBUG_LLM: bool = bool(os.getenv("DEBUG_LLM"))

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        if cls.LLM_PROVIDER == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise ValueError(
                "ANTHROPIC_API_KEY is required when using the 'anthropic' provider"
            )

        if cls.LLM_PROVIDER == "openai" and not cls.OPENAI_API_KEY:
            raise ValueError(
                "OPENAI_API_KEY is required when using the 'openai' provider. "
                "For local models, set LLM_PROVIDER=ollama instead."
            )

        if cls.UNKNOWN_ID_POLICY not in UNKNOWN_ID_POLICIES:
            raise ValueError(
                f"UNKNOWN_ID_POLICY must be one of {', '.join(UNKNOWN_ID_POLICIES)}; "
                f"got {cls.UNKNOWN_ID_POLICY!r}"
            )

        if cls.HISTORY_WINDOW < 0:
            raise ValueError("HISTORY_WINDOW must be zero or positive")

    @classmethod
    def pricing(cls):
        """Return the configured per-token prices as a Pricing value."""
        from .metering import Pricing

        return Pricing(
            price_in=cls.PRICE_IN_MICRO_USD_PER_TOKEN,
            price_out=cls.PRICE_OUT_MICRO_USD_PER_TOKEN,
        )

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Freelab Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  LLM Timeout: {cls.LLM_TIMEOUT_SECONDS:g}s",
            f"  Prices (micro-USD/token): in={cls.PRICE_IN_MICRO_USD_PER_TOKEN:g} "
            f"out={cls.PRICE_OUT_MICRO_USD_PER_TOKEN:g}",
            f"  Default Quota: {cls.DEFAULT_QUOTA_CENTS} cents",
            f"  History Window: {cls.HISTORY_WINDOW}",
            f"  Unknown Id Policy: {cls.UNKNOWN_ID_POLICY}",
            f"  Database: {cls.DATABASE_URL}",
        ]
        return "\n".join(lines)

"""
Ragebaiter Configuration

Central settings loaded from environment variables.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Immutable application settings."""

    API_VERSION: str = "1"

    # --- Upstream Analyzers ---
    ANALYZER_MODE: str = os.getenv("RAGEBAITER_ANALYZER", "llm")  # "llm" | "deterministic"
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
    PHASE1_MODEL: str = os.getenv("RAGEBAITER_PHASE1_MODEL", "gemini-2.5-flash")
    PHASE2_PROVIDER: str = os.getenv("RAGEBAITER_PHASE2_PROVIDER", "google")
    PHASE1_TIMEOUT_MS: int = int(os.getenv("RAGEBAITER_PHASE1_TIMEOUT_MS", "8000"))
    PHASE2_TIMEOUT_MS: int = int(os.getenv("RAGEBAITER_PHASE2_TIMEOUT_MS", "25000"))
    MAX_INPUT_CHARS: int = int(os.getenv("RAGEBAITER_MAX_INPUT_CHARS", "2000"))
    UPSTREAM_RPS: int = int(os.getenv("RAGEBAITER_UPSTREAM_RPS", "10"))

    # --- Result Cache ---
    CACHE_TTL_MS: int = int(os.getenv("RAGEBAITER_CACHE_TTL_MS", str(24 * 60 * 60 * 1000)))
    CACHE_MAX_ENTRIES: int = int(os.getenv("RAGEBAITER_CACHE_MAX_ENTRIES", "100"))
    CACHE_DB_PATH: str = os.getenv("RAGEBAITER_CACHE_DB", "")

    # --- Supabase (repository + quota store) ---
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_SERVICE_ROLE_KEY: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # --- Rate Limiting & Quota ---
    RATE_LIMIT_ENABLED: bool = os.getenv("RAGEBAITER_RATE_LIMIT", "true").lower() == "true"
    RATE_PER_MINUTE: int = int(os.getenv("RAGEBAITER_RATE_PER_MINUTE", "60"))
    MONTHLY_QUOTA: int = int(os.getenv("RAGEBAITER_MONTHLY_QUOTA", "50"))
    DAILY_LIMIT: int = int(os.getenv("RAGEBAITER_DAILY_LIMIT", "100"))
    QUOTA_CACHE_TTL_MS: int = int(os.getenv("RAGEBAITER_QUOTA_CACHE_TTL_MS", "60000"))

    # --- Decision Engine ---
    COOLDOWN_MS: int = int(os.getenv("RAGEBAITER_COOLDOWN_MS", "30000"))

    # --- Auth ---
    API_KEYS: str = os.getenv("RAGEBAITER_API_KEYS", "")

    # --- Server ---
    HOST: str = os.getenv("RAGEBAITER_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("RAGEBAITER_PORT", "8000"))
    CORS_ORIGINS: str = os.getenv("RAGEBAITER_CORS_ORIGINS", "*")

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)


settings = Settings()

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Union
from functools import lru_cache
from pathlib import Path
from pydantic import field_validator, model_validator

# Get the project root directory (one level up from codepath/)
PROJECT_ROOT = Path(__file__).parent.parent

# Export these for app-wide use
__all__ = ["Settings", "settings", "get_settings"]


class Settings(BaseSettings):
    # App Settings
    app_name: str = "Codepath Curriculum Service"
    debug: Union[bool, str] = False

    @field_validator('debug', mode='before')
    @classmethod
    def parse_debug(cls, v):
        """Parse debug from various formats"""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            v_lower = v.lower().strip()
            if v_lower in ('true', '1', 'yes', 'on'):
                return True
            if v_lower in ('false', '0', 'no', 'off'):
                return False
            return False
        return bool(v)

    # Server Settings
    host: str = "127.0.0.1"
    port: int = 8000

    # CORS Settings - Allowed frontend URLs
    cors_origins: Union[str, list[str]] = ["*"]

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string or list"""
        if isinstance(v, str):
            if v.strip() == "*":
                return ["*"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    # Environment (development or production)
    environment: str = "development"

    # Chunking - sliding window over source lines
    chunk_window_lines: int = 60
    chunk_overlap_lines: int = 15
    chunk_context_lines: int = 6
    max_fragments_per_repository: int = 5000
    max_file_bytes: int = 500_000

    # Embeddings
    embedding_model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimension: int = 384
    embedding_batch_size: int = 32

    # Vector Database Settings - Qdrant connection (in-process when unset)
    qdrant_url: Optional[str] = None
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "codepath_fragments"

    # External provider calls (embedding, LLM)
    provider_timeout_seconds: float = 30.0
    provider_max_attempts: int = 3
    provider_backoff_seconds: float = 1.0
    provider_backoff_max_seconds: float = 20.0

    # LLM API Keys - Groq
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.1-70b-versatile"
    groq_api_url: str = "https://api.groq.com/openai/v1/chat/completions"

    # Domain analysis
    min_domain_files: int = 2

    # Curriculum planning
    default_daily_minutes: int = 120

    # Tutor
    tutor_top_k: int = 5
    tutor_confidence_floor: float = 0.35
    conversation_window: int = 10
    max_conversations: int = 1000

    # Progress sync / risk
    risk_threshold: float = 0.5
    risk_confidence_window: int = 6

    # Persistence: "memory" or "supabase"
    persistence_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    @model_validator(mode='after')
    def check_chunk_window(self):
        """Overlap must leave the window room to advance"""
        if self.chunk_overlap_lines >= self.chunk_window_lines:
            raise ValueError("chunk_overlap_lines must be smaller than chunk_window_lines")
        return self

    model_config = SettingsConfigDict(
        # Look for .env in project root
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env that aren't defined
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Create and cache a single Settings instance (Singleton pattern).
    Returns the same instance on subsequent calls.
    """
    return Settings()


# Create a global settings instance for convenience
settings = get_settings()

"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Generation provider (external NB protocol service)
    GENERATION_BASE_URL: str = "http://localhost:8100/api/v1"
    GENERATION_API_KEY: str = ""
    GENERATION_TIMEOUT: float = 900.0

    # Cache reuse
    CACHE_FRESHNESS_DAYS: int = 90

    # Cost estimation
    LLM_PROVIDER: str = "gpt-4"
    COST_WARNING_THRESHOLD: float = 10.0
    COST_HARD_LIMIT: float = 50.0

    # Synthesis quality gate
    CITATION_DENSITY_TARGET: float = 10.0

    # Worker
    WORKER_POLL_INTERVAL: int = 5
    RUN_RETENTION_DAYS: int = 90

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()

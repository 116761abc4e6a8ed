"""
Configuration management for the Growth Engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Growth Engine"
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # Database
    database_url: str = "sqlite:///./growth_engine.db"

    # Data mode (read by entry points only, passed down explicitly)
    demo_mode: bool = False

    # Pipeline
    raw_ingest_batch_size: int = 500
    normalize_batch_size: int = 200
    default_currency: str = "USD"

    # Opportunities
    opportunity_dedup_hours: int = 24

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

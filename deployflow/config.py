"""
Configuration settings for DeployFlow.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)
    
    # Application
    APP_NAME: str = "DeployFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    
    # Execution engine
    MAX_PARALLEL_STEPS: int = 8  # Concurrent external steps per run
    STEP_TIMEOUT: Optional[float] = None  # Seconds, None waits forever
    MANUAL_GATE_TIMEOUT: Optional[float] = None  # Seconds, None waits forever
    
    # Logging
    LOG_LEVEL: str = "INFO"


# Global settings instance
settings = Settings()

"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Orchestration Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflows.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Security Settings
    # MUST be set in environment for production; defaults only safe for development
    SECRET_KEY: str = ""
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Engine Settings
    STEP_DEFAULT_TIMEOUT_SECONDS: float = 300.0  # Used when a step has no timeout_minutes
    ROUND_ROBIN_MAX_CAS_RETRIES: int = 5
    DELAY_RECOVERY_ON_STARTUP: bool = True

    # Email transport: log, smtp or http
    EMAIL_TRANSPORT: str = "log"
    EMAIL_FROM_ADDRESS: str = "workflows@localhost"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    EMAIL_API_URL: str = ""
    EMAIL_API_KEY: str = ""
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def validate_secrets(self) -> None:
        """Validate that critical secrets are not using defaults in production.

        Raises:
            RuntimeError: If production environment has an empty SECRET_KEY
        """
        if self.is_production and not self.SECRET_KEY:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable must be set in production. "
                "Do not use default values."
            )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()

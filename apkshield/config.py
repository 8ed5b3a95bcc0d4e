from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = "dev"  # "dev", "prod"
    debug: bool = True

    # ==========================================================================
    # UPLOADS
    # ==========================================================================
    max_file_size: int = 230686720  # 220MB
    upload_dir: str = "uploads"
    upload_chunk_size: int = 1024 * 1024

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: str = Field(
        default="http://localhost:3000",
        validation_alias="ALLOWED_ORIGINS",
    )  # Comma-separated origins, or "*" for all

    # ==========================================================================
    # RATE LIMITING
    # ==========================================================================
    rate_limit_requests: int = 10  # Max requests per window (0 disables)
    rate_limit_window: int = 60  # Window in seconds

    # ==========================================================================
    # ANALYSIS
    # ==========================================================================
    ml_detection_enabled: bool = False
    threat_feed_path: str = ""  # Optional JSON feed merged into built-in lists

    # ==========================================================================
    # LOGGING
    # ==========================================================================
    log_file: str = "logs/apkshield.log"  # Only used in prod

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "prod"

    @property
    def expose_errors(self) -> bool:
        """Raw error messages are only returned to callers in development."""
        return self.environment.lower() in {"dev", "development"}

    @property
    def cors_origins_list(self) -> List[str]:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def max_file_size_mb(self) -> int:
        return self.max_file_size // (1024 * 1024)


settings = Settings()

"""Configuration management for the joinctl application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

class Config:
    """Application configuration with sensible defaults."""

    # Catalog API service
    API_KEY: str = os.getenv("JOINCTL_API_KEY", "joinctl-secret")
    API_HOST: str = os.getenv("JOINCTL_API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("JOINCTL_API_PORT", "8140"))
    CATALOG_PATH: str = os.getenv("JOINCTL_CATALOG_PATH", "")

    # Timeouts (in seconds)
    API_TIMEOUT: int = int(os.getenv("API_TIMEOUT", "30"))
    SSH_TIMEOUT: int = int(os.getenv("SSH_TIMEOUT", "10"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("api_key", "password", "secret", "token")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        required = {
            "JOINCTL_API_KEY": cls.API_KEY,
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

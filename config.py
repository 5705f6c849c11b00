import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_timeout(name: str, default: str) -> Optional[float]:
    # 0 or a negative value means wait forever
    value = float(os.getenv(name, default))
    return value if value > 0 else None


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")  # bootstrap admin key

    # Database settings
    db_file: str = os.getenv("LENDING_DB_FILE", "library.db")
    db_busy_timeout: float = float(os.getenv("DB_BUSY_TIMEOUT", "5"))
    lock_timeout: Optional[float] = _env_timeout("LOCK_TIMEOUT", "10")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "6"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()

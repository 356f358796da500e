"""Configuration management for the DAO indexer."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


class Config:
    """Application configuration."""

    # Project paths
    ROOT_DIR = Path(__file__).parent.parent.parent
    DATA_DIR = ROOT_DIR / "data"
    LOGS_DIR = ROOT_DIR / "logs"

    # Database
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
    DB_NAME: str = os.getenv("DB_NAME", "dao_indexer")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "postgres")

    # Chain
    RPC_URL: Optional[str] = os.getenv("RPC_URL")
    FACTORY_ADDRESS: Optional[str] = os.getenv("FACTORY_ADDRESS")
    START_BLOCK: Optional[int] = _optional_int("START_BLOCK")

    # Indexer settings
    INDEXER_NAME: str = os.getenv("INDEXER_NAME", "default")
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "3.0"))
    FILTER_POLL_INTERVAL: float = float(os.getenv("FILTER_POLL_INTERVAL", "2.0"))
    LOG_CHUNK_SIZE: int = int(os.getenv("LOG_CHUNK_SIZE", "2000"))
    MAX_EVENT_ATTEMPTS: int = int(os.getenv("MAX_EVENT_ATTEMPTS", "5"))

    # RPC transport settings
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", "30"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_BACKOFF: float = float(os.getenv("RETRY_BACKOFF", "2.0"))

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if not cls.RPC_URL:
            raise ValueError("RPC_URL not set in environment")
        if not cls.FACTORY_ADDRESS:
            raise ValueError("FACTORY_ADDRESS not set in environment")
        if cls.LOG_CHUNK_SIZE < 1:
            raise ValueError("LOG_CHUNK_SIZE must be a positive integer")

    @property
    def database_url(self) -> str:
        """Construct database URL (DATABASE_URL wins when set)."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


config = Config()

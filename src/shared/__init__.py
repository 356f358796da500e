"""Shared utilities and configuration."""

from src.shared.config import Config
from src.shared.utils import from_unix, normalize_address, setup_logger, to_utc, utcnow

__all__ = ["Config", "setup_logger", "to_utc", "from_unix", "utcnow", "normalize_address"]

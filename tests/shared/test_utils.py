"""Tests for utility functions."""

import logging
from datetime import datetime

import pytest
import pytz

from src.shared.utils import from_unix, normalize_address, setup_logger, to_utc, utcnow


def test_setup_logger_basic():
    """Test basic logger setup."""
    logger = setup_logger("test_logger")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "test_logger"
    assert logger.level == logging.INFO


def test_setup_logger_with_file(tmp_path):
    """Test logger setup with file handler."""
    log_file = tmp_path / "logs" / "test.log"
    logger = setup_logger("test_file_logger", log_file=log_file)

    assert log_file.exists()
    logger.info("Test message")

    assert log_file.read_text()


def test_setup_logger_custom_level():
    """Test logger with custom level."""
    logger = setup_logger("test_debug_logger", level="DEBUG")
    assert logger.level == logging.DEBUG


def test_setup_logger_reuse_adds_no_handlers(tmp_path):
    """Components built repeatedly share one console and one file handler."""
    log_file = tmp_path / "shared.log"
    setup_logger("test_reused_logger", log_file=log_file)
    logger = setup_logger("test_reused_logger", log_file=log_file)
    assert len(logger.handlers) == 2


def test_to_utc_with_naive_datetime():
    """Test converting naive datetime to UTC."""
    dt = datetime(2026, 2, 8, 12, 30, 45)
    utc_dt = to_utc(dt, from_tz="US/Eastern")
    assert utc_dt.tzinfo == pytz.UTC
    assert utc_dt.hour == 17


def test_from_unix():
    """Block timestamps are seconds since the epoch, UTC."""
    dt = from_unix(1700000000)
    assert dt == datetime(2023, 11, 14, 22, 13, 20, tzinfo=pytz.UTC)


def test_utcnow_is_aware():
    assert utcnow().tzinfo is not None


def test_normalize_address():
    address = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
    normalized = normalize_address(address)
    assert normalized.lower() == address
    assert normalized != address
    assert normalize_address(normalized) == normalized


@pytest.mark.parametrize("value", ["", "0x1234", "not an address", None])
def test_normalize_address_invalid(value):
    with pytest.raises(ValueError, match="Invalid address"):
        normalize_address(value)

"""Shared test configuration."""

import logging
import os

import pytest
import structlog
from tsdbquery.config.settings import get_settings


def pytest_configure(config):
    """Keep structlog quiet below WARNING so expected fallbacks don't flood output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Run every test without ambient TSDBQUERY_* variables or a stray .env file."""
    for name in list(os.environ):
        if name.startswith("TSDBQUERY_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

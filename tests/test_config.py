"""Test configuration system."""

import logging
import os
from unittest.mock import patch

import pytest
import structlog
from pydantic import ValidationError

from flowengine.config import Settings, get_settings
from flowengine.exceptions import ConfigurationError
from flowengine.logs import configure_logging


@pytest.mark.unit
def test_settings_defaults():
    """Test settings object creation."""
    test_settings = Settings(_env_file=None)

    assert test_settings.app_name == "flowengine"
    assert test_settings.max_parallel_nodes == 10
    assert test_settings.execution_timeout == 3600
    assert test_settings.default_node_timeout is None
    assert test_settings.retry_backoff_factor == 2.0
    assert test_settings.max_retry_delay == 60
    assert test_settings.shared_pool_size is None
    assert test_settings.max_execution_retries == 3
    assert test_settings.metrics_histogram_size == 1000


@pytest.mark.unit
def test_settings_environment_properties():
    """Test environment detection properties."""
    dev_settings = Settings(_env_file=None, environment="development")
    assert dev_settings.is_development is True
    assert dev_settings.is_production is False

    prod_settings = Settings(_env_file=None, environment="production")
    assert prod_settings.is_production is True
    assert prod_settings.is_testing is False

    test_settings = Settings(_env_file=None, environment="testing")
    assert test_settings.is_testing is True


@pytest.mark.unit
def test_settings_from_environment():
    """Test loading settings from environment variables."""
    with patch.dict(os.environ, {
        "MAX_PARALLEL_NODES": "4",
        "EXECUTION_TIMEOUT": "120",
        "SHARED_POOL_SIZE": "16",
        "DEBUG": "true",
    }):
        test_settings = Settings(_env_file=None)

        assert test_settings.max_parallel_nodes == 4
        assert test_settings.execution_timeout == 120
        assert test_settings.shared_pool_size == 16
        assert test_settings.debug is True


@pytest.mark.unit
@pytest.mark.parametrize("field,value", [
    ("max_parallel_nodes", 0),
    ("retry_backoff_factor", 0.5),
    ("execution_timeout", -1),
    ("metrics_histogram_size", 0),
])
def test_settings_validation(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})


@pytest.mark.unit
def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


@pytest.mark.unit
def test_configure_logging():
    try:
        configure_logging(Settings(_env_file=None, log_level="debug", log_json=True))
        logger = structlog.get_logger("flowengine.test")
        logger.info("configured", component="test")
        assert logging.getLevelName("DEBUG") == logging.DEBUG
    finally:
        structlog.reset_defaults()


@pytest.mark.unit
def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ConfigurationError):
        configure_logging(Settings(_env_file=None, log_level="chatty"))

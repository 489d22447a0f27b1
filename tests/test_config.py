"""
Tests for configuration and structured logging
"""

import json
import logging
import pytest
from pydantic import ValidationError

from hire_purchase.config import EngineConfig, reload_config, get_config
from hire_purchase.currency import Currency
from hire_purchase.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestEngineConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        config = EngineConfig(_env_file=None)

        assert config.currency_enum == Currency.GHS
        assert config.payment_network_set == {"MTN", "VODAFONE", "TELECEL", "AIRTELTIGO"}
        assert config.mandate_network_set == {"MTN", "VODAFONE", "TELECEL"}
        assert config.mandate_network_set < config.payment_network_set
        assert config.poll_interval_seconds == 2.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("HP_DATABASE_URL", "memory://")
        monkeypatch.setenv("HP_MANDATE_NETWORKS", "mtn, telecel")
        monkeypatch.setenv("HP_DEFAULT_THRESHOLD_DAYS", "45")

        config = reload_config()

        assert get_config() is config
        assert config.database_url == "memory://"
        assert config.sqlite_path is None
        assert config.mandate_network_set == {"MTN", "TELECEL"}
        assert config.default_threshold_days == 45

    def test_sqlite_path(self):
        config = EngineConfig(_env_file=None, database_url="sqlite:///data/hp.db")
        assert config.sqlite_path == "data/hp.db"

    @pytest.mark.parametrize("field, value", [
        ("poll_interval_seconds", 0),
        ("mandate_verification_minutes", 0),
        ("default_threshold_days", -1),
    ])
    def test_out_of_range_values(self, field, value):
        with pytest.raises(ValidationError):
            EngineConfig(_env_file=None, **{field: value})


class TestLogging:
    """Test the JSON formatter and helpers"""

    def test_json_formatter_includes_structured_fields(self):
        record = logging.LogRecord("hire_purchase.ledger", logging.INFO, __file__, 1, "Payment applied", None, None)
        record.action = "apply_payment"
        record.contract_id = "c1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Payment applied"
        assert entry["action"] == "apply_payment"
        assert entry["contract_id"] == "c1"
        assert "attempt_id" not in entry

    def test_get_logger_namespaces(self):
        assert get_logger("ledger").name == "hire_purchase.ledger"
        assert get_logger("hire_purchase.retry").name == "hire_purchase.retry"

    def test_setup_logging_and_log_action(self, caplog):
        logger = setup_logging("DEBUG", "json")
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        logger.propagate = True

        with caplog.at_level(logging.INFO, logger="hire_purchase"):
            log_action(get_logger("payments"), "info", "Payment initiated",
                       action="initiate_payment", attempt_id="a1", ignored="x")

        record = caplog.records[-1]
        assert record.action == "initiate_payment"
        assert record.attempt_id == "a1"
        assert not hasattr(record, "ignored")

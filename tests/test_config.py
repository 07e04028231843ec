"""
Tests for configuration and structured logging
"""

import json
import logging

from sacco_core.config import SaccoConfig, get_config, reload_config
from sacco_core.logging_config import JSONFormatter, setup_logging, log_action
from sacco_core.storage import InMemoryStorage
from sacco_core.service import SaccoService


class TestSaccoConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        """Test the default rule set"""
        config = SaccoConfig()

        assert config.currency == "EUR"
        assert config.loan_interest_rate == "0.05"
        assert config.borrower_rebate_ratio == "0.5"
        assert config.repayment_cutoff_day == 22
        assert config.category_targets["C"] == "100"
        assert config.periods_per_year * config.months_per_period == 12

    def test_environment_overrides(self, monkeypatch):
        """Test SACCO_ prefixed environment variables"""
        monkeypatch.setenv("SACCO_LOAN_INTEREST_RATE", "0.10")
        monkeypatch.setenv("SACCO_DATABASE_URL", "sqlite:///ledger.db")
        monkeypatch.setenv("SACCO_CATEGORY_TARGETS", '{"A": "600", "B": "300", "C": "100"}')

        config = reload_config()

        assert config.loan_interest_rate == "0.10"
        assert config.database_url == "sqlite:///ledger.db"
        assert config.category_targets["A"] == "600"
        assert get_config() is config

        monkeypatch.undo()
        assert reload_config().loan_interest_rate == "0.05"


class TestStructuredLogging:
    """Test JSON log output"""

    def test_json_formatter_includes_action_fields(self):
        """Test that structured fields end up in the JSON record"""
        logger = logging.getLogger("sacco.test")
        record = logger.makeRecord("sacco.test", logging.INFO, __file__, 1, "deposit recorded", (), None)
        record.user_id = "treasurer"
        record.action = "record_deposit"
        record.correlation_id = "abc"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "deposit recorded"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "treasurer"
        assert entry["action"] == "record_deposit"
        assert entry["correlation_id"] == "abc"
        assert "resource" not in entry

    def test_log_action_writes_through_handlers(self, tmp_path):
        """Test setup_logging with a file handler and log_action"""
        log_file = tmp_path / "sacco.log"
        logger = setup_logging(level="INFO", logger_name="sacco.filetest", log_file=str(log_file))

        log_action(logger, "info", "loan approved", user_id="chair", action="approve", resource="loan-1")
        log_action(logger, "debug", "not written", action="noop")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().strip().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["resource"] == "loan-1"
        assert entry["user_id"] == "chair"

    def test_service_applies_logging_settings(self, tmp_path):
        """Test that SaccoService configures the package logger from its config"""
        log_file = tmp_path / "ledger.log"
        config = SaccoConfig(log_level="WARNING", log_format="text", log_file=str(log_file))

        SaccoService(storage=InMemoryStorage(), config=config)

        logger = logging.getLogger("sacco_core")
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        handler = logger.handlers[0]
        assert isinstance(handler, logging.FileHandler)
        assert handler.baseFilename == str(log_file)
        assert not isinstance(handler.formatter, JSONFormatter)

        logging.getLogger("sacco_core.loans").warning("loan overdue")
        handler.flush()
        assert "loan overdue" in log_file.read_text()

        setup_logging()

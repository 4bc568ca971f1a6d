"""
Tests for structured logging
"""

import json
import logging

from ledger_core.config import LedgerConfig
from ledger_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestStructuredLogging:
    """Test JSON formatting and action logging"""

    def setup_method(self):
        self.logger = logging.getLogger("ledger.test")
        self.logger.setLevel(logging.INFO)
        self.handler = ListHandler()
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_log_action_attaches_fields(self):
        log_action(self.logger, "info", "Charge created", actor_id="manager_001",
                   action="create_charge", resource="charge:c1", extra={"amount": 100})

        record = self.handler.records[0]
        assert record.actor_id == "manager_001"
        assert record.action == "create_charge"
        assert record.resource == "charge:c1"
        assert record.extra == {"amount": 100}

    def test_json_formatter_output(self):
        log_action(self.logger, "warning", "Residual unapplied", action="record_payment",
                   extra={"unapplied_amount": 500})

        entry = json.loads(JSONFormatter().format(self.handler.records[0]))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "ledger.test"
        assert entry["message"] == "Residual unapplied"
        assert entry["extra"] == {"unapplied_amount": 500}
        assert "actor_id" not in entry

    def test_disabled_level_skipped(self):
        log_action(self.logger, "debug", "Not emitted")
        assert self.handler.records == []

    def test_setup_logging_from_config(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        config = LedgerConfig(log_level="DEBUG", log_format="json", log_file=str(log_file))
        logger = setup_logging(logger_name="ledger.setup_test", config=config)

        assert logger.level == logging.DEBUG
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert get_logger("ledger.setup_test") is logger

        logger.info("hello")
        logger.handlers[0].flush()
        assert json.loads(log_file.read_text().splitlines()[0])["message"] == "hello"
        logger.handlers[0].close()

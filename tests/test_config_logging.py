"""
Tests for configuration loading and structured logging
"""

import json
import logging

import pytest

from wallet_ledger import config as config_module
from wallet_ledger.config import WalletLedgerConfig, get_config, reload_config
from wallet_ledger.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    
    def test_defaults(self, monkeypatch):
        for name in ("WALLET_LEDGER_API_PORT", "WALLET_LEDGER_QUOTE_PROVIDER"):
            monkeypatch.delenv(name, raising=False)
        config = WalletLedgerConfig()
        assert config.api_port == 3001
        assert config.native_approval_window_ms == 30_000
        assert config.fiat_approval_window_ms == 60_000
        assert config.quote_provider == "skip"
    
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WALLET_LEDGER_API_PORT", "4000")
        monkeypatch.setenv("WALLET_LEDGER_QUOTE_PROVIDER", "fixed")
        monkeypatch.setenv("wallet_ledger_initial_balance", "5")
        
        config = WalletLedgerConfig()
        assert config.api_port == 4000
        assert config.quote_provider == "fixed"
        assert config.initial_balance == "5"
    
    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("WALLET_LEDGER_LOG_LEVEL", "DEBUG")
        try:
            reloaded = reload_config()
            assert reloaded.log_level == "DEBUG"
            assert get_config() is reloaded
        finally:
            config_module.config = original


class CapturingHandler(logging.Handler):
    
    def __init__(self):
        super().__init__()
        self.records = []
    
    def emit(self, record):
        self.records.append(record)


class TestLogging:
    
    def setup_method(self):
        self.logger = logging.getLogger("wallet_ledger.tests.capture")
        self.logger.setLevel(logging.INFO)
        self.handler = CapturingHandler()
        self.logger.addHandler(self.handler)
    
    def teardown_method(self):
        self.logger.removeHandler(self.handler)
    
    def test_log_action_attaches_structured_fields(self):
        log_action(
            self.logger, "info", "Transfer settled",
            action="execute_transfer", resource="transfer:1",
            correlation_id="req-1", extra={"amount": "2.0"}
        )
        
        record = self.handler.records[0]
        assert record.action == "execute_transfer"
        assert record.resource == "transfer:1"
        assert record.correlation_id == "req-1"
        assert record.extra == {"amount": "2.0"}
    
    def test_log_action_respects_level(self):
        log_action(self.logger, "debug", "noise", action="quote")
        assert self.handler.records == []
    
    def test_json_formatter(self):
        log_action(self.logger, "warning", "Transfer rejected", action="execute_transfer",
                   extra={"reason": "signature_invalid"})
        
        entry = json.loads(JSONFormatter().format(self.handler.records[0]))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "wallet_ledger.tests.capture"
        assert entry["message"] == "Transfer rejected"
        assert entry["action"] == "execute_transfer"
        assert entry["extra"] == {"reason": "signature_invalid"}
        assert "resource" not in entry
        assert "timestamp" in entry
    
    @pytest.mark.parametrize("log_format", ["json", "text"])
    def test_setup_logging(self, log_format):
        logger = setup_logging("warning", logger_name="wallet_ledger.tests.setup", log_format=log_format)
        setup_logging("warning", logger_name="wallet_ledger.tests.setup", log_format=log_format)
        
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter) == (log_format == "json")
        assert not logger.propagate

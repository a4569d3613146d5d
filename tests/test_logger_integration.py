"""
Integration tests for monitor/logger.py -- pipeline tags, chain context, console,
verbose file and ndjson output.
"""

import json
import logging
import os
import sys

import pytest

from monitor.logger import ConsoleFormatter, JSONFormatter, pipeline_of, setup_logging


def _record(name: str, level: int, msg: str, *args, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name, level=level, pathname="bridge.py", lineno=1,
        msg=msg, args=args, exc_info=exc_info,
    )
    record.__dict__.update(extra)
    return record


def _failed_record(name: str, exc: Exception) -> logging.LogRecord:
    try:
        raise exc
    except type(exc):
        return _record(name, logging.ERROR, "Error crediting deposit", exc_info=sys.exc_info())


@pytest.fixture(autouse=True)
def _reset_root():
    yield
    root = logging.getLogger()
    for h in root.handlers[:]:
        if isinstance(h, logging.FileHandler) or isinstance(h.formatter, ConsoleFormatter):
            h.close()
            root.removeHandler(h)


class TestJSONFormatter:
    def test_fields(self):
        line = JSONFormatter().format(
            _record("bridge.deposit_watcher", logging.INFO, "Deposit credited successfully: %s", "0xabc"),
        )
        parsed = json.loads(line)

        assert parsed["level"] == "INFO"
        assert parsed["pipeline"] == "deposit"
        assert parsed["logger"] == "bridge.deposit_watcher"
        assert parsed["msg"] == "Deposit credited successfully: 0xabc"
        assert "ts" in parsed
        assert "exception" not in parsed

    def test_chain_context_as_top_level_keys(self):
        parsed = json.loads(JSONFormatter().format(_record(
            "bridge.deposit_watcher", logging.ERROR, "Credit unconfirmed",
            tx_hash="0x" + "aa" * 32, credit_tx_hash="0x" + "cc" * 32, block_number=101,
        )))
        assert parsed["tx_hash"] == "0x" + "aa" * 32
        assert parsed["credit_tx_hash"] == "0x" + "cc" * 32
        assert parsed["block_number"] == 101
        assert "order_id" not in parsed

    def test_gateway_mint_record(self):
        parsed = json.loads(JSONFormatter().format(_record(
            "gateway.server", logging.ERROR, "ledger write failed", order_id="o5",
        )))
        assert parsed["pipeline"] == "gateway"
        assert parsed["order_id"] == "o5"

    def test_exception_type_and_message(self):
        parsed = json.loads(JSONFormatter().format(
            _failed_record("bridge.deposit_watcher", TimeoutError("receipt not found")),
        ))
        assert parsed["level"] == "ERROR"
        assert parsed["exception"] == "TimeoutError: receipt not found"

    def test_single_line(self):
        line = JSONFormatter().format(_record("run", logging.WARNING, "multi\nline"))
        assert "\n" not in line


class TestConsoleFormatter:
    def test_level_tags(self):
        formatter = ConsoleFormatter(use_color=False)
        assert " INF " in formatter.format(_record("run", logging.INFO, "Current block: %d", 42))
        assert " WRN " in formatter.format(_record("run", logging.WARNING, "slow RPC"))
        assert " CRT " in formatter.format(_record("run", logging.CRITICAL, "Invalid configuration"))

    def test_pipeline_column(self):
        output = ConsoleFormatter(use_color=False).format(
            _record("bridge.share_minter", logging.INFO, "Minting 3 YES shares"),
        )
        assert " mint " in output
        assert "share_minter" not in output
        assert output.endswith("Minting 3 YES shares")

    def test_exception_line_appended(self):
        output = ConsoleFormatter(use_color=False).format(
            _failed_record("bridge.credit_issuer", ConnectionError("rpc down")),
        )
        first, second = output.split("\n")
        assert "Error crediting deposit" in first
        assert second.strip() == "ConnectionError: rpc down"

    def test_no_color_env(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")
        output = ConsoleFormatter().format(_record("run", logging.INFO, "plain"))
        assert "\033[" not in output


class TestPipelines:
    @pytest.mark.parametrize("name, pipeline", [
        ("bridge.deposit_watcher", "deposit"),
        ("bridge.credit_issuer", "deposit"),
        ("bridge.share_minter", "mint"),
        ("gateway.server", "gateway"),
        ("uvicorn.error", "gateway"),
        ("client.kalshi", "venue"),
        ("client.chain", "chain"),
        ("state.ledger", "ledger"),
        ("__main__", "main"),
        ("web3.providers.async_rpc", "web3"),
    ])
    def test_logger_name_to_pipeline(self, name, pipeline):
        assert pipeline_of(name) == pipeline


class TestSetupLogging:
    def test_root_is_debug_console_respects_level(self, tmp_path):
        setup_logging("WARNING", log_dir=tmp_path)
        root = logging.getLogger()

        assert root.level == logging.DEBUG
        consoles = [
            h for h in root.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert len(consoles) == 1
        assert consoles[0].level == logging.WARNING
        assert isinstance(consoles[0].formatter, ConsoleFormatter)

    def test_verbose_log_file(self, tmp_path):
        log_path = setup_logging("ERROR", log_dir=tmp_path)

        assert os.path.dirname(log_path) == str(tmp_path)
        assert os.path.basename(log_path).startswith("bridge_")
        assert log_path.endswith(".log")

        logging.getLogger("bridge.deposit_watcher").debug("Blocks %d-%d: %d transfer log(s)", 10, 12, 1)
        for h in logging.getLogger().handlers:
            h.flush()
        with open(log_path) as f:
            assert "Blocks 10-12: 1 transfer log(s)" in f.read()

    def test_verbose_file_carries_pipeline_and_context(self, tmp_path):
        log_path = setup_logging("ERROR", log_dir=tmp_path)

        logging.getLogger("client.chain").info(
            "creditDeposit confirmed in block %d", 101,
            extra={"tx_hash": "0x" + "cc" * 32, "network": "arbitrum"},
        )
        for h in logging.getLogger().handlers:
            h.flush()
        with open(log_path) as f:
            line = f.read().strip().splitlines()[-1]

        assert " chain " in line
        assert line.endswith(f"tx_hash=0x{'cc' * 32} network=arbitrum")

    def test_creates_missing_log_dir(self, tmp_path):
        log_path = setup_logging("INFO", log_dir=tmp_path / "nested" / "logs")
        assert os.path.exists(log_path)

    def test_json_log_only_when_requested(self, tmp_path):
        setup_logging("INFO", log_dir=tmp_path)
        assert not any(isinstance(h.formatter, JSONFormatter) for h in logging.getLogger().handlers)

        json_path = tmp_path / "bridge.ndjson"
        setup_logging("INFO", json_log_file=str(json_path), log_dir=tmp_path)
        logging.getLogger("gateway.server").info("API server starting", extra={"network": "chiliz-spicy"})
        for h in logging.getLogger().handlers:
            h.flush()

        last = json.loads(json_path.read_text().splitlines()[-1])
        assert last["msg"] == "API server starting"
        assert last["pipeline"] == "gateway"
        assert last["network"] == "chiliz-spicy"

    def test_handlers_replaced_on_repeat_setup(self, tmp_path):
        setup_logging("INFO", log_dir=tmp_path)
        setup_logging("INFO", log_dir=tmp_path)
        consoles = [h for h in logging.getLogger().handlers if isinstance(h.formatter, ConsoleFormatter)]
        assert len(consoles) == 1

    def test_noisy_libraries_quieted(self, tmp_path):
        setup_logging("DEBUG", log_dir=tmp_path)
        for name in ("httpx", "web3", "uvicorn.access"):
            assert logging.getLogger(name).level == logging.WARNING

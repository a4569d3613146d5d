"""
Logging for the bridge process.

Every record is tagged with the pipeline it belongs to (deposit, mint,
gateway, venue, chain, ledger, main) and carries whatever chain context the
call site passed through `extra=` (tx_hash, credit_tx_hash, block_number,
order_id, network). Three outputs:
  - stderr: colored one-liners with a pipeline column
  - logs/bridge_YYYYMMDD_HHMMSS.log (always): debug level, context appended
  - optional ndjson file: one object per record, context as top-level keys,
    so a deposit can be followed from detection to credit by tx_hash
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_CYAN = "\033[36m"
_WHITE = "\033[37m"

_LEVEL_STYLES = {
    "DEBUG": (_DIM, "DBG"),
    "INFO": (_CYAN, "INF"),
    "WARNING": (_YELLOW, "WRN"),
    "ERROR": (_RED, "ERR"),
    "CRITICAL": (_RED + _BOLD, "CRT"),
}

# Logger name prefix -> pipeline. Longest prefix wins.
PIPELINES = {
    "bridge.deposit_watcher": "deposit",
    "bridge.credit_issuer": "deposit",
    "bridge.share_minter": "mint",
    "gateway": "gateway",
    "uvicorn": "gateway",
    "client.kalshi": "venue",
    "client.chain": "chain",
    "state": "ledger",
    "run": "main",
    "__main__": "main",
    "config": "main",
}

CONTEXT_FIELDS = ("tx_hash", "credit_tx_hash", "block_number", "order_id", "network")

_QUIET_LIBRARIES = ("httpx", "httpcore", "web3", "urllib3", "uvicorn.access", "asyncio")

DEFAULT_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"


def pipeline_of(name: str) -> str:
    """'bridge.share_minter' -> 'mint'; unknown loggers fall back to their top-level name."""
    parts = name.split(".")
    for i in range(len(parts), 0, -1):
        pipeline = PIPELINES.get(".".join(parts[:i]))
        if pipeline is not None:
            return pipeline
    return parts[0]


def record_context(record: logging.LogRecord) -> dict:
    return {
        field: getattr(record, field)
        for field in CONTEXT_FIELDS
        if getattr(record, field, None) not in (None, "")
    }


class PipelineFilter(logging.Filter):
    """Stamps `pipeline` and a ` key=value` context suffix for %-style formats."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.pipeline = pipeline_of(record.name)
        context = record_context(record)
        record.context = "".join(f" {k}={v}" for k, v in context.items())
        return True


class ConsoleFormatter(logging.Formatter):
    """Timestamp, color-coded level tag, pipeline column, message."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        color, tag = _LEVEL_STYLES.get(record.levelname, (_WHITE, "???"))
        pipeline = f"{pipeline_of(record.name):<7}"
        msg = record.getMessage()

        if self._use_color:
            line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} {_DIM}{pipeline}{_RESET} {msg}"
        else:
            line = f"{ts} {tag} {pipeline} {msg}"

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            detail = f"{type(exc).__name__}: {exc}"
            line += f"\n{_RED}     {detail}{_RESET}" if self._use_color else f"\n     {detail}"

        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line: pipeline, logger, message and chain context."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "pipeline": pipeline_of(record.name),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return json.dumps(entry, separators=(",", ":"), default=str)


def _verbose_file(log_dir: Path) -> logging.FileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    handler = logging.FileHandler(log_dir / f"bridge_{timestamp}.log", mode="a")
    handler.setLevel(logging.DEBUG)
    handler.addFilter(PipelineFilter())
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)-8s %(pipeline)-7s "
            "%(name)s:%(lineno)d - %(message)s%(context)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    return handler


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str | Path | None = None,
) -> str:
    """
    Replace the root handlers with console + verbose file (+ ndjson when
    json_log_file is set). Console honours `level`; the files get DEBUG.

    Returns the path to the verbose log file.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    verbose = _verbose_file(Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR)
    root.addHandler(verbose)

    if json_log_file:
        ndjson = logging.FileHandler(json_log_file, mode="a")
        ndjson.setFormatter(JSONFormatter())
        root.addHandler(ndjson)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return verbose.baseFilename


def _supports_color() -> bool:
    """Check if stderr supports ANSI color."""
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()

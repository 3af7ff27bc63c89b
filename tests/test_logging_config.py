"""
Brief: Tests for airdecoy.config.logging_config.init_logging and formatters.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import logging.handlers
from pathlib import Path

import pytest

from airdecoy.config.logging_config import (
    BracketLevelFormatter,
    SyslogFormatter,
    init_logging,
    parse_level,
)


@pytest.fixture(autouse=True)
def _reset_named_loggers():
    yield
    logging.getLogger("airdecoy.transport").setLevel(logging.NOTSET)
    logging.captureWarnings(False)


def _record(level=logging.WARNING, msg="hello %s", args=("world",)):
    return logging.LogRecord("airdecoy.test", level, __file__, 1, msg, args, None)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("debug", logging.DEBUG),
        ("WARN", logging.WARNING),
        ("crit", logging.CRITICAL),
        (None, logging.INFO),
        ("loud", logging.INFO),
    ],
)
def test_parse_level(value, expected):
    """
    Brief: Level names map case-insensitively; unknown names use the default.

    Inputs:
      - value: level name
      - expected: logging constant

    Outputs:
      - None
    """
    assert parse_level(value) == expected


def test_bracket_formatter_tags_and_utc_time():
    """
    Brief: Records carry a bracketed level tag and a Z-suffixed timestamp.

    Inputs:
      - None

    Outputs:
      - None
    """
    fmt = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")
    rec = _record()
    rec.created = 0
    assert fmt.format(rec) == "1970-01-01T00:00:00Z [warn] airdecoy.test: hello world"


def test_syslog_formatter_prefixes_tag():
    """
    Brief: Syslog lines start with the program tag and omit timestamps.

    Inputs:
      - None

    Outputs:
      - None
    """
    out = SyslogFormatter(tag="decoy").format(_record(logging.ERROR))
    assert out == "decoy: [error] airdecoy.test: hello world"


def test_init_logging_file_handler_writes(tmp_path):
    """
    Brief: init_logging creates missing directories and writes formatted lines.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None
    """
    log_path = tmp_path / "logs" / "airdecoy.log"
    init_logging({"level": "info", "stderr": False, "file": str(log_path)})
    root = logging.getLogger()
    assert not any(type(h) is logging.StreamHandler for h in root.handlers)
    logging.getLogger("airdecoy.test").info("file message")
    logging.getLogger("airdecoy.test").debug("hidden")
    for h in root.handlers:
        h.flush()
    content = Path(log_path).read_text()
    assert "[info] airdecoy.test: file message" in content
    assert "hidden" not in content
    for h in list(root.handlers):
        h.close()


def test_per_logger_overrides():
    """
    Brief: `loggers` raises or lowers individual module levels.

    Inputs:
      - None

    Outputs:
      - None
    """
    init_logging({"level": "warn", "stderr": False, "loggers": {"airdecoy.transport": "debug"}})
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("airdecoy.transport").level == logging.DEBUG


def test_init_logging_syslog_dict(monkeypatch):
    """
    Brief: A syslog mapping selects address, facility and tag.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    created = {}

    class DummySysLogHandler(logging.Handler):
        LOG_USER = 8
        LOG_DAEMON = 24

        def __init__(self, address=None, facility=None):
            super().__init__()
            created["address"] = address
            created["facility"] = facility

        def emit(self, record):
            created["line"] = self.format(record)

    monkeypatch.setattr(logging.handlers, "SysLogHandler", DummySysLogHandler)
    init_logging(
        {
            "stderr": False,
            "syslog": {"address": ["127.0.0.1", 514], "facility": "daemon", "tag": "decoy"},
        }
    )
    logging.getLogger("airdecoy.test").warning("to syslog")
    assert created["address"] == ("127.0.0.1", 514)
    assert created["facility"] == 24
    assert created["line"] == "decoy: [warn] airdecoy.test: to syslog"

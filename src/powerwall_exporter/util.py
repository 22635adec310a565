import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any

# create logger
CONSOLE: logging.Logger = logging.getLogger("PowerwallExporter")
# Set parent to lowest level to allow messages passed to all handlers using their own level
CONSOLE.setLevel(logging.DEBUG)

# create console handler and set level to info
ch = logging.StreamHandler()
# This can be changed to DEBUG if more messages should be printed to console
if os.environ.get("POWERWALL_EXPORTER_DEBUG") == "1":
    ch.setLevel(logging.DEBUG)
else:
    ch.setLevel(logging.INFO)
CONSOLE.addHandler(ch)

LOG_STYLES = ("text", "logfmt", "json")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _fields(record: logging.LogRecord) -> dict:
    return getattr(record, "fields", None) or {}


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).astimezone().isoformat(timespec="seconds")


def _logfmt_value(value: Any) -> str:
    text = str(value)
    if text == "" or any(c in text for c in ' ="'):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


class TextFormatter(logging.Formatter):
    """Human readable lines with the structured fields appended."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{_timestamp(record)} {record.levelname:<8} {record.getMessage()}"
        fields = _fields(record)
        if fields:
            line += "  " + " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class LogfmtFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        pairs = {
            "time": _timestamp(record),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        pairs.update(_fields(record))
        if record.exc_info:
            pairs["exc"] = self.formatException(record.exc_info)
        return " ".join(f"{k}={_logfmt_value(v)}" for k, v in pairs.items())


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": _timestamp(record),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_FORMATTERS = {
    "text": TextFormatter,
    "logfmt": LogfmtFormatter,
    "json": JsonFormatter,
}


def setup_logging(debug: bool = False, style: str = "text") -> logging.Logger:
    """Apply the command line logging options to the console handler."""
    if style not in _FORMATTERS:
        raise ValueError(f"Unknown log style {style!r}, expected one of {', '.join(LOG_STYLES)}")
    ch.setFormatter(_FORMATTERS[style]())
    if debug:
        ch.setLevel(logging.DEBUG)
    return CONSOLE


def parse_duration(value: Any) -> float:
    """Convert a duration like '1s', '1m30s', '29h8m37.88s' or a plain number to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")
    text = value.strip()
    if not text:
        raise ValueError("Invalid duration: empty string")
    try:
        return float(text)
    except ValueError:
        pass

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return sign * total

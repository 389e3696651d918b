"""
llama-session :: Structured Logging

Everything logs under the "llama_session" namespace:

  llama_session.session     load / close, per-request lines
  llama_session.loader      file parsing
  llama_session.tokenizer   sidecar selection
  llama_session.backend     device / thread setup
  llama_session.mlock       memory locking
  llama_session.async       asyncio front

setup_logging() attaches one console handler (JSON or human) and an
optional JSON file handler. Records may carry `request_id` and an
`extra_data` dict; both formatters render them.

INL - 2025
"""

import json
import logging
import sys
from typing import Any, Dict, Optional

ROOT_LOGGER = "llama_session"

# Marks handlers installed by setup_logging() so a second call replaces only those
_OWNED = "_llama_session_handler"


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if getattr(record, "request_id", None) is not None:
        fields["request_id"] = record.request_id
    fields.update(getattr(record, "extra_data", None) or {})
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_fields(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """`12:00:01 [   INFO] session: model loaded n_ctx=512 [req=3]`"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:>7}]"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        source = record.name[len(ROOT_LOGGER) + 1:] if record.name.startswith(ROOT_LOGGER + ".") else record.name

        fields = _fields(record)
        request_id = fields.pop("request_id", None)
        line = f"{self.formatTime(record, '%H:%M:%S')} {level} {source}: {record.getMessage()}"
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if request_id is not None:
            line += f" [req={request_id}]"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the llama_session logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines on stderr instead of the human format
        log_file: also append JSON lines to this file
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in [h for h in logger.handlers if getattr(h, _OWNED, False)]:
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter(use_color=sys.stderr.isatty()))
    handlers = [console]
    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        handlers.append(fh)

    for handler in handlers:
        setattr(handler, _OWNED, True)
        logger.addHandler(handler)
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


class RequestLogger:
    """
    Logger bound to one generation request.

    INFO lines are written only when `verbose` is set (the session's
    enable_logging flag). Warnings and errors always go through.
    """

    def __init__(self, request_id: int, logger: Optional[logging.Logger] = None, verbose: bool = True):
        self.request_id = request_id
        self.logger = logger or get_logger()
        self.verbose = verbose

    def _log(self, level: int, msg: str, fields: Dict[str, Any]):
        self.logger.log(level, msg, extra={"request_id": self.request_id, "extra_data": fields})

    def info(self, msg: str, **fields):
        if self.verbose:
            self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields):
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields):
        self._log(logging.ERROR, msg, fields)

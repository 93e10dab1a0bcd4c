"""
Structured JSON Logging
=======================
One JSON line per log record, so a deploy run can be piped into jq or
shipped to CloudWatch Logs Insights and queried by field:

    fields @timestamp, logical_id, state
    | filter deployment = "urlshortener" and level = "ERROR"

Usage:
  from shared.logger import bind, get_logger
  logger = get_logger(__name__)
  log = bind(logger, deployment="urlshortener", correlation_id="3f2a...")
  log.info("Node provisioned", extra={"logical_id": "Table", "kind": "DataStore"})

Output:
  {"timestamp":"2026-01-01T00:00:00.125Z","level":"INFO","service":"provisioner.executor",
   "message":"Node provisioned","deployment":"urlshortener","correlation_id":"3f2a...",
   "logical_id":"Table","kind":"DataStore"}
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

# Attributes every LogRecord carries; anything else arrived through `extra`.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}

# SDK loggers are chatty at INFO (credential discovery, retries, connection pools).
_QUIET_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer")

_handler: logging.Handler | None = None


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        seconds = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
        line: dict[str, Any] = {
            "timestamp": f"{seconds}.{int(record.msecs):03d}Z",
            "level": record.levelname,
            "service": record.name,
            "message": record.getMessage(),
        }
        line.update((k, v) for k, v in vars(record).items() if k not in _RECORD_ATTRIBUTES)

        if record.exc_info:
            line["error_type"] = record.exc_info[0].__name__
            line["exception"] = self.formatException(record.exc_info)

        return json.dumps(line, default=str)


def configure_logging(level: str | None = None) -> None:
    """
    Install the JSON formatter on the root logger and set its level.

    The level comes from the argument, else LOG_LEVEL, else INFO. Calling
    again only changes the level.
    """
    global _handler
    root = logging.getLogger()
    if _handler is None:
        formatter = _JsonFormatter()
        for existing in root.handlers:
            existing.setFormatter(formatter)
        if not root.handlers:
            root.addHandler(logging.StreamHandler())
            root.handlers[0].setFormatter(formatter)
        _handler = root.handlers[0]
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, name, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    if _handler is None:
        configure_logging()
    return logging.getLogger(name)


class _BoundLogger(logging.LoggerAdapter):
    """Merges the bound fields into every call's `extra`."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def bind(logger: logging.Logger | logging.LoggerAdapter, **fields: Any) -> logging.LoggerAdapter:
    if isinstance(logger, _BoundLogger):
        return _BoundLogger(logger.logger, {**logger.extra, **fields})
    return _BoundLogger(logger, fields)

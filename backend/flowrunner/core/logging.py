# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Structured logging for flowrunner.

Every engine log line can carry the workflow, execution and node it is
about. Loggers from get_engine_logger() are bound to those ids once, and
the formatters put them in front of everything else.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple, Union
from pathlib import Path


# Ids that identify what a log line is about, in output order
CONTEXT_FIELDS = ("workflow_id", "execution_id", "node_id")

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName",
    "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName",
])


def _record_fields(record: logging.LogRecord) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a record's extra fields into engine context and everything else"""
    context = {}
    extra = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS:
            continue
        if key in CONTEXT_FIELDS:
            if value is not None:
                context[key] = value
        else:
            extra[key] = value
    ordered = {key: context[key] for key in CONTEXT_FIELDS if key in context}
    return ordered, extra


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Field order: timestamp, level, logger, engine ids, message, then any
    other `extra` fields and the exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        context, extra = _record_fields(record)

        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        log_data.update(context)
        log_data["message"] = record.getMessage()
        log_data.update(extra)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; engine ids are appended in brackets."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context, _ = _record_fields(record)
        if not context:
            return line

        ids = " ".join(f"{key}={value}" for key, value in context.items())
        head, newline, rest = line.partition("\n")
        return f"{head} [{ids}]{newline}{rest}"


class EngineLogger(logging.LoggerAdapter):
    """
    Logger bound to engine ids.

    Bound ids are merged into every call's `extra`; ids passed to the call
    itself win.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = dict(self.extra, **(kwargs.get("extra") or {}))
        return msg, kwargs

    def bind(self, **context: Any) -> "EngineLogger":
        """Same logger with more ids bound"""
        return EngineLogger(self.logger, dict(self.extra, **context))


def get_logger(
    name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Get configured logger instance.

    Args:
        name: Logger name (usually flowrunner.<component>)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Format type (json or text)
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_event(
    logger: Union[logging.Logger, logging.LoggerAdapter],
    event: str,
    level: str = "INFO",
    **kwargs: Any
) -> None:
    """Log a named event; keyword arguments become structured fields"""
    log_func = getattr(logger, level.lower())
    log_func(event, extra=kwargs)


def get_engine_logger(component: str, config=None, **context: Any) -> EngineLogger:
    """
    Logger for an engine component (execution, coordinator, store, ...).

    Level and format come from `config` (the global config when omitted).
    Keyword arguments are ids bound to every line, e.g.
    get_engine_logger("coordinator", execution_id=...).
    """
    if config is None:
        from flowrunner.core.config import get_config
        config = get_config()
    logger = get_logger(
        f"flowrunner.{component}",
        log_level=config.log_level,
        log_format=config.log_format
    )
    return EngineLogger(logger, context)

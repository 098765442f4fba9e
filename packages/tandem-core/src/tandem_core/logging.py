from __future__ import annotations

import json
import logging
import sys
from typing import TextIO

# Attributes attached through ``extra=`` by the engine and provider runtime.
CONTEXT_FIELDS = ("run_id", "agent_id", "provider_id", "session_key")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, including any run context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends ``[run=... agent=...]`` when present."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = " ".join(
            f"{name.split('_')[0]}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        return f"{text} [{context}]" if context else text


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure and return the root tandem logger.

    Idempotent: a logger that already has handlers is returned untouched.
    """
    logger = logging.getLogger("tandem")

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(ContextFormatter(
            "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))

    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger under the tandem namespace."""
    return logging.getLogger(f"tandem.{name}")

"""Structured logging via structlog.

Workers, the queue and the coordinator log events (``job_leased``,
``job_nacked``, ``evaluation_finalized``) with key/value context so runs with
tens of thousands of jobs stay greppable by job_id / evaluation_id.
"""
from __future__ import annotations

import logging
import os
import sys

import structlog


def _supports_colour() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    return sys.stderr.isatty()


def init_logger(level: str | None = None, *, json_output: bool = False) -> None:
    """Configure structlog on top of stdlib logging (stderr sink)."""
    level_name = (level or os.environ.get("ASSESSOR_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level_name, logging.INFO),
        force=True,
    )

    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=_supports_colour()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)

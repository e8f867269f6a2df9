"""
structlog setup for the guard.

Every line is one JSON object on stderr (stdout stays free for CLI output)
carrying event_type, level, an ISO timestamp, the emitting module and, for
transfer events, recipient / amount / asset. LOG_LEVEL and LOG_FORMAT
(json or console) are read once at import.

This module imports nothing from ckb_transfer_guard so any module can log.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()

NATIVE_ASSET_LABEL = "native"


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Store the event name under event_type and mirror it into message."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "message" not in event_dict and "event_type" in event_dict:
        event_dict["message"] = str(event_dict["event_type"])
    return event_dict


def _stringify_amount(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Amounts can exceed 2**53; render as strings so JSON consumers keep precision."""
    amount = event_dict.get("amount")
    if isinstance(amount, int) and not isinstance(amount, bool):
        event_dict["amount"] = str(amount)
    return event_dict


def _renderer() -> Any:
    if LOG_FORMAT == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            _normalize_event,
            _stringify_amount,
            _renderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVEL_VALUE),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Logger for a module; the event name goes first, context as keywords:

        logger = get_logger(__name__)
        logger.warning("ledger_query_inconclusive", recipient=addr, error=str(e))
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_transfer(recipient: str, amount: int, asset: str | None = None) -> structlog.BoundLogger:
    """Logger with the transfer tuple bound; a missing asset is logged as native."""
    return get_logger("ckb_transfer_guard").bind(
        recipient=recipient,
        amount=amount,
        asset=asset or NATIVE_ASSET_LABEL,
    )

"""
Structured logging for the transfer guard.

JSON logs with timestamp, event_type and transfer context (recipient, amount, asset).
"""

from ckb_transfer_guard.guard_logging.logger import bind_transfer, get_logger

__all__ = ["bind_transfer", "get_logger"]

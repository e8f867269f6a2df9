#!/usr/bin/env python3
"""
Operator tool for the local transfer log.

Lists records, shows stuck pending transfers, resolves a pending record by
hand after checking the chain, and prunes old terminal records (retention is
an operator decision; the guard itself never deletes).

Usage:
  python -m ckb_transfer_guard.tools.transfer_log list [--status pending] [--recipient ckt1...]
  python -m ckb_transfer_guard.tools.transfer_log pending [--older-than-sec 600]
  python -m ckb_transfer_guard.tools.transfer_log resolve 42 confirmed --identifier 0x...
  python -m ckb_transfer_guard.tools.transfer_log prune --older-than-days 30

Env: TRANSFER_GUARD_DB_PATH (overridden by --db).
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from ckb_transfer_guard.config import get_settings
from ckb_transfer_guard.core.exceptions import TransferGuardError
from ckb_transfer_guard.database import TransferLog, TransferStatus, get_transfer_log
from ckb_transfer_guard.guard import TransferGuard
from ckb_transfer_guard.guard_logging import get_logger

logger = get_logger(__name__)

DEFAULT_LIST_LIMIT = 100
SECONDS_PER_DAY = 24 * 60 * 60


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True))


def _cmd_list(log: TransferLog, args: argparse.Namespace) -> int:
    status = TransferStatus(args.status) if args.status else None
    records = log.list_records(status=status, recipient=args.recipient, limit=args.limit)
    for record in records:
        _emit(record.to_dict())
    return 0


def _cmd_pending(log: TransferLog, args: argparse.Namespace) -> int:
    now_ts = int(time.time())
    records = log.list_pending(created_before=now_ts - args.older_than_sec + 1, limit=args.limit)
    for record in records:
        payload = record.to_dict()
        payload["age_sec"] = now_ts - record.created_at
        _emit(payload)
    return 0


def _cmd_resolve(log: TransferLog, args: argparse.Namespace) -> int:
    guard = TransferGuard(log, settings=get_settings())
    record = guard.resolve(
        args.record_id,
        args.status,
        identifier=args.identifier,
        error=args.error,
    )
    _emit(record.to_dict())
    return 0


def _cmd_prune(log: TransferLog, args: argparse.Namespace) -> int:
    if args.older_than_days <= 0:
        print("ERROR: --older-than-days must be positive", file=sys.stderr)
        return 1
    before_ts = int(time.time()) - args.older_than_days * SECONDS_PER_DAY
    deleted = log.prune(before_ts)
    _emit({"deleted": deleted, "before_ts": before_ts})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect and maintain the local transfer log.",
    )
    parser.add_argument("--db", type=Path, default=None, help="SQLite transfer log (default: TRANSFER_GUARD_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="List records, newest first")
    p_list.add_argument("--status", choices=[s.value for s in TransferStatus], default=None)
    p_list.add_argument("--recipient", default=None)
    p_list.add_argument("--limit", type=int, default=DEFAULT_LIST_LIMIT, help=f"Max records (default: {DEFAULT_LIST_LIMIT})")
    p_list.set_defaults(func=_cmd_list)

    p_pending = sub.add_parser("pending", help="List pending records (ambiguous or in-flight transfers)")
    p_pending.add_argument("--older-than-sec", type=int, default=0, help="Only records at least this old")
    p_pending.add_argument("--limit", type=int, default=DEFAULT_LIST_LIMIT)
    p_pending.set_defaults(func=_cmd_pending)

    p_resolve = sub.add_parser("resolve", help="Move a pending record to confirmed or failed")
    p_resolve.add_argument("record_id", type=int)
    p_resolve.add_argument("status", choices=[TransferStatus.CONFIRMED.value, TransferStatus.FAILED.value])
    p_resolve.add_argument("--identifier", default=None, help="Transaction hash seen on chain")
    p_resolve.add_argument("--error", default=None, help="Failure note for failed records")
    p_resolve.set_defaults(func=_cmd_resolve)

    p_prune = sub.add_parser("prune", help="Delete confirmed/failed records older than N days")
    p_prune.add_argument("--older-than-days", type=int, required=True)
    p_prune.set_defaults(func=_cmd_prune)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    db_path = args.db or get_settings().db_path
    try:
        log = get_transfer_log(db_path)
        return args.func(log, args)
    except TransferGuardError as e:
        logger.error("transfer_log_tool_failed", command=args.command, code=e.code, error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""civicrepair CLI — operator commands for the ledger mirror.

Usage:
    python -m civicrepair.cli status
    python -m civicrepair.cli intents --status failed --page 1
    python -m civicrepair.cli dead-letters
    python -m civicrepair.cli replay --timeout 30
    python -m civicrepair.cli price --amount 500
"""

from __future__ import annotations

import argparse
import json
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

from civicrepair.models.identity import Principal, Role
from civicrepair.models.ledger import IntentStatus
from civicrepair.policy.resolver import DEFAULT_CONFIG_DIR
from civicrepair.service import CivicRepairService, ServiceResult
from civicrepair.telemetry import setup_logging


DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"
OPERATOR = Principal("cli-operator", frozenset({Role.ADMIN}))


def _make_service(args: argparse.Namespace) -> CivicRepairService:
    """Service backed by the JSONL logs in the data directory."""
    service = CivicRepairService.from_env(
        config_dir=args.config,
        env_file=args.env_file,
        data_dir=args.data,
    )
    service.reconciler.resume()
    return service


def _emit(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    try:
        return _emit(service.ledger_status())
    finally:
        service.shutdown(args.timeout)


def cmd_intents(args: argparse.Namespace) -> int:
    service = _make_service(args)
    try:
        status = IntentStatus(args.status) if args.status else None
        return _emit(service.list_intents(
            status=status,
            reference=args.reference,
            page=args.page,
            page_size=args.page_size,
        ))
    finally:
        service.shutdown(args.timeout)


def cmd_dead_letters(args: argparse.Namespace) -> int:
    service = _make_service(args)
    try:
        return _emit(service.dead_letters())
    finally:
        service.shutdown(args.timeout)


def cmd_replay(args: argparse.Namespace) -> int:
    """Re-enqueue dead-lettered intents and wait for the worker to drain."""
    service = _make_service(args)
    try:
        result = service.replay_dead_letters(OPERATOR)
        if result.success and not service.reconciler.flush(args.timeout):
            print("Timed out waiting for replayed intents", file=sys.stderr)
            return 1
        return _emit(result)
    finally:
        service.shutdown(args.timeout)


def cmd_price(args: argparse.Namespace) -> int:
    service = _make_service(args)
    try:
        result = service.ledger_status()
        if not result.success:
            return _emit(result)
        ledger = result.data["ledger"]
        out = {
            "fiat_per_token": ledger["fiat_per_token"],
            "is_fallback": ledger["price_is_fallback"],
        }
        if args.amount is not None:
            try:
                fiat = Decimal(args.amount)
            except InvalidOperation:
                print(f"Not a number: {args.amount}", file=sys.stderr)
                return 1
            out["amount_fiat"] = str(fiat)
            out["amount_tokens"] = str(service.oracle.to_token(fiat))
        print(json.dumps(out, indent=2))
        return 0
    finally:
        service.shutdown(args.timeout)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="civicrepair",
        description="Civic repair coordination engine — ledger mirror operations",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Directory holding events.jsonl and intents.jsonl (default: data/)",
    )
    parser.add_argument("--env-file", type=Path, help="Optional .env with ledger settings")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument(
        "--timeout", type=float, default=30.0,
        help="Seconds to wait for the reconciliation worker (default: 30)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show ledger connectivity and intent counts")

    # intents
    p_int = sub.add_parser("intents", help="List mirrored intents")
    p_int.add_argument("--status", choices=[s.value for s in IntentStatus])
    p_int.add_argument("--reference", help="Filter by a referenced entity ID")
    p_int.add_argument("--page", type=int, default=1)
    p_int.add_argument("--page-size", type=int, default=None)

    # dead-letters
    sub.add_parser("dead-letters", help="List intents that exhausted their retries")

    # replay
    sub.add_parser("replay", help="Replay dead-lettered intents")

    # price
    p_price = sub.add_parser("price", help="Show the fiat/token rate")
    p_price.add_argument("--amount", help="Fiat amount to convert (Decimal)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(args.log_level)

    commands = {
        "status": cmd_status,
        "intents": cmd_intents,
        "dead-letters": cmd_dead_letters,
        "replay": cmd_replay,
        "price": cmd_price,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())

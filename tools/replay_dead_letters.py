#!/usr/bin/env python3
"""Replay dead-lettered ledger intents against the configured ledger.

Reads data/intents.jsonl, re-enqueues every intent that exhausted its
retries as a fresh intent, waits for the reconciliation worker to drain
and prints what landed.

Usage:
    python3 tools/replay_dead_letters.py
    python3 tools/replay_dead_letters.py --timeout 120

Requires:
    CIVIC_LEDGER_RPC_URL, CIVIC_LEDGER_PRIVATE_KEY and
    CIVIC_LEDGER_CONTRACT in a .env file at the project root.
"""

import argparse
import os
import sys
from pathlib import Path

# Add src to path for civicrepair imports
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from dotenv import load_dotenv
from civicrepair.models.identity import Principal, Role
from civicrepair.models.ledger import IntentStatus
from civicrepair.service import CivicRepairService
from civicrepair.telemetry import setup_logging

# ------------------------------------------------------------------ #
# Configuration                                                       #
# ------------------------------------------------------------------ #

parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
parser.add_argument("--timeout", type=float, default=60.0)
parser.add_argument("--data", type=Path, default=ROOT / "data")
args = parser.parse_args()

load_dotenv(ROOT / ".env")
setup_logging(os.getenv("CIVIC_LOG_LEVEL", "INFO"))

if not os.getenv("CIVIC_LEDGER_RPC_URL") or not os.getenv("CIVIC_LEDGER_PRIVATE_KEY"):
    print("ERROR: Missing CIVIC_LEDGER_RPC_URL and/or CIVIC_LEDGER_PRIVATE_KEY in .env")
    sys.exit(1)

if not (args.data / "intents.jsonl").exists():
    print(f"ERROR: No intent log at {args.data / 'intents.jsonl'}")
    sys.exit(1)

service = CivicRepairService.from_env(data_dir=args.data)
operator = Principal("replay-tool", frozenset({Role.ADMIN}))

# ------------------------------------------------------------------ #
# Replay                                                              #
# ------------------------------------------------------------------ #

dead = service.dead_letters().data["intents"]
print("=" * 60)
print(f"DEAD LETTERS: {len(dead)}")
print("=" * 60)
if not dead:
    service.shutdown()
    sys.exit(0)

result = service.replay_dead_letters(operator)
replayed = result.data.get("replayed", [])
drained = service.reconciler.flush(args.timeout)

# ------------------------------------------------------------------ #
# Report                                                              #
# ------------------------------------------------------------------ #

log = service.reconciler.intent_log
landed = 0
for intent_id in replayed:
    intent = log.get(intent_id)
    tx = intent.tx_hash or "-"
    print(f"  {intent.intent_id}  {intent.operation.value:<22} {intent.status.value:<10} {tx}")
    if intent.status == IntentStatus.COMPLETED and not intent.simulated:
        landed += 1

print()
print(f"  Replayed: {len(replayed)}  Landed: {landed}  Drained: {drained}")
service.shutdown()
sys.exit(0 if drained and landed == len(replayed) else 1)

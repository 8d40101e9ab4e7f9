#!/usr/bin/env python3
"""
verify_audit.py — Verify the tapgate handshake audit log (JSONL, hash-chained).

Checks:
- every line parses as a JSON object
- prev_hash/hash linkage from the genesis hash
- optional state file matches the last hash

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tapgate.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, chain_hash


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def verify_audit(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    if not log_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {log_path}")

    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    with log_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            lines += 1
            try:
                event = json.loads(line)
            except ValueError as e:
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: JSON root must be object")

            if event.get("prev_hash") != prev:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: prev_hash mismatch: expected {prev} got {event.get('prev_hash')}"
                )

            expect = chain_hash(prev, event)
            if event.get("hash") != expect:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: hash mismatch: expected {expect} got {event.get('hash')}"
                )

            prev = last_hash = expect

    if state_path is not None:
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify tapgate handshake audit log integrity.")
    p.add_argument(
        "audit_dir",
        type=Path,
        help=f"Directory holding {LOG_NAME} and {STATE_NAME} (AUDIT_DIR)",
    )
    p.add_argument(
        "--no-state",
        action="store_true",
        help="Skip comparing the state file with the last log hash.",
    )
    args = p.parse_args(argv)

    state = None if args.no_state else args.audit_dir / STATE_NAME
    res = verify_audit(args.audit_dir / LOG_NAME, state_path=state)

    if res.ok:
        print("OK")
        print(f"lines={res.lines}")
        if res.last_hash:
            print(f"last_hash={res.last_hash}")
        return 0

    print("FAIL", file=sys.stderr)
    print(res.message, file=sys.stderr)
    print(f"lines={res.lines}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())

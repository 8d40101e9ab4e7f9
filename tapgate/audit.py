"""
tapgate/audit.py

Tamper-evident handshake audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <audit_dir>/handshake_audit.state
- Uses file locking (flock) to keep the chain consistent across workers.

Raw tokens are never written; only their SHA3-256 and length.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional


log = logging.getLogger(__name__)

LOG_NAME = "handshake_audit.jsonl"
STATE_NAME = "handshake_audit.state"
LOCK_NAME = "handshake_audit.lock"

GENESIS_HASH = "0" * 64  # 32 bytes hex


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    """Next chain hash for an event (chain fields are ignored)."""
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


# -----------------------------------------------------------------------------
# Audit log
# -----------------------------------------------------------------------------
class AuditLog:
    """
    Append-only, hash-chained JSONL log in ``directory``.

    :param directory: Where the log, state and lock files live.
    :param enabled: When False, append() is a no-op.
    """

    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return self.directory / LOG_NAME

    @property
    def state_path(self) -> Path:
        return self.directory / STATE_NAME

    @property
    def lock_path(self) -> Path:
        return self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty/garbage.
        """
        try:
            s = self.state_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return GENESIS_HASH
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining and return its hash.

        - locks the lock file
        - reads prev hash
        - computes next hash over the canonical event (excluding hash fields)
        - writes the JSONL line containing prev_hash + hash
        - updates the state file
        """
        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # callers never get to inject their own chain fields
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)
                next_hash = chain_hash(prev_hash, e)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def record(self, event: Dict[str, Any]) -> None:
        """
        append() for request handlers: an unwritable audit dir must not turn
        a handshake decision into a 500, so failures are logged instead.
        """
        try:
            self.append(event)
        except OSError:
            log.exception("audit append failed (event=%s)", event.get("event"))

    def verify_chain(self) -> bool:
        return verify_log_chain(self.log_path)


def build_common(
    *,
    event: str,
    tag: Optional[str] = None,
    reason: Optional[str] = None,
    token: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    ts: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.

    Tokens are bearer credentials, so only their hash/length are stored.
    ts defaults to wall-clock seconds; the app passes its handshake clock.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()) if ts is None else int(ts),
        "event": event,
    }

    if tag:
        out["tag"] = tag
    if reason:
        out["reason"] = reason
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if token:
        raw = token.encode("utf-8")
        out["token_len"] = len(raw)
        out["token_sha3_256"] = sha3_256_hex(raw)

    return out


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except ValueError:
                return False
            if not isinstance(obj, dict):
                return False

            if obj.get("prev_hash") != prev:
                return False
            if chain_hash(prev, obj) != obj.get("hash"):
                return False

            prev = obj["hash"]

    return True


def last_chain_hash(path: Path) -> Optional[str]:
    """Hash of the final line, or None for an empty/missing log."""
    if not path.exists():
        return None
    last = None
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if raw_line:
                last = raw_line
    if last is None:
        return None
    return json.loads(last.decode("utf-8")).get("hash")

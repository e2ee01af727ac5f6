"""
idlogin/audit.py

Security telemetry for the identity lifecycle and login handshake.

Events go to <dir>/identity_audit.jsonl, one canonical JSON object per line,
chained with SHA3-256 so that the file can be checked offline:

  hash_0 = GENESIS_HASH
  hash_n = SHA3-256( raw(hash_{n-1}) + canonical(event_n) )

canonical() sorts keys and drops the prev_hash/hash fields themselves.
Editing, removing or swapping any line changes every later hash; cutting
lines off the end is caught by comparing with <dir>/identity_audit.state.

Writers serialize on an flock'd lock file, so several worker processes can
share one directory.

Events never carry secrets: keys are referenced by SPKI digest, tokens by
their SHA3-256 hash.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl


GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "identity_audit.jsonl"
STATE_NAME = "identity_audit.state"
LOCK_NAME = "identity_audit.lock"


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    # sorted keys, no whitespace, UTF-8
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def _strip_chain(event: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in event.items() if k not in ("prev_hash", "hash")}


def _chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    return _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(_strip_chain(event)))


def build_event(
    action: str,
    result: str,
    *,
    reason: Optional[str] = None,
    spki_sha256: Optional[str] = None,
    callback: Optional[str] = None,
    token: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """
    Build one audit event. Keep this "boring" and stable.

    Note:
    - tokens are stored as length + SHA3-256, never verbatim
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "action": action,
        "result": result,
    }

    if reason:
        out["reason"] = reason
    if spki_sha256:
        out["spki_sha256"] = spki_sha256
    if callback:
        out["callback"] = callback
    if token is not None:
        out["token_len"] = len(token)
        out["token_sha3_256"] = _sha3_256_hex(token.encode("utf-8"))
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    out.update(extra)
    return out


class AuditLog:
    """Hash-chained JSONL log rooted in one directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        # caller holds the lock; a missing or garbled state restarts at genesis
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        return s if _is_hex64(s) else GENESIS_HASH

    def _write_last_hash_unlocked(self, h: str) -> None:
        self.state_path.write_text(h + "\n", encoding="utf-8")

    def append_event(self, event: Dict[str, Any]) -> str:
        """Chain and append one event under the directory lock; return its hash."""
        self.directory.mkdir(parents=True, exist_ok=True)

        # prev_hash/hash supplied by the caller are dropped, never trusted
        body = _strip_chain(event)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()
                h = _chain_hash(prev_hash, body)
                line = _canonical_json_bytes(dict(body, prev_hash=prev_hash, hash=h))

                with open(self.log_path, "ab") as f:
                    f.write(line + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self._write_last_hash_unlocked(h)
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return h

    def record(self, action: str, result: str, **fields: Any) -> str:
        return self.append_event(build_event(action, result, **fields))

    def verify_chain(self, check_state: bool = True) -> bool:
        """True when the chain (and, if asked, the state file) checks out."""
        if not self.log_path.exists():
            return True

        state = self.state_path if check_state and self.state_path.exists() else None
        return verify_log(self.log_path, state).ok


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def verify_log(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    """
    Walk a log file line by line and recompute the chain.

    Verifies:
    - every line is a JSON object with 64-hex prev_hash/hash
    - prev_hash links to the previous line (GENESIS_HASH for the first)
    - hash matches the recomputed value
    - the state file (if given) holds the last hash
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {log_path}")

    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    with open(log_path, "rb") as f:
        for lineno, raw_line in enumerate(f, start=1):
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            lines += 1

            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except ValueError as e:
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(obj, dict):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: JSON root must be an object")

            obj2 = dict(obj)
            prev_claimed = obj2.pop("prev_hash", None)
            line_hash = obj2.pop("hash", None)

            if not _is_hex64(prev_claimed) or not _is_hex64(line_hash):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: missing or malformed chain fields")

            if prev_claimed != prev:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: prev_hash mismatch: expected {prev} got {prev_claimed}",
                )

            expect = _chain_hash(prev, obj2)
            if expect != line_hash:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: hash mismatch: expected {expect} got {line_hash}",
                )

            prev = last_hash = line_hash

    if state_path is not None:
        state_path = Path(state_path)
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")

        state_val = state_path.read_text(encoding="utf-8").strip().lower()
        if state_val != prev:
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={prev}")

    return VerifyResult(True, lines, last_hash, "OK")


def _is_hex64(s: Any) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        int(s, 16)
    except ValueError:
        return False
    return True


class NullAuditLog:
    """Drop-in used when AUDIT_ENABLED is false."""

    def append_event(self, event: Dict[str, Any]) -> str:
        return GENESIS_HASH

    def record(self, action: str, result: str, **fields: Any) -> str:
        return GENESIS_HASH

    def verify_chain(self, check_state: bool = True) -> bool:
        return True

"""
idlogin/encoding.py

Base64 helpers shared by the key, wrap and token layers.

  - b64url_*  : URL-safe alphabet, no padding (JWK components, JWT segments,
                pubKey query parameter)
  - b64_std_* : standard alphabet with padding (wrapped key payload fields)
"""

import base64
import binascii
import json
from typing import Any, Dict


def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 encoding WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Rejects characters outside the URL-safe alphabet instead of silently
    discarding them.

    Raises:
        ValueError: not valid base64url.
    """
    s = str(s).strip()
    if any(c in s for c in "+/="):
        raise ValueError("not base64url")
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("not base64url") from e


def b64_std_encode(b: bytes) -> str:
    """Standard Base64 encoding WITH padding."""
    return base64.b64encode(b).decode("ascii")


def b64_std_decode(s: str) -> bytes:
    """
    Standard Base64 decode with optional missing padding.

    Raises:
        ValueError: not valid base64.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s, validate=True)
    except binascii.Error as e:
        raise ValueError("not base64") from e


def compact_json(obj: Dict[str, Any]) -> bytes:
    """JSON without whitespace, keys in insertion order (JSON.stringify style)."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

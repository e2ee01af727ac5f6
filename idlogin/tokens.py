# idlogin/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *login token layer*.
#
# Responsibilities:
#   - Issue a signed, time-bound assertion binding the identity's operational
#     signing key to ONE callback URL
#   - Verify such an assertion on the callback side
#
# Token wire format (compact JWS / JWT):
#
#     base64url(header).base64url(payload).base64url(signature)
#
# Where:
#   - header    = {"alg":"ES384","typ":"JWT"}  (fixed)
#   - payload   = {"sub":<callback>,"iat":<s>,"exp":<s>[,"cstm_dat":<str>]}
#   - signature = ECDSA P-384 / SHA-384 over ASCII("<header>.<payload>"),
#                 raw r || s (96 bytes), as WebCrypto produces it
#
# Key binding:
#   - The verifying key is NOT embedded (no "iss" claim).
#   - It travels next to the token as pubKey=<base64url SPKI> on the callback
#     redirect; the callback side must import it and call verify().
#
# What this module is NOT:
#   - Not a replay guard: a verified, unexpired token is always accepted.
#   - Not an audience system beyond the single "sub" callback URL.
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger

from .encoding import b64url_decode, b64url_encode, compact_json
from .errors import (
    InvalidSignature,
    MalformedToken,
    SubjectMismatch,
    TokenExpired,
    UnsupportedAlgorithm,
)
from .keys import OperationalSigningKey, VerifyingKey


TOKEN_ALG = "ES384"
TOKEN_TYP = "JWT"
HEADER = {"alg": TOKEN_ALG, "typ": TOKEN_TYP}

DEFAULT_TTL_SECONDS = 86400


def _now_epoch() -> int:
    # Keep time source centralized for easier testing/mocking.
    return int(time.time())


# -----------------------------------------------------------------------------
# Payload
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LoginTokenPayload:
    """
    Immutable login claims.

    Attributes:
        sub: callback URL the token is issued for
        iat: issued-at, unix seconds
        exp: expiry, unix seconds
        cstm_dat: optional opaque data forwarded from the login request
    """

    sub: str
    iat: int
    exp: int
    cstm_dat: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"sub": self.sub, "iat": self.iat, "exp": self.exp}
        if self.cstm_dat is not None:
            out["cstm_dat"] = self.cstm_dat
        return out

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "LoginTokenPayload":
        sub = obj.get("sub")
        iat = obj.get("iat")
        exp = obj.get("exp")
        cstm_dat = obj.get("cstm_dat")

        if not isinstance(sub, str) or not sub:
            raise MalformedToken("payload.sub must be a non-empty string")
        # bool is an int subclass; reject it explicitly
        for name, v in (("iat", iat), ("exp", exp)):
            if not isinstance(v, int) or isinstance(v, bool):
                raise MalformedToken(f"payload.{name} must be an integer")
        if cstm_dat is not None and not isinstance(cstm_dat, str):
            raise MalformedToken("payload.cstm_dat must be a string")

        return cls(sub=sub, iat=iat, exp=exp, cstm_dat=cstm_dat)


# -----------------------------------------------------------------------------
# Wire format helpers
# -----------------------------------------------------------------------------
def _split(token: str) -> Tuple[str, str, str]:
    """
    Split into three non-empty segments. Format validation only.
    """
    parts = str(token).strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedToken("token must have exactly three non-empty segments")
    return parts[0], parts[1], parts[2]


def _decode_json_segment(segment: str, what: str) -> Dict[str, Any]:
    try:
        obj = json.loads(b64url_decode(segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedToken(f"{what} is not base64url JSON") from e
    if not isinstance(obj, dict):
        raise MalformedToken(f"{what} is not a JSON object")
    return obj


def _check_signature(
    encoded_header: str,
    encoded_payload: str,
    encoded_signature: str,
    verifying_key: VerifyingKey,
) -> None:
    try:
        signature = b64url_decode(encoded_signature)
    except ValueError as e:
        raise InvalidSignature("signature segment is not base64url") from e

    try:
        signing_input = f"{encoded_header}.{encoded_payload}".encode("ascii")
    except UnicodeEncodeError as e:
        raise InvalidSignature("signed segments are not ASCII") from e

    if not verifying_key.verify(signature, signing_input):
        raise InvalidSignature("signature verification failed")


def decode_payload(token: str) -> LoginTokenPayload:
    """
    Decode claims WITHOUT verifying the signature.

    WARNING: diagnostics only. Use LoginTokenService.verify() for decisions.
    """
    _h, p, _s = _split(token)
    return LoginTokenPayload.from_dict(_decode_json_segment(p, "payload"))


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------
class LoginTokenService:
    """Issue and verify ES384 login tokens."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    def issue(
        self,
        signing_key: OperationalSigningKey,
        callback_url: str,
        custom_data: Optional[str] = None,
        now: Optional[int] = None,
    ) -> str:
        """
        Sign a login token for callback_url.

        The caller is responsible for having passed the callback through the
        trust policy first.
        """
        iat = _now_epoch() if now is None else int(now)
        payload = LoginTokenPayload(
            sub=callback_url,
            iat=iat,
            exp=iat + self.ttl_seconds,
            cstm_dat=custom_data,
        )

        encoded_header = b64url_encode(compact_json(HEADER))
        encoded_payload = b64url_encode(compact_json(payload.to_dict()))
        signing_input = f"{encoded_header}.{encoded_payload}".encode("ascii")

        signature = signing_key.sign(signing_input)

        logger.debug("login token issued sub={} exp={}", callback_url, payload.exp)
        return f"{encoded_header}.{encoded_payload}.{b64url_encode(signature)}"

    @staticmethod
    def verify(
        token: str,
        verifying_key: VerifyingKey,
        now: Optional[int] = None,
        expected_callback: Optional[str] = None,
    ) -> LoginTokenPayload:
        """
        Verify a login token and return its claims.

        Checks run in a fixed order so the reported failure is predictable:

          1. structure      -> MalformedToken
          2. alg / typ      -> UnsupportedAlgorithm
          3. payload decode -> MalformedToken (InvalidSignature if the
                               signature does not cover it either)
          4. exp > now      -> TokenExpired
          5. sub            -> SubjectMismatch (only if expected_callback given)
          6. signature      -> InvalidSignature
        """
        encoded_header, encoded_payload, encoded_signature = _split(token)

        header = _decode_json_segment(encoded_header, "header")
        if header.get("alg") != TOKEN_ALG or header.get("typ") != TOKEN_TYP:
            raise UnsupportedAlgorithm(
                f"expected alg {TOKEN_ALG} and typ {TOKEN_TYP}, "
                f"got alg {header.get('alg')!r} and typ {header.get('typ')!r}"
            )

        try:
            payload = LoginTokenPayload.from_dict(_decode_json_segment(encoded_payload, "payload"))
        except MalformedToken:
            # an altered payload rarely still decodes; report it as tampering
            _check_signature(encoded_header, encoded_payload, encoded_signature, verifying_key)
            raise

        now = _now_epoch() if now is None else int(now)
        if payload.exp <= now:
            raise TokenExpired(f"token expired at {payload.exp} (now {now})")

        if expected_callback is not None and payload.sub != expected_callback:
            raise SubjectMismatch("token was issued for a different callback")

        _check_signature(encoded_header, encoded_payload, encoded_signature, verifying_key)
        return payload


# -----------------------------------------------------------------------------
# Callback redirect contract
# -----------------------------------------------------------------------------
def callback_redirect_url(callback_url: str, token: str, verifying_key: VerifyingKey) -> str:
    """
    Append jwt=<token>&pubKey=<base64url SPKI> to the callback URL.

    Existing query parameters and the fragment are preserved.
    """
    parts = urlsplit(callback_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append(("jwt", token))
    query.append(("pubKey", verifying_key.spki_b64url()))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

"""
idlogin/errors.py

Typed failures for the identity, key-wrap, token and trust layers.

Every failure carries:
  - code:   stable machine-readable identifier (used in HTTP bodies, audit)
  - status: HTTP status the web layer maps it to

Nothing in this package returns a bare bool for a security decision;
callers catch IdentityError (or a narrower subclass) and decide.
"""

from __future__ import annotations

from typing import Optional


class IdentityError(RuntimeError):
    """Base class for all idlogin failures."""

    code = "identity_error"
    status = 400


# -----------------------------------------------------------------------------
# Key material
# -----------------------------------------------------------------------------
class InvalidScalar(IdentityError):
    """Private scalar is zero, negative, or not below the curve order."""

    code = "invalid_scalar"


class InvalidKeyMaterial(IdentityError):
    """Missing JWK components, unsupported curve, or inconsistent key data."""

    code = "invalid_key_material"


class KeyNotExtractable(IdentityError):
    """An operational (non-extractable) key was asked to leave the process."""

    code = "key_not_extractable"
    status = 403


class WrongPasswordOrCorruptData(IdentityError):
    """
    AES-GCM tag check failed on unwrap.

    A wrong password and a tampered ciphertext look identical here.
    """

    code = "wrong_password_or_corrupt_data"
    status = 401


# -----------------------------------------------------------------------------
# Login tokens
# -----------------------------------------------------------------------------
class TokenError(IdentityError):
    code = "token_error"
    status = 401


class MalformedToken(TokenError):
    code = "malformed_token"
    status = 400


class UnsupportedAlgorithm(TokenError):
    code = "unsupported_algorithm"


class TokenExpired(TokenError):
    code = "token_expired"


class SubjectMismatch(TokenError):
    code = "subject_mismatch"


class InvalidSignature(TokenError):
    code = "invalid_signature"


# -----------------------------------------------------------------------------
# Storage / lifecycle
# -----------------------------------------------------------------------------
class KeystoreUnavailable(IdentityError):
    code = "keystore_unavailable"
    status = 503


class IdentityBusy(IdentityError):
    """A create-or-import operation is already in flight for this slot."""

    code = "identity_busy"
    status = 409


class IdentityNotInstalled(IdentityError):
    code = "identity_not_installed"
    status = 409


class InvalidTransition(IdentityError):
    """An input arrived that the current protocol state does not accept."""

    code = "invalid_transition"
    status = 409


# -----------------------------------------------------------------------------
# Callback policy
# -----------------------------------------------------------------------------
class CallbackUrlInvalid(IdentityError):
    """
    Callback URL rejected before trust lookup.

    reason is one of: missing, unparsable, same_host, insecure
    """

    code = "callback_url_invalid"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"callback url rejected: {reason}")

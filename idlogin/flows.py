"""
idlogin/flows.py

Explicit protocol state machines.

Each input method returns a Transition: the next state, a tuple of effect
descriptions for whatever renders the flow (web page, CLI, test), and any
data the effect needs. Nothing here draws, navigates or sleeps.

  ProvisioningFlow  INITIAL -> AWAITING_PASSWORD -> EXPORTED -> READY
  ImportFlow        INITIAL -> AWAITING_PASSWORD -> READY
  ConsentFlow       UNKNOWN -> AWAITING_CONFIRMATION -> TRUSTED

The identity slot is reserved when provisioning/import starts and released
when it reaches READY, fails, or is cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from loguru import logger

from .audit import AuditLog, NullAuditLog
from .errors import (
    IdentityError,
    InvalidTransition,
    KeystoreUnavailable,
    WrongPasswordOrCorruptData,
)
from .keys import CreatedIdentity, Identity, IdentityKeyManager
from .keywrap import KeyWrapCodec, WrappedKeyPayload
from .tokens import LoginTokenService, callback_redirect_url
from .trust import TrustDecision, TrustDecisionPolicy


class FlowState(str, Enum):
    # provisioning / import
    INITIAL = "initial"
    AWAITING_PASSWORD = "awaiting_password"
    EXPORTED = "exported"
    READY = "ready"

    # callback consent
    UNKNOWN = "unknown"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    TRUSTED = "trusted"


class Effect(str, Enum):
    PROMPT_PASSWORD = "prompt_password"
    RETRY_PASSWORD = "retry_password"
    SHOW_QR = "show_qr"
    SHOW_ERROR = "show_error"
    IDENTITY_READY = "identity_ready"
    PROMPT_CONSENT = "prompt_consent"
    REDIRECT = "redirect"
    ABORT = "abort"


@dataclass(frozen=True)
class Transition:
    state: FlowState
    effects: Tuple[Effect, ...] = ()
    data: Dict[str, Any] = field(default_factory=dict)


def _require(current: FlowState, *allowed: FlowState) -> None:
    if current not in allowed:
        raise InvalidTransition(
            f"input not accepted in state {current.value}; "
            f"expected one of {[s.value for s in allowed]}"
        )


# -----------------------------------------------------------------------------
# Fresh identity + password backup
# -----------------------------------------------------------------------------
class ProvisioningFlow:
    """
    Create an identity, export its password-wrapped backup, then install it
    once the holder confirms the backup QR was saved.
    """

    def __init__(
        self,
        manager: IdentityKeyManager,
        codec: KeyWrapCodec,
        audit: Union[AuditLog, NullAuditLog, None] = None,
    ):
        self.manager = manager
        self.codec = codec
        self.audit = audit or NullAuditLog()
        self.state = FlowState.INITIAL
        self.payload: Optional[WrappedKeyPayload] = None
        self._created: Optional[CreatedIdentity] = None
        self._identity: Optional[Identity] = None

    @property
    def identity(self) -> Optional[Identity]:
        """The identity created by this flow (public handles only)."""
        if self._created is not None:
            return self._created.identity
        return self._identity

    def start(self) -> Transition:
        _require(self.state, FlowState.INITIAL)

        self.manager.reserve_slot()
        try:
            self._created = self.manager.create_identity()
        except Exception:
            self.manager.release_slot()
            raise

        self.state = FlowState.AWAITING_PASSWORD
        self.audit.record(
            "identity_create",
            "created",
            spki_sha256=self._created.verifying_key.spki_digest(),
        )
        return Transition(self.state, (Effect.PROMPT_PASSWORD,))

    def submit_password(self, password: str) -> Transition:
        _require(self.state, FlowState.AWAITING_PASSWORD)

        if not password:
            return Transition(self.state, (Effect.PROMPT_PASSWORD,), {"error": "empty_password"})

        self.payload = self.codec.wrap(self._created.extractable_backup_key, password)

        # the extractable key is not kept past this point
        self._identity = self._created.identity
        self._created = None

        self.state = FlowState.EXPORTED
        return Transition(self.state, (Effect.SHOW_QR,), {"payload": self.payload})

    def confirm_saved(self) -> Transition:
        _require(self.state, FlowState.EXPORTED)

        identity = self._identity
        try:
            self.manager.install(identity)
        except KeystoreUnavailable as e:
            logger.warning("identity install failed: {}", e)
            self.audit.record("identity_install", "error", reason=e.code)
            self._abort()
            return Transition(self.state, (Effect.SHOW_ERROR,), {"error": e.code})
        except Exception:
            self._abort()
            raise

        self.manager.release_slot()
        self.state = FlowState.READY
        self.audit.record(
            "identity_install",
            "installed",
            spki_sha256=identity.verifying_key.spki_digest(),
        )
        return Transition(self.state, (Effect.IDENTITY_READY,), {"identity": identity})

    def cancel(self) -> Transition:
        if self.state not in (FlowState.INITIAL, FlowState.READY):
            self._abort()
        return Transition(self.state)

    def _abort(self) -> None:
        self.manager.release_slot()
        self.state = FlowState.INITIAL
        self.payload = None
        self._created = None
        self._identity = None


# -----------------------------------------------------------------------------
# Restore from a scanned backup
# -----------------------------------------------------------------------------
class ImportFlow:
    """
    Restore an identity from a scanned WrappedKeyPayload.

    A wrong password keeps the flow in AWAITING_PASSWORD with the scanned
    payload untouched, so the holder can retry.
    """

    def __init__(
        self,
        manager: IdentityKeyManager,
        codec: KeyWrapCodec,
        audit: Union[AuditLog, NullAuditLog, None] = None,
    ):
        self.manager = manager
        self.codec = codec
        self.audit = audit or NullAuditLog()
        self.state = FlowState.INITIAL
        self.payload: Optional[WrappedKeyPayload] = None
        self.attempts = 0

    def scanned(self, payload: Union[WrappedKeyPayload, str, bytes]) -> Transition:
        _require(self.state, FlowState.INITIAL)

        if not isinstance(payload, WrappedKeyPayload):
            payload = WrappedKeyPayload.from_json(payload)

        self.manager.reserve_slot()
        self.payload = payload
        self.attempts = 0
        self.state = FlowState.AWAITING_PASSWORD
        return Transition(self.state, (Effect.PROMPT_PASSWORD,))

    def submit_password(self, password: str) -> Transition:
        _require(self.state, FlowState.AWAITING_PASSWORD)
        self.attempts += 1

        try:
            components = self.codec.unwrap(self.payload, password)
        except WrongPasswordOrCorruptData as e:
            self.audit.record("identity_import", "denied", reason=e.code, attempt=self.attempts)
            return Transition(
                self.state,
                (Effect.RETRY_PASSWORD,),
                {"error": e.code, "attempts": self.attempts},
            )

        try:
            identity = self.manager.import_from_jwk(components)
            self.manager.install(identity)
        except IdentityError as e:
            self.audit.record("identity_import", "error", reason=e.code)
            self._abort()
            raise

        self.manager.release_slot()
        self.state = FlowState.READY
        self.audit.record(
            "identity_import",
            "installed",
            spki_sha256=identity.verifying_key.spki_digest(),
        )
        return Transition(self.state, (Effect.IDENTITY_READY,), {"identity": identity})

    def cancel(self) -> Transition:
        if self.state == FlowState.AWAITING_PASSWORD:
            self._abort()
        return Transition(self.state)

    def _abort(self) -> None:
        self.manager.release_slot()
        self.state = FlowState.INITIAL
        self.payload = None


# -----------------------------------------------------------------------------
# Login against a callback
# -----------------------------------------------------------------------------
class ConsentFlow:
    """
    One login request: validate the callback, ask for consent the first time,
    then issue a token and describe the redirect.
    """

    def __init__(
        self,
        manager: IdentityKeyManager,
        policy: TrustDecisionPolicy,
        tokens: LoginTokenService,
        audit: Union[AuditLog, NullAuditLog, None] = None,
    ):
        self.manager = manager
        self.policy = policy
        self.tokens = tokens
        self.audit = audit or NullAuditLog()
        self.state = FlowState.UNKNOWN
        self.callback: Optional[str] = None
        self.custom_data: Optional[str] = None

    def request(self, callback: Optional[str], custom_data: Optional[str] = None) -> Transition:
        _require(self.state, FlowState.UNKNOWN)

        # callback checks come first: nothing is signed for a rejected URL
        self.policy.check_callback(callback)
        self.manager.require_identity()

        # sub and the redirect carry the caller's string; trust records are
        # keyed by its normalized form
        self.callback = str(callback).strip()
        self.custom_data = custom_data

        decision = self.policy.decide(self.callback)
        if decision == TrustDecision.PROCEED:
            return self._issue()

        self.state = FlowState.AWAITING_CONFIRMATION
        return Transition(self.state, (Effect.PROMPT_CONSENT,), {"callback": self.callback})

    def confirm(self) -> Transition:
        _require(self.state, FlowState.AWAITING_CONFIRMATION)

        self.policy.confirm(self.callback)
        self.audit.record("callback_trust", "confirmed", callback=self.callback)
        return self._issue()

    def decline(self) -> Transition:
        _require(self.state, FlowState.AWAITING_CONFIRMATION)

        self.audit.record("callback_trust", "declined", callback=self.callback)
        self.state = FlowState.UNKNOWN
        self.callback = None
        self.custom_data = None
        return Transition(self.state, (Effect.ABORT,))

    def _issue(self) -> Transition:
        identity = self.manager.require_identity()
        token = self.tokens.issue(identity.signing_key, self.callback, self.custom_data)
        redirect = callback_redirect_url(self.callback, token, identity.verifying_key)

        self.state = FlowState.TRUSTED
        self.audit.record(
            "token_issue",
            "issued",
            callback=self.callback,
            token=token,
            spki_sha256=identity.verifying_key.spki_digest(),
        )
        return Transition(
            self.state,
            (Effect.REDIRECT,),
            {"redirect_url": redirect, "token": token, "callback": self.callback},
        )

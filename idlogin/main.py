# idlogin/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the domain primitives implemented elsewhere.
#   - It MUST NOT implement crypto itself (crypto lives in keys.py, keywrap.py,
#     ec_point.py and tokens.py).
#   - Protocol steps are driven through the state machines in flows.py.
#
# Key modules / responsibilities:
#   - config.py    : environment-driven settings (ORIGIN, TTLs, paths)
#   - storage.py   : key store + trusted callback store
#   - keys.py      : identity keypair lifecycle
#   - keywrap.py   : password-wrapped backup payload
#   - tokens.py    : ES384 login token issue/verify + redirect contract
#   - trust.py     : callback consent policy
#   - qr.py        : pure QR rendering (no security)
#   - audit.py     : append-only audit log (security telemetry, forensics)
#
# Two sides share this app:
#   - identity holder : /identity/*, /login, /login/confirm
#   - callback side   : /verify (stateless; needs only jwt + pubKey)
#
# WARNING (DEPLOYMENT):
# - The key store is in-memory and holds ONE identity per process. Running
#   several Uvicorn workers gives each worker its own identity slot.
# -----------------------------------------------------------------------------

import json
from typing import Any, Dict, Optional, Tuple, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from loguru import logger

from .audit import AuditLog, NullAuditLog
from .config import settings
from .errors import CallbackUrlInvalid, IdentityError, InvalidTransition, TokenError
from .flows import ConsentFlow, Effect, FlowState, ImportFlow, ProvisioningFlow, Transition
from .keys import IdentityKeyManager, VerifyingKey
from .keywrap import KeyWrapCodec
from .logging_setup import setup_logging
from .models import ConsentRequest, ExportRequest, ImportRequest, VerifyRequest
from .qr import make_backup_qr_svg_bytes
from .storage import InMemoryKeyStore, InMemoryTrustStore, JsonFileTrustStore, TrustStore
from .tokens import LoginTokenService
from .trust import TrustDecisionPolicy


setup_logging()

# -----------------------------------------------------------------------------
# Collaborators (process singletons)
# -----------------------------------------------------------------------------
keystore = InMemoryKeyStore()

trust_store: TrustStore = (
    JsonFileTrustStore(settings.TRUST_STORE_PATH)
    if settings.TRUST_STORE_PATH
    else InMemoryTrustStore()
)

audit: Union[AuditLog, NullAuditLog] = (
    AuditLog(settings.AUDIT_DIR) if settings.AUDIT_ENABLED else NullAuditLog()
)

manager = IdentityKeyManager(keystore)
codec = KeyWrapCodec(iterations=settings.PBKDF2_ITERATIONS)
tokens = LoginTokenService(ttl_seconds=settings.TOKEN_TTL_SECONDS)
policy = TrustDecisionPolicy(trust_store, settings.ORIGIN)

# The provisioning flow spans three requests (export -> qr -> confirm).
# Only one may exist at a time; the identity slot guard enforces that.
PROVISIONING: Dict[str, ProvisioningFlow] = {}
_PENDING = "pending"


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
app = FastAPI(
    title="idlogin",
    version="0.1.0",
)


@app.exception_handler(IdentityError)
def identity_error_handler(request: Request, exc: IdentityError):
    detail: Dict[str, Any] = {"error": exc.code, "message": str(exc)}
    if isinstance(exc, CallbackUrlInvalid):
        detail["reason"] = exc.reason
    return JSONResponse(status_code=exc.status, content={"detail": detail})


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _client(request: Request) -> Dict[str, Optional[str]]:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _identity_view() -> Dict[str, Any]:
    identity = manager.load_identity()
    if identity is None:
        return {"installed": False, "busy": manager.busy}
    vk = identity.verifying_key
    return {
        "installed": True,
        "busy": manager.busy,
        "pubKey": vk.spki_b64url(),
        "spki_sha256": vk.spki_digest(),
    }


def _redirect(t: Transition) -> RedirectResponse:
    # 303: the callback must be fetched with GET whatever method got us here
    return RedirectResponse(t.data["redirect_url"], status_code=303)


def _require_no_identity() -> None:
    if manager.load_identity() is not None:
        raise InvalidTransition("an identity is already installed; reset it first")


# -----------------------------------------------------------------------------
# Identity holder: provisioning
# -----------------------------------------------------------------------------
@app.get("/identity")
def identity_status():
    return _identity_view()


@app.post("/identity/export")
def identity_export(body: ExportRequest, request: Request):
    """
    Create a fresh identity and return its password-wrapped backup.

    The identity is NOT installed until /identity/confirm is called.
    """
    _require_no_identity()

    flow = ProvisioningFlow(manager, codec, audit)
    flow.start()  # IdentityBusy if another create/import is in flight

    try:
        t = flow.submit_password(body.password)
    except Exception:
        flow.cancel()
        raise

    PROVISIONING[_PENDING] = flow
    return {
        "state": t.state,
        "wrapped": json.loads(t.data["payload"].to_json()),
        "qr": "/identity/export/qr.svg",
        "pubKey": flow.identity.verifying_key.spki_b64url(),
    }


@app.get("/identity/export/qr.svg")
def identity_export_qr():
    flow = PROVISIONING.get(_PENDING)
    if not flow or flow.state != FlowState.EXPORTED:
        raise HTTPException(404, "no pending backup")

    return Response(content=make_backup_qr_svg_bytes(flow.payload), media_type="image/svg+xml")


@app.post("/identity/confirm")
def identity_confirm(request: Request):
    flow = PROVISIONING.get(_PENDING)
    if not flow:
        raise HTTPException(404, "no pending identity")

    try:
        t = flow.confirm_saved()
    finally:
        # the pending flow ends here whatever confirm_saved does
        PROVISIONING.pop(_PENDING, None)

    if Effect.SHOW_ERROR in t.effects:
        raise HTTPException(
            status_code=503,
            detail={"error": t.data["error"], "message": "identity could not be stored; start again"},
        )

    return _identity_view()


@app.delete("/identity/export")
def identity_export_cancel():
    flow = PROVISIONING.pop(_PENDING, None)
    if flow:
        flow.cancel()
    return {"ok": True}


@app.post("/identity/import")
def identity_import(body: ImportRequest, request: Request):
    _require_no_identity()

    wrapped = body.wrapped if isinstance(body.wrapped, str) else json.dumps(body.wrapped)

    flow = ImportFlow(manager, codec, audit)
    flow.scanned(wrapped)
    t = flow.submit_password(body.password)

    if Effect.RETRY_PASSWORD in t.effects:
        # HTTP is stateless: release the slot, the client keeps the payload
        flow.cancel()
        raise HTTPException(
            status_code=401,
            detail={
                "error": t.data["error"],
                "message": "wrong password or corrupted backup",
                "retry": True,
            },
        )

    return _identity_view()


@app.delete("/identity")
def identity_reset(request: Request):
    """Whole-store reset: identity keys and trusted callbacks."""
    flow = PROVISIONING.pop(_PENDING, None)
    if flow:
        flow.cancel()

    manager.reset()
    policy.reset()
    audit.record("identity_reset", "reset", **_client(request))
    return {"ok": True}


# -----------------------------------------------------------------------------
# Identity holder: login against a callback
# -----------------------------------------------------------------------------
def _consent_request(
    callback: Optional[str], payload: Optional[str], request: Request
) -> Tuple[ConsentFlow, Transition]:
    flow = ConsentFlow(manager, policy, tokens, audit)
    try:
        t = flow.request(callback, payload)
    except CallbackUrlInvalid as e:
        audit.record(
            "login_request",
            "denied",
            reason=f"callback_{e.reason}",
            callback=(callback or "")[:500],
            **_client(request),
        )
        raise
    return flow, t


@app.get("/login")
def login(request: Request, callback: Optional[str] = None, payload: Optional[str] = None):
    """
    Trusted callback  -> 303 redirect to callback?jwt=...&pubKey=...
    Unknown callback  -> consent prompt; the holder answers via /login/confirm
    """
    flow, t = _consent_request(callback, payload, request)

    if Effect.REDIRECT in t.effects:
        return _redirect(t)

    return {
        "consent_required": True,
        "callback": flow.callback,
        "confirm": "/login/confirm",
    }


@app.post("/login/confirm")
def login_confirm(body: ConsentRequest, request: Request):
    flow, t = _consent_request(body.callback, body.payload, request)

    # already trusted (e.g. confirmed from another tab): nothing to record
    if Effect.REDIRECT in t.effects:
        return _redirect(t)

    return _redirect(flow.confirm())


# -----------------------------------------------------------------------------
# Callback side: token verification
# -----------------------------------------------------------------------------
def _verify(jwt: str, pub_key: str, callback: Optional[str], request: Request) -> Dict[str, Any]:
    try:
        vk = VerifyingKey.from_spki_b64url(pub_key)
    except IdentityError as e:
        audit.record("token_verify", "denied", reason=e.code, **_client(request))
        raise

    try:
        payload = LoginTokenService.verify(jwt, vk, expected_callback=callback)
    except TokenError as e:
        logger.info("token rejected: {}", e.code)
        audit.record(
            "token_verify",
            "denied",
            reason=e.code,
            token=jwt,
            spki_sha256=vk.spki_digest(),
            **_client(request),
        )
        raise

    audit.record(
        "token_verify",
        "ok",
        callback=payload.sub,
        token=jwt,
        spki_sha256=vk.spki_digest(),
        **_client(request),
    )
    return {"ok": True, "payload": payload.to_dict(), "spki_sha256": vk.spki_digest()}


@app.post("/verify")
def verify_post(body: VerifyRequest, request: Request):
    return _verify(body.jwt, body.pubKey, body.callback, request)


@app.get("/verify")
def verify_get(request: Request, jwt: str, pubKey: str, callback: Optional[str] = None):
    """Lets a test callback point its redirect straight at this endpoint."""
    return _verify(jwt, pubKey, callback, request)

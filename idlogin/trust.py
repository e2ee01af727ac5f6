"""
idlogin/trust.py

Callback trust policy.

Before a login token is issued for a callback URL:

  1) the URL must be an absolute http(s) URL with a host
  2) it must not point back at this application's own host (redirect loop)
  3) if this application is served over https, the callback must be https
  4) first-time callbacks require explicit user consent; after confirm()
     the callback is trusted and later logins proceed without a prompt

Trust records are compared by exact normalized string equality. No wildcards,
no host-only matching: https://rp.example/a and https://rp.example/a/ are
two different entries. There is no revocation; records are removed only by a
whole-store reset.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from loguru import logger

from .errors import CallbackUrlInvalid
from .storage import TrustStore


class TrustDecision(str, Enum):
    PROCEED = "proceed"
    REQUIRE_CONSENT = "require_consent"


def _host_key(scheme: str, hostname: str, port: Optional[int]) -> str:
    # JS location.host semantics: hostname plus an explicit, non-default port
    default = {"http": 80, "https": 443}.get(scheme)
    if port is None or port == default:
        return hostname
    return f"{hostname}:{port}"


def normalize(url: str) -> str:
    """
    Normalize a callback URL for trust comparison.

    Only surrounding whitespace is trimmed and scheme/host are lowercased.
    Path, trailing slash, query and fragment are kept verbatim.
    """
    url = (url or "").strip()
    p = urlsplit(url)
    return urlunsplit((p.scheme.lower(), p.netloc.lower(), p.path, p.query, p.fragment))


class TrustDecisionPolicy:
    """
    Gate token issuance on per-callback consent.

    app_origin is the origin this application is served from; it drives both
    the anti-loop guard and the secure-context rule.
    """

    def __init__(self, store: TrustStore, app_origin: str):
        self.store = store

        o = urlsplit(app_origin)
        if o.scheme not in ("http", "https") or not o.hostname:
            raise ValueError(f"app origin must be an absolute http(s) origin: {app_origin!r}")

        self.app_scheme = o.scheme
        self.app_host = _host_key(o.scheme, o.hostname.lower(), o.port)

    @property
    def secure_context(self) -> bool:
        return self.app_scheme == "https"

    def check_callback(self, url: Optional[str]) -> str:
        """
        Validate a callback URL and return its normalized form.

        Raises:
            CallbackUrlInvalid: reason in (missing, unparsable, same_host, insecure)
        """
        if url is None or not str(url).strip():
            raise CallbackUrlInvalid("missing", "callback parameter is required")

        try:
            norm = normalize(str(url))
            p = urlsplit(norm)
            port = p.port  # raises on a non-numeric port
        except ValueError as e:
            raise CallbackUrlInvalid("unparsable", "callback is not a valid URL") from e

        if p.scheme not in ("http", "https") or not p.hostname:
            raise CallbackUrlInvalid("unparsable", "callback must be an absolute http(s) URL")

        if _host_key(p.scheme, p.hostname, port) == self.app_host:
            raise CallbackUrlInvalid("same_host", "callback must not point at this application")

        if self.secure_context and p.scheme != "https":
            raise CallbackUrlInvalid("insecure", "insecure callback from a secure context")

        return norm

    def is_trusted(self, url: str) -> bool:
        return self.store.get(normalize(url))

    def confirm(self, url: str) -> str:
        """Record explicit user consent for a (validated) callback URL."""
        norm = self.check_callback(url)
        self.store.put(norm)
        logger.info("callback trusted url={}", norm)
        return norm

    def decide(self, url: str) -> TrustDecision:
        norm = self.check_callback(url)
        if self.store.get(norm):
            return TrustDecision.PROCEED
        return TrustDecision.REQUIRE_CONSENT

    def reset(self) -> None:
        self.store.clear()
        logger.info("trusted callbacks reset")

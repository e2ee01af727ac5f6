"""Unit tests for ES384 login tokens.

Covers issue/verify, expiry boundaries, tampering and the fixed order in
which verification failures are reported.
"""

import json
from urllib.parse import parse_qs, urlsplit

import pytest

from idlogin.encoding import b64url_decode, b64url_encode, compact_json
from idlogin.errors import (
    InvalidSignature,
    MalformedToken,
    SubjectMismatch,
    TokenExpired,
    UnsupportedAlgorithm,
)
from idlogin.tokens import (
    DEFAULT_TTL_SECONDS,
    LoginTokenService,
    callback_redirect_url,
    decode_payload,
)


pytestmark = pytest.mark.unit

CALLBACK = "https://rp.example/cb"
NOW = 1_700_000_000
B64URL_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


def _segments(token):
    h, p, s = token.split(".")
    return h, p, s


def _reencode(token, **claims):
    """Replace payload claims while keeping the original signature."""
    h, p, s = _segments(token)
    payload = json.loads(b64url_decode(p))
    payload.update(claims)
    return f"{h}.{b64url_encode(compact_json(payload))}.{s}"


def _signed(signing_key, header, payload_bytes):
    """Build a token whose signature really covers the given segments."""
    h = b64url_encode(compact_json(header))
    p = b64url_encode(payload_bytes)
    sig = signing_key.sign(f"{h}.{p}".encode("ascii"))
    return f"{h}.{p}.{b64url_encode(sig)}"


def _next_char(c):
    return B64URL_ALPHABET[(B64URL_ALPHABET.index(c) + 1) % len(B64URL_ALPHABET)]


def _with_header(token, header):
    _h, p, s = _segments(token)
    return f"{b64url_encode(compact_json(header))}.{p}.{s}"


@pytest.fixture
def token(tokens, created):
    return tokens.issue(created.operational_signing_key, CALLBACK, "opaque-123", now=NOW)


class TestIssue:
    def test_header(self, token):
        h, _p, _s = _segments(token)
        assert json.loads(b64url_decode(h)) == {"alg": "ES384", "typ": "JWT"}

    def test_claims(self, token):
        claims = decode_payload(token)
        assert claims.sub == CALLBACK
        assert claims.iat == NOW
        assert claims.exp == NOW + DEFAULT_TTL_SECONDS == NOW + 86400
        assert claims.cstm_dat == "opaque-123"

    def test_no_custom_data(self, tokens, created):
        t = tokens.issue(created.operational_signing_key, CALLBACK, now=NOW)
        _h, p, _s = _segments(t)
        assert json.loads(b64url_decode(p)) == {"sub": CALLBACK, "iat": NOW, "exp": NOW + 86400}

    def test_signature_is_raw_96_bytes(self, token):
        _h, _p, s = _segments(token)
        assert len(b64url_decode(s)) == 96

    def test_segments_are_unpadded(self, token):
        assert "=" not in token

    def test_custom_ttl(self, created):
        t = LoginTokenService(ttl_seconds=60).issue(created.operational_signing_key, CALLBACK, now=NOW)
        assert decode_payload(t).exp == NOW + 60


class TestVerify:
    def test_round_trip(self, token, created):
        claims = LoginTokenService.verify(token, created.verifying_key, now=NOW + 1)
        assert claims.sub == CALLBACK
        assert claims.to_dict() == {
            "sub": CALLBACK,
            "iat": NOW,
            "exp": NOW + 86400,
            "cstm_dat": "opaque-123",
        }

    def test_expiry_boundary(self, token, created):
        exp = NOW + 86400
        LoginTokenService.verify(token, created.verifying_key, now=exp - 1)
        with pytest.raises(TokenExpired):
            LoginTokenService.verify(token, created.verifying_key, now=exp)
        with pytest.raises(TokenExpired):
            LoginTokenService.verify(token, created.verifying_key, now=exp + 1)

    def test_wrong_key(self, token, manager):
        other = manager.create_identity().verifying_key
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(token, other, now=NOW)

    def test_tampered_subject(self, token, created):
        forged = _reencode(token, sub="https://evil.example/cb")
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(forged, created.verifying_key, now=NOW)

    def test_tampered_expiry(self, token, created):
        forged = _reencode(token, exp=NOW + 10 * 86400)
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(forged, created.verifying_key, now=NOW)

    def test_truncated_signature(self, token, created):
        h, p, s = _segments(token)
        short = b64url_encode(b64url_decode(s)[:-1])
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(f"{h}.{p}.{short}", created.verifying_key, now=NOW)

    def test_expected_callback(self, token, created):
        LoginTokenService.verify(token, created.verifying_key, now=NOW, expected_callback=CALLBACK)
        with pytest.raises(SubjectMismatch):
            LoginTokenService.verify(
                token, created.verifying_key, now=NOW, expected_callback="https://other.example/cb"
            )

    @pytest.mark.parametrize(
        "bad",
        ["", "abc", "a.b", "a.b.c.d", "a..c", "!!!.###.$$$"],
    )
    def test_malformed(self, created, bad):
        with pytest.raises(MalformedToken):
            LoginTokenService.verify(bad, created.verifying_key, now=NOW)

    @pytest.mark.parametrize(
        "payload",
        [
            {"sub": CALLBACK, "iat": NOW, "exp": "tomorrow"},
            {"sub": CALLBACK, "iat": True, "exp": NOW + 60},
            {"sub": "", "iat": NOW, "exp": NOW + 60},
            {"sub": CALLBACK, "iat": NOW, "exp": NOW + 60, "cstm_dat": 7},
        ],
    )
    def test_signed_payload_claim_types(self, created, payload):
        t = _signed(created.operational_signing_key, {"alg": "ES384", "typ": "JWT"}, compact_json(payload))
        with pytest.raises(MalformedToken):
            LoginTokenService.verify(t, created.verifying_key, now=NOW)

    def test_signed_payload_not_json(self, created):
        t = _signed(created.operational_signing_key, {"alg": "ES384", "typ": "JWT"}, b"not json")
        with pytest.raises(MalformedToken):
            LoginTokenService.verify(t, created.verifying_key, now=NOW)

    def test_claim_types_under_foreign_signature(self, token, created):
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(_reencode(token, exp="tomorrow"), created.verifying_key, now=NOW)
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(_reencode(token, iat=True), created.verifying_key, now=NOW)

    def test_every_payload_character_flip_is_invalid_signature(self, token, created):
        h, p, s = _segments(token)
        outcomes = {}
        for i, c in enumerate(p):
            forged = f"{h}.{p[:i]}{_next_char(c)}{p[i + 1:]}.{s}"
            # now=0: a flipped exp digit cannot push the token into the past
            try:
                LoginTokenService.verify(forged, created.verifying_key, now=0)
            except InvalidSignature:
                continue
            except Exception as e:
                outcomes[i] = type(e).__name__
            else:
                outcomes[i] = "accepted"
        assert outcomes == {}

    def test_non_ascii_payload_is_invalid_signature(self, token, created):
        h, _p, s = _segments(token)
        with pytest.raises(InvalidSignature):
            LoginTokenService.verify(f"{h}.été.{s}", created.verifying_key, now=NOW)

    @pytest.mark.parametrize(
        "header",
        [
            {"alg": "ES256", "typ": "JWT"},
            {"alg": "none", "typ": "JWT"},
            {"alg": "ES384", "typ": "JWS"},
            {},
        ],
    )
    def test_unsupported_header(self, token, created, header):
        with pytest.raises(UnsupportedAlgorithm):
            LoginTokenService.verify(_with_header(token, header), created.verifying_key, now=NOW)


class TestCheckOrder:
    """Several defects at once: the earliest check in the chain wins."""

    def test_algorithm_before_expiry(self, token, created):
        t = _with_header(token, {"alg": "HS256", "typ": "JWT"})
        with pytest.raises(UnsupportedAlgorithm):
            LoginTokenService.verify(t, created.verifying_key, now=NOW + 10 * 86400)

    def test_expiry_before_signature(self, token, manager):
        other = manager.create_identity().verifying_key
        with pytest.raises(TokenExpired):
            LoginTokenService.verify(token, other, now=NOW + 10 * 86400)

    def test_expiry_before_subject(self, token, created):
        with pytest.raises(TokenExpired):
            LoginTokenService.verify(
                token,
                created.verifying_key,
                now=NOW + 10 * 86400,
                expected_callback="https://other.example/cb",
            )

    def test_subject_before_signature(self, token, manager):
        other = manager.create_identity().verifying_key
        with pytest.raises(SubjectMismatch):
            LoginTokenService.verify(token, other, now=NOW, expected_callback="https://other.example/cb")


class TestRedirect:
    def test_appends_jwt_and_pubkey(self, token, created):
        url = callback_redirect_url(CALLBACK, token, created.verifying_key)
        parts = urlsplit(url)
        q = parse_qs(parts.query)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == CALLBACK
        assert q["jwt"] == [token]
        assert q["pubKey"] == [created.verifying_key.spki_b64url()]

    def test_preserves_existing_query(self, token, created):
        url = callback_redirect_url("https://rp.example/cb?state=xyz#frag", token, created.verifying_key)
        parts = urlsplit(url)
        q = parse_qs(parts.query)
        assert q["state"] == ["xyz"]
        assert "jwt" in q and "pubKey" in q
        assert parts.fragment == "frag"

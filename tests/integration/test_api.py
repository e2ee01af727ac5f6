"""Integration tests for the HTTP application.

Drives the full holder side (export, confirm, import, consent, login) and the
callback side (/verify) through FastAPI's TestClient.
"""

import json
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from idlogin import main
from idlogin.encoding import b64url_decode, b64url_encode
from idlogin.errors import InvalidKeyMaterial


pytestmark = pytest.mark.integration

CALLBACK = "https://rp.example/cb"
PASSWORD = "correct horse battery staple"


@pytest.fixture
def client():
    c = TestClient(main.app)
    c.delete("/identity")
    yield c
    c.delete("/identity")


def _provision(client, password=PASSWORD):
    r = client.post("/identity/export", json={"password": password})
    assert r.status_code == 200, r.text
    exported = r.json()
    r = client.post("/identity/confirm")
    assert r.status_code == 200, r.text
    return exported


def _login(client, callback=CALLBACK, payload=None):
    params = {"callback": callback}
    if payload is not None:
        params["payload"] = payload
    return client.get("/login", params=params, follow_redirects=False)


def _redirect_params(response):
    assert response.status_code == 303, response.text
    location = response.headers["location"]
    parts = urlsplit(location)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == CALLBACK
    q = parse_qs(parts.query)
    return q["jwt"][0], q["pubKey"][0]


class TestProvisioning:
    def test_no_identity(self, client):
        assert client.get("/identity").json() == {"installed": False, "busy": False}

    def test_export_then_confirm(self, client):
        r = client.post("/identity/export", json={"password": PASSWORD})
        assert r.status_code == 200
        body = r.json()
        assert body["state"] == "exported"
        assert body["qr"] == "/identity/export/qr.svg"
        assert set(body["wrapped"]) >= {"salt", "iv", "cipherText", "namedCurve"}

        # pending: created but not installed
        status = client.get("/identity").json()
        assert status["installed"] is False
        assert status["busy"] is True

        qr = client.get("/identity/export/qr.svg")
        assert qr.status_code == 200
        assert qr.headers["content-type"].startswith("image/svg+xml")

        r = client.post("/identity/confirm")
        assert r.status_code == 200
        status = r.json()
        assert status["installed"] is True
        assert status["busy"] is False
        assert status["pubKey"] == body["pubKey"]
        assert len(status["spki_sha256"]) == 64

    def test_concurrent_export_is_busy(self, client):
        assert client.post("/identity/export", json={"password": PASSWORD}).status_code == 200
        r = client.post("/identity/export", json={"password": PASSWORD})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "identity_busy"

    def test_cancel_export(self, client):
        client.post("/identity/export", json={"password": PASSWORD})
        assert client.delete("/identity/export").json() == {"ok": True}
        assert client.get("/identity/export/qr.svg").status_code == 404
        assert client.post("/identity/confirm").status_code == 404
        assert client.get("/identity").json()["busy"] is False

    def test_failed_self_test_clears_pending(self, client, monkeypatch):
        def mismatched(identity):
            raise InvalidKeyMaterial("signing key and verifying key do not match")

        client.post("/identity/export", json={"password": PASSWORD})
        monkeypatch.setattr(main.manager, "self_test", mismatched)

        r = client.post("/identity/confirm")
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "invalid_key_material"

        assert client.post("/identity/confirm").status_code == 404
        assert client.get("/identity").json() == {"installed": False, "busy": False}

    def test_empty_password_rejected(self, client):
        assert client.post("/identity/export", json={"password": ""}).status_code == 422

    def test_export_with_installed_identity(self, client):
        _provision(client)
        r = client.post("/identity/export", json={"password": PASSWORD})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "invalid_transition"


class TestImport:
    def test_export_reset_import_restores_identity(self, client):
        exported = _provision(client)
        before = client.get("/identity").json()["spki_sha256"]

        assert client.delete("/identity").json() == {"ok": True}
        assert client.get("/identity").json()["installed"] is False

        r = client.post("/identity/import", json={"wrapped": exported["wrapped"], "password": "wrong"})
        assert r.status_code == 401
        detail = r.json()["detail"]
        assert detail["error"] == "wrong_password_or_corrupt_data"
        assert detail["retry"] is True
        assert client.get("/identity").json()["busy"] is False

        r = client.post("/identity/import", json={"wrapped": exported["wrapped"], "password": PASSWORD})
        assert r.status_code == 200, r.text
        assert r.json()["spki_sha256"] == before

    def test_import_accepts_qr_text(self, client):
        exported = _provision(client)
        client.delete("/identity")

        r = client.post(
            "/identity/import",
            json={"wrapped": json.dumps(exported["wrapped"]), "password": PASSWORD},
        )
        assert r.status_code == 200
        assert r.json()["pubKey"] == exported["pubKey"]

    def test_malformed_payload(self, client):
        r = client.post("/identity/import", json={"wrapped": {"salt": "x"}, "password": PASSWORD})
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "invalid_key_material"

    def test_import_with_installed_identity(self, client):
        exported = _provision(client)
        r = client.post("/identity/import", json={"wrapped": exported["wrapped"], "password": PASSWORD})
        assert r.status_code == 409


class TestLogin:
    def test_requires_identity(self, client):
        r = _login(client)
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "identity_not_installed"

    @pytest.mark.parametrize(
        "callback,reason",
        [
            ("", "missing"),
            ("ftp://rp.example/cb", "unparsable"),
            ("http://127.0.0.1:8081/cb", "same_host"),
        ],
    )
    def test_invalid_callback(self, client, callback, reason):
        _provision(client)
        r = _login(client, callback)
        assert r.status_code == 400
        detail = r.json()["detail"]
        assert detail["error"] == "callback_url_invalid"
        assert detail["reason"] == reason

    def test_consent_then_redirect(self, client):
        exported = _provision(client)

        r = _login(client, payload="opaque")
        assert r.status_code == 200
        assert r.json() == {
            "consent_required": True,
            "callback": CALLBACK,
            "confirm": "/login/confirm",
        }

        r = client.post(
            "/login/confirm",
            json={"callback": CALLBACK, "payload": "opaque"},
            follow_redirects=False,
        )
        jwt, pub_key = _redirect_params(r)
        assert pub_key == exported["pubKey"]

        r = client.post("/verify", json={"jwt": jwt, "pubKey": pub_key, "callback": CALLBACK})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["ok"] is True
        assert body["payload"]["sub"] == CALLBACK
        assert body["payload"]["cstm_dat"] == "opaque"
        assert body["payload"]["exp"] == body["payload"]["iat"] + 86400

        # trusted now: straight to the callback
        jwt2, _ = _redirect_params(_login(client))
        assert client.get("/verify", params={"jwt": jwt2, "pubKey": pub_key}).json()["ok"] is True

    def test_reset_forgets_trust(self, client):
        _provision(client)
        client.post("/login/confirm", json={"callback": CALLBACK}, follow_redirects=False)
        assert _login(client).status_code == 303

        client.delete("/identity")
        _provision(client)
        assert _login(client).status_code == 200


class TestVerify:
    @pytest.fixture
    def issued(self, client):
        _provision(client)
        r = client.post("/login/confirm", json={"callback": CALLBACK}, follow_redirects=False)
        return _redirect_params(r)

    def test_tampered_token(self, client, issued):
        jwt, pub_key = issued
        h, p, s = jwt.split(".")
        claims = b64url_decode(p).replace(b"rp.example", b"ev.example")
        forged = f"{h}.{b64url_encode(claims)}.{s}"

        r = client.post("/verify", json={"jwt": forged, "pubKey": pub_key})
        assert r.status_code == 401
        assert r.json()["detail"]["error"] == "invalid_signature"

    def test_subject_mismatch(self, client, issued):
        jwt, pub_key = issued
        r = client.post(
            "/verify",
            json={"jwt": jwt, "pubKey": pub_key, "callback": "https://other.example/cb"},
        )
        assert r.status_code == 401
        assert r.json()["detail"]["error"] == "subject_mismatch"

    def test_malformed_token(self, client, issued):
        _jwt, pub_key = issued
        r = client.post("/verify", json={"jwt": "not-a-token", "pubKey": pub_key})
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "malformed_token"

    def test_bad_public_key(self, client, issued):
        jwt, _pub_key = issued
        r = client.post("/verify", json={"jwt": jwt, "pubKey": "AAAA"})
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "invalid_key_material"

    def test_audit_chain_intact(self, client, issued):
        jwt, pub_key = issued
        client.post("/verify", json={"jwt": jwt, "pubKey": pub_key})
        assert main.audit.verify_chain()

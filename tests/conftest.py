"""Pytest configuration and shared fixtures.

Provides common test fixtures and configuration for both
unit and integration tests.
"""

import os
import tempfile

# The application reads settings at import time; point it at throwaway
# locations before anything under idlogin is imported.
os.environ.setdefault("AUDIT_DIR", tempfile.mkdtemp(prefix="idlogin-audit-"))
os.environ.setdefault("PBKDF2_ITERATIONS", "1000")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from idlogin.audit import AuditLog
from idlogin.keys import IdentityKeyManager
from idlogin.keywrap import KeyWrapCodec
from idlogin.storage import InMemoryKeyStore, InMemoryTrustStore
from idlogin.tokens import LoginTokenService
from idlogin.trust import TrustDecisionPolicy


APP_ORIGIN = "http://127.0.0.1:8081"
CALLBACK = "https://rp.example/cb"


@pytest.fixture
def keystore():
    return InMemoryKeyStore()


@pytest.fixture
def manager(keystore):
    return IdentityKeyManager(keystore)


@pytest.fixture
def codec():
    """Low iteration count: wrapping semantics do not depend on it."""
    return KeyWrapCodec(iterations=1000)


@pytest.fixture
def trust_store():
    return InMemoryTrustStore()


@pytest.fixture
def policy(trust_store):
    return TrustDecisionPolicy(trust_store, APP_ORIGIN)


@pytest.fixture
def tokens():
    return LoginTokenService()


@pytest.fixture
def audit_log(tmp_path):
    return AuditLog(tmp_path / "audit")


@pytest.fixture
def created(manager):
    """A freshly generated identity (not installed)."""
    return manager.create_identity()


@pytest.fixture
def installed(manager, created):
    identity = created.identity
    manager.install(identity)
    return identity


# Marker definitions
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with in-memory collaborators"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests through the HTTP application"
    )

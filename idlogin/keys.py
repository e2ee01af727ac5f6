"""
idlogin/keys.py

Identity keypair lifecycle (P-384 / ECDSA).

Three kinds of key handle exist:

  - OperationalSigningKey : sign-only, refuses export and pickling. This is
                            the only private key that is ever installed.
  - VerifyingKey          : verify-only, always exportable (SPKI / JWK /
                            raw point).
  - ExtractableKey        : the freshly generated private key, exportable as
                            JWK-like components. Lives only long enough to be
                            wrapped into a password-protected backup.

Two origin flows produce an identity:

  1) create_identity()  : fresh generation
  2) import_from_jwk()  : restore from unwrapped backup components

install() commits an identity to the keystore under fixed logical names.
"""

from __future__ import annotations

import hashlib
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional

from cryptography.exceptions import InvalidSignature as _BadSignature
from cryptography.exceptions import UnsupportedAlgorithm as _UnsupportedKey
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from loguru import logger

from .ec_point import COORD_LEN, derive_uncompressed_point, encode_uncompressed_point
from .encoding import b64url_decode, b64url_encode
from .errors import (
    IdentityBusy,
    IdentityNotInstalled,
    InvalidKeyMaterial,
    KeyNotExtractable,
    KeystoreUnavailable,
)
from .storage import PRIVATE_KEY_NAME, PUBLIC_KEY_NAME, KeyStore


ALGORITHM_NAME = "ECDSA"
CURVE_NAME = "P-384"
SIGNATURE_LEN = 2 * COORD_LEN

SELF_TEST_MESSAGE = b"This is a test string for signing and verification."


def _coord_b64url(v: int) -> str:
    return b64url_encode(v.to_bytes(COORD_LEN, "big"))


# -----------------------------------------------------------------------------
# Key handles
# -----------------------------------------------------------------------------
class OperationalSigningKey:
    """Non-extractable ES384 signing key."""

    __slots__ = ("_key",)

    extractable = False
    usages = ("sign",)

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self._key = private_key

    def sign(self, data: bytes) -> bytes:
        """ECDSA/SHA-384 signature in raw r || s form (96 bytes)."""
        der = self._key.sign(data, ec.ECDSA(hashes.SHA384()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(COORD_LEN, "big") + s.to_bytes(COORD_LEN, "big")

    def export(self) -> Any:
        raise KeyNotExtractable("operational signing key cannot be exported")

    def __reduce__(self):
        raise KeyNotExtractable("operational signing key cannot be serialized")

    def __repr__(self) -> str:
        return f"<OperationalSigningKey {CURVE_NAME} usages={list(self.usages)}>"


class VerifyingKey:
    """ES384 verify-only public key."""

    extractable = True
    usages = ("verify",)

    def __init__(self, public_key: ec.EllipticCurvePublicKey):
        if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(
            public_key.curve, ec.SECP384R1
        ):
            raise InvalidKeyMaterial(f"verifying key must be an EC {CURVE_NAME} public key")
        self._key = public_key

    @classmethod
    def from_raw_point(cls, point: bytes) -> "VerifyingKey":
        try:
            return cls(ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP384R1(), bytes(point)))
        except ValueError as e:
            raise InvalidKeyMaterial("not a valid P-384 point") from e

    @classmethod
    def from_spki(cls, der: bytes) -> "VerifyingKey":
        try:
            key = serialization.load_der_public_key(bytes(der))
        except (ValueError, _UnsupportedKey) as e:
            raise InvalidKeyMaterial("not a valid SubjectPublicKeyInfo") from e
        return cls(key)

    @classmethod
    def from_spki_b64url(cls, s: str) -> "VerifyingKey":
        try:
            der = b64url_decode(s)
        except ValueError as e:
            raise InvalidKeyMaterial("public key is not base64url") from e
        return cls.from_spki(der)

    def verify(self, signature: bytes, data: bytes) -> bool:
        if len(signature) != SIGNATURE_LEN:
            return False

        r = int.from_bytes(signature[:COORD_LEN], "big")
        s = int.from_bytes(signature[COORD_LEN:], "big")
        try:
            self._key.verify(encode_dss_signature(r, s), data, ec.ECDSA(hashes.SHA384()))
        except _BadSignature:
            return False
        return True

    def raw_point(self) -> bytes:
        return self._key.public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )

    def to_spki(self) -> bytes:
        return self._key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def spki_b64url(self) -> str:
        return b64url_encode(self.to_spki())

    def spki_digest(self) -> str:
        """SHA-256 of the DER SPKI, hex. Used as the identity fingerprint."""
        return hashlib.sha256(self.to_spki()).hexdigest()

    def to_jwk(self) -> Dict[str, Any]:
        nums = self._key.public_numbers()
        return {
            "kty": "EC",
            "crv": CURVE_NAME,
            "x": _coord_b64url(nums.x),
            "y": _coord_b64url(nums.y),
            "ext": True,
            "key_ops": list(self.usages),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VerifyingKey):
            return NotImplemented
        return self.raw_point() == other.raw_point()

    def __hash__(self) -> int:
        return hash(self.raw_point())

    def __repr__(self) -> str:
        return f"<VerifyingKey {CURVE_NAME} spki_sha256={self.spki_digest()[:16]}...>"


class ExtractableKey:
    """The original generated private key; exportable, used only for wrapping."""

    extractable = True
    usages = ("sign",)

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self._key = private_key

    def to_jwk(self) -> Dict[str, Any]:
        nums = self._key.private_numbers()
        return {
            "kty": "EC",
            "crv": CURVE_NAME,
            "x": _coord_b64url(nums.public_numbers.x),
            "y": _coord_b64url(nums.public_numbers.y),
            "d": _coord_b64url(nums.private_value),
            "ext": True,
            "key_ops": list(self.usages),
        }

    def __repr__(self) -> str:
        return f"<ExtractableKey {CURVE_NAME}>"


@dataclass(frozen=True)
class Identity:
    """An installed (or installable) keypair."""

    signing_key: OperationalSigningKey
    verifying_key: VerifyingKey


@dataclass(frozen=True)
class CreatedIdentity:
    operational_signing_key: OperationalSigningKey
    verifying_key: VerifyingKey
    extractable_backup_key: ExtractableKey

    @property
    def identity(self) -> Identity:
        return Identity(self.operational_signing_key, self.verifying_key)


# -----------------------------------------------------------------------------
# JWK-like component handling
# -----------------------------------------------------------------------------
REQUIRED_COMPONENTS = ("crv", "x", "y", "d")


def _decode_component(components: Mapping[str, Any], name: str) -> bytes:
    value = components.get(name)
    if not isinstance(value, str) or not value:
        raise InvalidKeyMaterial(f"missing key component: {name}")
    try:
        raw = b64url_decode(value)
    except ValueError as e:
        raise InvalidKeyMaterial(f"key component {name} is not base64url") from e
    if not raw:
        raise InvalidKeyMaterial(f"key component {name} is empty")
    return raw


def _check_components(components: Mapping[str, Any]) -> None:
    if not isinstance(components, Mapping):
        raise InvalidKeyMaterial("key material must be an object")

    for name in REQUIRED_COMPONENTS:
        if components.get(name) in (None, ""):
            raise InvalidKeyMaterial(f"missing key component: {name}")

    kty = components.get("kty", "EC")
    if kty != "EC":
        raise InvalidKeyMaterial(f"unsupported key type: {kty!r}")

    if components["crv"] != CURVE_NAME:
        raise InvalidKeyMaterial(f"unsupported curve: {components['crv']!r}")


def _signing_key_from_scalar(d: int) -> OperationalSigningKey:
    try:
        return OperationalSigningKey(ec.derive_private_key(d, ec.SECP384R1()))
    except ValueError as e:
        raise InvalidKeyMaterial("private scalar rejected by the EC engine") from e


# -----------------------------------------------------------------------------
# Manager
# -----------------------------------------------------------------------------
class IdentityKeyManager:
    """
    Owns the identity slot in a KeyStore.

    The slot guard (reserve_slot / release_slot) keeps a second create or
    import from starting while a first one has not reached the keystore yet.
    """

    def __init__(self, keystore: KeyStore):
        self.keystore = keystore
        self._slot = threading.Lock()

    # -- slot guard ----------------------------------------------------------
    def reserve_slot(self) -> None:
        if not self._slot.acquire(blocking=False):
            raise IdentityBusy("another identity creation or import is in progress")

    def release_slot(self) -> None:
        if self._slot.locked():
            self._slot.release()

    @property
    def busy(self) -> bool:
        return self._slot.locked()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.reserve_slot()
        try:
            yield
        finally:
            self.release_slot()

    # -- origin flows --------------------------------------------------------
    def create_identity(self) -> CreatedIdentity:
        """
        Generate a P-384 keypair.

        The generated key is exported to JWK-like components and re-imported
        as a non-extractable operational key; the extractable original is
        returned only so it can be wrapped. The public point is cross-checked
        against the pure-Python derivation.
        """
        original = ec.generate_private_key(ec.SECP384R1())
        backup = ExtractableKey(original)
        jwk = backup.to_jwk()

        d = int.from_bytes(b64url_decode(jwk["d"]), "big")
        operational = _signing_key_from_scalar(d)
        verifying = VerifyingKey(original.public_key())

        derived = derive_uncompressed_point(b64url_decode(jwk["d"]))
        if derived != verifying.raw_point():
            raise InvalidKeyMaterial("derived public point does not match generated key")

        logger.info("identity created spki_sha256={}", verifying.spki_digest())
        return CreatedIdentity(
            operational_signing_key=operational,
            verifying_key=verifying,
            extractable_backup_key=backup,
        )

    def import_from_jwk(
        self,
        components: Mapping[str, Any],
        *,
        trust_embedded_public: bool = False,
    ) -> Identity:
        """
        Rebuild an identity from JWK-like private components (crv, x, y, d).

        By default the verifying key is derived from `d`; the embedded x/y are
        only used when trust_embedded_public is set.

        Raises:
            InvalidKeyMaterial: missing component, bad encoding, unsupported curve
            InvalidScalar: d is zero or not below the curve order
        """
        _check_components(components)

        d_bytes = _decode_component(components, "d")
        point = derive_uncompressed_point(d_bytes)

        if trust_embedded_public:
            point = encode_uncompressed_point(
                _decode_component(components, "x"),
                _decode_component(components, "y"),
            )

        verifying = VerifyingKey.from_raw_point(point)
        signing = _signing_key_from_scalar(int.from_bytes(d_bytes, "big"))

        logger.info(
            "identity imported spki_sha256={} trust_embedded_public={}",
            verifying.spki_digest(),
            trust_embedded_public,
        )
        return Identity(signing_key=signing, verifying_key=verifying)

    # -- persistence ---------------------------------------------------------
    def self_test(self, identity: Identity) -> None:
        """Sign and verify a fixed message; raise if the pair disagrees."""
        sig = identity.signing_key.sign(SELF_TEST_MESSAGE)
        if not identity.verifying_key.verify(sig, SELF_TEST_MESSAGE):
            raise InvalidKeyMaterial("signing key and verifying key do not match")

    def install(self, identity: Identity, *, check: bool = True) -> None:
        """
        Commit both keys to the keystore.

        All-or-nothing: if the public key write fails, the private key slot is
        put back the way it was (an earlier identity stays installed) and
        KeystoreUnavailable is raised.
        """
        if check:
            self.self_test(identity)

        try:
            previous_private = self.keystore.get(PRIVATE_KEY_NAME)
            self.keystore.put(PRIVATE_KEY_NAME, identity.signing_key)
        except KeystoreUnavailable:
            raise
        except Exception as e:
            raise KeystoreUnavailable("failed to store private key") from e

        try:
            self.keystore.put(PUBLIC_KEY_NAME, identity.verifying_key)
        except Exception as e:
            self._restore_private(previous_private)
            if isinstance(e, KeystoreUnavailable):
                raise
            raise KeystoreUnavailable("failed to store public key") from e

        logger.info("identity installed spki_sha256={}", identity.verifying_key.spki_digest())

    def _restore_private(self, previous: Optional[OperationalSigningKey]) -> None:
        try:
            if previous is None:
                self.keystore.delete(PRIVATE_KEY_NAME)
            else:
                self.keystore.put(PRIVATE_KEY_NAME, previous)
        except Exception as e:
            raise KeystoreUnavailable("rollback of partially written identity failed") from e

    def load_identity(self, *, check: bool = False) -> Optional[Identity]:
        try:
            signing = self.keystore.get(PRIVATE_KEY_NAME)
            verifying = self.keystore.get(PUBLIC_KEY_NAME)
        except KeystoreUnavailable:
            raise
        except Exception as e:
            raise KeystoreUnavailable("failed to load identity keys") from e

        if signing is None or verifying is None:
            return None

        if not isinstance(signing, OperationalSigningKey) or not isinstance(verifying, VerifyingKey):
            raise InvalidKeyMaterial("keystore holds unexpected key handles")

        identity = Identity(signing_key=signing, verifying_key=verifying)
        if check:
            self.self_test(identity)
        return identity

    def require_identity(self) -> Identity:
        identity = self.load_identity()
        if identity is None:
            raise IdentityNotInstalled("no identity installed")
        return identity

    def reset(self) -> None:
        try:
            self.keystore.delete(PRIVATE_KEY_NAME)
            self.keystore.delete(PUBLIC_KEY_NAME)
        except KeystoreUnavailable:
            raise
        except Exception as e:
            raise KeystoreUnavailable("failed to reset identity keys") from e
        logger.info("identity keys reset")

"""
idlogin/keywrap.py

Password-based wrapping of the extractable identity key.

    key  = PBKDF2-HMAC-SHA256(password, salt[16], 100_000 iterations, 32 bytes)
    wrap = AES-256-GCM(key, iv[12], compact_json(jwk))      # tag appended

The result is a WrappedKeyPayload, serialized as JSON for transport in a QR
code:

    {
      "salt": "<base64>",
      "iv": "<base64>",
      "cipherText": "<base64>",
      "keyAlgorithmName": "ECDSA",
      "namedCurve": "P-384",
      "keyExtractable": true,
      "keyUsages": ["sign"]
    }

Metadata fields are plaintext and not secret. A failed GCM tag check is the
only signal on unwrap, so "wrong password" and "tampered payload" are
indistinguishable by construction.
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from .encoding import b64_std_decode, b64_std_encode, compact_json
from .errors import InvalidKeyMaterial, KeyNotExtractable, WrongPasswordOrCorruptData
from .keys import ALGORITHM_NAME, CURVE_NAME, ExtractableKey, OperationalSigningKey


SALT_LEN = 16
IV_LEN = 12
KEY_LEN = 32
DEFAULT_ITERATIONS = 100_000


class WrappedKeyPayload(BaseModel):
    """Portable, password-protected backup of the extractable key."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    salt: bytes
    iv: bytes
    cipher_text: bytes = Field(alias="cipherText")
    key_algorithm_name: str = Field(default=ALGORITHM_NAME, alias="keyAlgorithmName")
    named_curve: str = Field(default=CURVE_NAME, alias="namedCurve")
    extractable: bool = Field(default=True, alias="keyExtractable")
    usages: List[str] = Field(default_factory=lambda: ["sign"], alias="keyUsages")

    @field_validator("salt", "iv", "cipher_text", mode="before")
    @classmethod
    def decode_b64(cls, v: Any) -> Any:
        # JSON carries base64 text; Python callers pass bytes directly
        if isinstance(v, str):
            return b64_std_decode(v)
        return v

    @field_validator("salt")
    @classmethod
    def check_salt(cls, v: bytes) -> bytes:
        if len(v) != SALT_LEN:
            raise ValueError(f"salt must be {SALT_LEN} bytes")
        return v

    @field_validator("iv")
    @classmethod
    def check_iv(cls, v: bytes) -> bytes:
        if len(v) != IV_LEN:
            raise ValueError(f"iv must be {IV_LEN} bytes")
        return v

    @field_validator("cipher_text")
    @classmethod
    def check_cipher_text(cls, v: bytes) -> bytes:
        # at least the 16-byte GCM tag
        if len(v) < 16:
            raise ValueError("cipherText too short")
        return v

    @field_serializer("salt", "iv", "cipher_text")
    def encode_b64(self, v: bytes) -> str:
        return b64_std_encode(v)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "WrappedKeyPayload":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise InvalidKeyMaterial(f"malformed wrapped key payload ({e.error_count()} errors)") from e


class KeyWrapCodec:
    """Wrap / unwrap JWK-like private key material under a password."""

    def __init__(self, iterations: int = DEFAULT_ITERATIONS):
        if iterations <= 0:
            raise ValueError("iterations must be > 0")
        self.iterations = iterations

    def derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LEN,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    def wrap(
        self,
        key: Union[ExtractableKey, Mapping[str, Any]],
        password: str,
    ) -> WrappedKeyPayload:
        """
        Encrypt the key's JWK-like representation. Fresh salt and IV per call.

        Raises:
            KeyNotExtractable: an operational key was passed
            InvalidKeyMaterial: the material is not a P-384 private JWK
        """
        if isinstance(key, OperationalSigningKey):
            raise KeyNotExtractable("operational signing key cannot be wrapped")

        jwk = key.to_jwk() if isinstance(key, ExtractableKey) else dict(key)
        if jwk.get("crv") != CURVE_NAME or not jwk.get("d"):
            raise InvalidKeyMaterial("only P-384 private key material can be wrapped")

        salt = os.urandom(SALT_LEN)
        iv = os.urandom(IV_LEN)
        wrapping_key = self.derive_key(password, salt)

        cipher_text = AESGCM(wrapping_key).encrypt(iv, compact_json(jwk), None)

        logger.debug("key wrapped iterations={} ct_len={}", self.iterations, len(cipher_text))
        return WrappedKeyPayload(
            salt=salt,
            iv=iv,
            cipher_text=cipher_text,
            key_algorithm_name=ALGORITHM_NAME,
            named_curve=CURVE_NAME,
            extractable=True,
            usages=list(jwk.get("key_ops") or ["sign"]),
        )

    def unwrap(self, payload: WrappedKeyPayload, password: str) -> Dict[str, Any]:
        """
        Decrypt a payload back into JWK-like components.

        The salt and IV recorded in the payload are used as-is; the payload is
        never modified, so a failed attempt can simply be retried.

        Raises:
            InvalidKeyMaterial: metadata names another algorithm or curve
            WrongPasswordOrCorruptData: GCM authentication failed
        """
        if payload.key_algorithm_name != ALGORITHM_NAME or payload.named_curve != CURVE_NAME:
            raise InvalidKeyMaterial(
                f"unsupported wrapped key: {payload.key_algorithm_name}/{payload.named_curve}"
            )

        wrapping_key = self.derive_key(password, payload.salt)

        try:
            plaintext = AESGCM(wrapping_key).decrypt(payload.iv, payload.cipher_text, None)
        except InvalidTag as e:
            logger.info("unwrap failed: authentication tag mismatch")
            raise WrongPasswordOrCorruptData("wrong password or corrupted backup") from e

        try:
            jwk = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidKeyMaterial("unwrapped key is not JSON") from e

        if not isinstance(jwk, dict):
            raise InvalidKeyMaterial("unwrapped key is not a JSON object")

        return jwk

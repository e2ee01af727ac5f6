# idlogin/storage.py
#
# Opaque stores used by the identity and trust layers.
#
#   KeyStore   : logical name -> key handle (userPrivateKey / userPublicKey)
#   TrustStore : normalized callback URL -> True
#
# Both are deliberately dumb: get/put/delete/clear, no policy. Any backend
# failure surfaces as KeystoreUnavailable so callers can abort cleanly.

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .errors import KeystoreUnavailable


PRIVATE_KEY_NAME = "userPrivateKey"
PUBLIC_KEY_NAME = "userPublicKey"


# -----------------------------------------------------------------------------
# Key handles
# -----------------------------------------------------------------------------
class KeyStore:
    """Key/handle store contract."""

    def get(self, name: str) -> Optional[Any]:
        raise NotImplementedError

    def put(self, name: str, handle: Any) -> None:
        raise NotImplementedError

    def delete(self, name: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryKeyStore(KeyStore):
    """
    Process-local key store.

    Handles are stored as objects, never serialized: the operational signing
    key cannot be written to disk because it refuses export.
    """

    def __init__(self):
        self.keys: Dict[str, Any] = {}

    def get(self, name: str) -> Optional[Any]:
        return self.keys.get(name)

    def put(self, name: str, handle: Any) -> None:
        self.keys[name] = handle

    def delete(self, name: str) -> None:
        self.keys.pop(name, None)

    def clear(self) -> None:
        self.keys.clear()


# -----------------------------------------------------------------------------
# Trusted callbacks
# -----------------------------------------------------------------------------
class TrustStore:
    """Trusted callback record contract (url -> True)."""

    def get(self, url: str) -> bool:
        raise NotImplementedError

    def put(self, url: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryTrustStore(TrustStore):
    def __init__(self):
        self.records: Dict[str, bool] = {}

    def get(self, url: str) -> bool:
        return bool(self.records.get(url))

    def put(self, url: str) -> None:
        self.records[url] = True

    def clear(self) -> None:
        self.records.clear()


class JsonFileTrustStore(TrustStore):
    """
    Trusted callbacks persisted as one JSON object:

        {
          "https://rp.example/cb": true,
          "https://other.example/login": true
        }

    Writes go to a temp file first and are renamed into place, so a crash
    never leaves a half-written store behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load_unlocked(self) -> Dict[str, bool]:
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise KeystoreUnavailable(f"trust store unreadable: {self.path}") from e

        if not isinstance(data, dict):
            raise KeystoreUnavailable(f"trust store is not a JSON object: {self.path}")

        return {k: True for k, v in data.items() if isinstance(k, str) and v is True}

    def _write_unlocked(self, records: Dict[str, bool]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(records, sort_keys=True, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise KeystoreUnavailable(f"trust store not writable: {self.path}") from e

    def get(self, url: str) -> bool:
        with self._lock:
            return bool(self._load_unlocked().get(url))

    def put(self, url: str) -> None:
        with self._lock:
            records = self._load_unlocked()
            records[url] = True
            self._write_unlocked(records)
        logger.debug("trust record written path={}", self.path)

    def clear(self) -> None:
        with self._lock:
            self._write_unlocked({})

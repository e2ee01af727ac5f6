from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # origin this application is served from (anti-loop + secure-context checks)
    ORIGIN: str = "http://127.0.0.1:8081"

    # login token lifetime (exp = iat + TOKEN_TTL_SECONDS)
    TOKEN_TTL_SECONDS: int = 86400

    # backup key wrapping (PBKDF2-HMAC-SHA256)
    PBKDF2_ITERATIONS: int = 100_000

    # trusted callback records; unset -> in-memory only
    TRUST_STORE_PATH: Optional[Path] = None

    # security telemetry
    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path("audit")

    # diagnostics
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[Path] = None

    class Config:
        env_file = ".env"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        Reduce ORIGIN to scheme://host[:port].

        Anything after the authority is dropped; the host is lowercased so it
        compares equal to callback hosts in the anti-loop check.
        """
        p = urlsplit((v or "").strip())

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must be an http:// or https:// URL")
        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        authority = p.hostname.lower() if p.port is None else f"{p.hostname.lower()}:{p.port}"
        return urlunsplit((p.scheme, authority, "", "", ""))

    @field_validator("TOKEN_TTL_SECONDS", "PBKDF2_ITERATIONS")
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()


settings = Settings()

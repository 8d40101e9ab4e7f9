from pathlib import Path
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .policy import DEFAULT_TAGS_PATH


class Settings(BaseSettings):
    # HMAC key for every token this server mints
    SESSION_SECRET: str = "dev-secret"

    # comma separated; merged with ALLOWED_TAGS_PATH. Empty = open mode
    ALLOWED_TAGS: str = ""
    ALLOWED_TAGS_PATH: Path = DEFAULT_TAGS_PATH

    SETUP_PROOF_TTL_SECONDS: int = 60
    SESSION_TTL_SECONDS: int = 60 * 60 * 24 * 30
    FRESH_TTL_SECONDS: int = 60
    PROFILE_TTL_SECONDS: int = 60 * 60 * 24 * 180

    COOKIE_SECURE: bool = False

    # public origin used to build printable setup links
    ORIGIN: str = "http://127.0.0.1:8000"

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path("audit")

    LOG_LEVEL: str = "INFO"
    BIND: str = "127.0.0.1"
    PORT: int = 8000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("SESSION_SECRET")
    @classmethod
    def normalize_secret(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("SESSION_SECRET cannot be empty")
        return v

    @field_validator("SETUP_PROOF_TTL_SECONDS", "FRESH_TTL_SECONDS")
    @classmethod
    def short_ttl_bounds(cls, v: int) -> int:
        # these gate a single tap -> confirm round trip; keep them short
        if not 1 <= v <= 600:
            raise ValueError("short-lived TTLs must be between 1 and 600 seconds")
        return v

    @field_validator("SESSION_TTL_SECONDS")
    @classmethod
    def session_ttl_bounds(cls, v: int) -> int:
        if not 60 * 60 * 24 <= v <= 60 * 60 * 24 * 30:
            raise ValueError("SESSION_TTL_SECONDS must be between 24 hours and 30 days")
        return v

    @field_validator("COOKIE_SECURE", "AUDIT_ENABLED", mode="before")
    @classmethod
    def normalize_flag(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return False

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        v = (v or "").strip().upper() or "INFO"
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown LOG_LEVEL {v!r}")
        return v

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN must be an absolute http(s) origin reachable by the phone that
        taps the tag.

        Normalization:
          - strip whitespace and trailing slash
          - require http/https and a hostname
          - lowercase hostname, keep an explicit port
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))


settings = Settings()

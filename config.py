"""
Application configuration: environment-aware settings.

ClientConfig drives the score sync client; the Config classes below it
drive the reference scores API. All environment variables are read here.
"""

from __future__ import annotations

import os
import warnings
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Score sync client
# ---------------------------------------------------------------------------

@dataclass
class ClientConfig:
    base_url: str
    timeout: int = 10000  # ms
    retries: int = 3
    retry_delay: int = 1000  # ms, base of the exponential backoff
    enable_offline_queue: bool = True

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientConfig:
        values: dict[str, Any] = {
            "base_url": os.environ.get("SCORES_API_URL", ""),
            "timeout": int(os.environ.get("SCORES_API_TIMEOUT_MS", "10000")),
            "retries": int(os.environ.get("SCORES_API_RETRIES", "3")),
            "retry_delay": int(os.environ.get("SCORES_API_RETRY_DELAY_MS", "1000")),
            "enable_offline_queue": _env_bool("SCORES_OFFLINE_QUEUE", True),
        }
        values.update(overrides)
        return cls(**values)

    def validate(self) -> ClientConfig:
        if not self.base_url:
            raise ValueError("base_url is required (set SCORES_API_URL)")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retries < 0 or self.retry_delay < 0:
            raise ValueError("retries and retry_delay must not be negative")
        return self

    def replace(self, **changes: Any) -> ClientConfig:
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown client option(s): {', '.join(sorted(unknown))}")
        return ClientConfig(**{**asdict(self), **changes}).validate()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# Local store
STORE_BACKEND = os.environ.get("SCORES_STORE_BACKEND", "memory")  # memory | sqlite | redis
STORE_PATH = os.environ.get("SCORES_STORE_PATH", str(BASE_DIR / "scores_local.db"))
STORE_KEY_PREFIX = os.environ.get("SCORES_KEY_PREFIX", "examtracker_")
REDIS_URL = os.environ.get("REDIS_URL", "")
SYNC_INTERVAL_SECONDS = int(os.environ.get("SYNC_INTERVAL_SECONDS", "300"))


# ---------------------------------------------------------------------------
# Reference scores API
# ---------------------------------------------------------------------------

class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "scores.db"))

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Request bodies carry at most a bulk import
    MAX_CONTENT_LENGTH = 4 * 1024 * 1024

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if cls.RATELIMIT_STORAGE_URI == "memory://":
            warnings.warn("REDIS_URL is not set; rate limits are per-process.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    RATELIMIT_ENABLED = False


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

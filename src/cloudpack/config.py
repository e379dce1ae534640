"""Configuration for cloudpack packaging and registry transfers."""

import os
from pathlib import Path
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# HTTP client configuration
DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 0.5  # seconds
DEFAULT_BACKOFF_MAX = 10.0  # seconds
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024  # 5MB per upload PATCH

# Transfer scheduling
DEFAULT_MAX_CONCURRENCY = 4

# Hashing and streaming
READ_CHUNK_SIZE = 1024 * 1024  # 1MB

# Fingerprints remembered in-process before falling back to the on-disk index
FINGERPRINT_MEMO_SIZE = 4096


def _default_cache_dir() -> Path:
    return Path.home() / ".cloudpack" / "cache"


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return int(value)


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return float(value)


class CloudpackConfig(BaseModel):
    """Settings shared by the cache, builder, registry client and sync engine.

    Construct directly for explicit control, or use :meth:`from_env` to read
    ``CLOUDPACK_*`` environment variables (``.env`` files are loaded when the
    package is imported).
    """

    model_config = ConfigDict(frozen=True)

    cache_dir: Path = Field(default_factory=_default_cache_dir)
    cache_max_bytes: Optional[int] = None
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    backoff_base: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    backoff_max: float = Field(default=DEFAULT_BACKOFF_MAX, ge=0)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    asset_archive_max_bytes: Optional[int] = None
    insecure_registries: FrozenSet[str] = frozenset()

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _expand_cache_dir(cls, value):
        return Path(value).expanduser()

    @field_validator("cache_max_bytes", "asset_archive_max_bytes")
    @classmethod
    def _positive_or_none(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("must be a positive number of bytes")
        return value

    @classmethod
    def from_env(cls, **overrides) -> "CloudpackConfig":
        """Build a config from ``CLOUDPACK_*`` environment variables.

        Keyword overrides win over the environment.
        """
        values = {}

        cache_dir = os.getenv("CLOUDPACK_CACHE_DIR")
        if cache_dir:
            values["cache_dir"] = cache_dir

        for key, env_name, reader in (
            ("cache_max_bytes", "CLOUDPACK_CACHE_MAX_BYTES", _env_int),
            ("max_concurrency", "CLOUDPACK_MAX_CONCURRENCY", _env_int),
            ("request_timeout", "CLOUDPACK_REQUEST_TIMEOUT", _env_float),
            ("max_retries", "CLOUDPACK_MAX_RETRIES", _env_int),
            ("chunk_size", "CLOUDPACK_CHUNK_SIZE", _env_int),
            ("asset_archive_max_bytes", "CLOUDPACK_ASSET_ARCHIVE_MAX_BYTES", _env_int),
        ):
            value = reader(env_name)
            if value is not None:
                values[key] = value

        insecure = os.getenv("CLOUDPACK_INSECURE_REGISTRIES", "")
        hosts = {host.strip() for host in insecure.split(",") if host.strip()}
        if hosts:
            values["insecure_registries"] = frozenset(hosts)

        values.update(overrides)
        return cls(**values)

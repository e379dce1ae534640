from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, SecretStr


class RegistryCredentials(BaseModel):
    """Bearer credential attached to every registry request.

    Token acquisition (login flows, refresh) happens outside cloudpack; the
    token is treated as an opaque string.
    """

    model_config = ConfigDict(frozen=True)

    token: SecretStr

    def to_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token.get_secret_value()}"}


def get_credentials_path() -> Path:
    credentials_file = os.getenv("CLOUDPACK_CREDENTIALS_FILE")
    if credentials_file:
        return Path(credentials_file).expanduser()

    config_home = os.getenv("XDG_CONFIG_HOME")
    base_dir = (
        Path(config_home).expanduser() if config_home else Path.home() / ".config"
    )
    return base_dir / "cloudpack" / "credentials.toml"


def _read_credentials(path: Path) -> dict:
    if not path.exists():
        return {}

    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, ValueError):
        return {}


def load_credentials(registry: Optional[str] = None) -> Optional[RegistryCredentials]:
    """Find a stored registry token.

    ``CLOUDPACK_REGISTRY_TOKEN`` wins; otherwise the credentials file is
    consulted, preferring a ``[registries."<host>"]`` table for ``registry``
    over the top-level ``token`` key.
    """
    token = os.getenv("CLOUDPACK_REGISTRY_TOKEN")
    if token and token.strip():
        return RegistryCredentials(token=token.strip())

    stored = _read_credentials(get_credentials_path())
    if registry:
        per_registry = stored.get("registries", {}).get(registry, {})
        if isinstance(per_registry, dict):
            token = per_registry.get("token")
            if isinstance(token, str) and token.strip():
                return RegistryCredentials(token=token.strip())

    token = stored.get("token")
    if isinstance(token, str) and token.strip():
        return RegistryCredentials(token=token.strip())

    return None

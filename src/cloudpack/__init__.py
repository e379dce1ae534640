# Load .env vars from file before everything else
from dotenv import load_dotenv

load_dotenv()

from .logger import setup_logging  # noqa: E402

setup_logging()

# TYPE_CHECKING imports give IDEs the public names while __getattr__
# defers the heavier imports (httpx, pydantic models) until first use
from typing import TYPE_CHECKING  # noqa: E402

if TYPE_CHECKING:
    from .build import ArtifactBuilder
    from .cache import LocalCache
    from .config import CloudpackConfig
    from .core.models import ApplicationDescription, ArtifactManifest
    from .credentials import RegistryCredentials, load_credentials
    from .registry import ArtifactReference, RegistryClient
    from .sync import PullResult, PushResult, SyncEngine

_LAZY = {
    "ArtifactBuilder": ".build",
    "LocalCache": ".cache",
    "CloudpackConfig": ".config",
    "ApplicationDescription": ".core.models",
    "ArtifactManifest": ".core.models",
    "RegistryCredentials": ".credentials",
    "load_credentials": ".credentials",
    "ArtifactReference": ".registry",
    "RegistryClient": ".registry",
    "PullResult": ".sync",
    "PushResult": ".sync",
    "SyncEngine": ".sync",
}


def __getattr__(name):
    """Lazily import core modules only when accessed."""
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)


__all__ = [
    "ApplicationDescription",
    "ArtifactBuilder",
    "ArtifactManifest",
    "ArtifactReference",
    "CloudpackConfig",
    "LocalCache",
    "PullResult",
    "PushResult",
    "RegistryClient",
    "RegistryCredentials",
    "SyncEngine",
    "load_credentials",
    "setup_logging",
]

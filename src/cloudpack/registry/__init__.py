from .client import RegistryClient, raise_for_registry_status
from .reference import ArtifactReference
from .retry import NO_RETRY, RetryPolicy, retry_with_backoff

__all__ = [
    "ArtifactReference",
    "NO_RETRY",
    "RegistryClient",
    "RetryPolicy",
    "raise_for_registry_status",
    "retry_with_backoff",
]

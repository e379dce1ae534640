from .digest import (
    DIGEST_ALGORITHM,
    IncrementalDigest,
    describe,
    describe_file,
    digest,
    hash_stream,
    is_digest,
    parse_digest,
)
from .models import (
    ApplicationDescription,
    ArtifactManifest,
    AssetSource,
    BlobDescriptor,
    ComponentSource,
    FileSource,
    InlineSource,
    Layer,
    LayerRole,
    TriggerBinding,
)

__all__ = [
    "DIGEST_ALGORITHM",
    "IncrementalDigest",
    "describe",
    "describe_file",
    "digest",
    "hash_stream",
    "is_digest",
    "parse_digest",
    "ApplicationDescription",
    "ArtifactManifest",
    "AssetSource",
    "BlobDescriptor",
    "ComponentSource",
    "FileSource",
    "InlineSource",
    "Layer",
    "LayerRole",
    "TriggerBinding",
]

"""Data model for artifacts and application descriptions.

Wire records (descriptors and manifests) use OCI field names through pydantic
aliases, while Python code uses snake_case attributes.
"""

import json
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from cloudpack.exceptions import InvalidApplicationError

from . import media_types
from .digest import digest as compute_digest
from .digest import parse_digest


def normalize_relative_path(value: str) -> str:
    """Normalize a materialization path to a safe relative POSIX path.

    Raises:
        ValueError: If the path is empty, absolute, or climbs out with ``..``.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("path must be a non-empty string")

    candidate = PurePosixPath(value.replace("\\", "/"))
    if candidate.is_absolute() or (candidate.parts and ":" in candidate.parts[0]):
        raise ValueError(f"path must be relative: {value!r}")
    if ".." in candidate.parts:
        raise ValueError(f"path must not contain '..': {value!r}")

    parts = [part for part in candidate.parts if part not in ("", ".")]
    if not parts:
        raise ValueError(f"path must name a file: {value!r}")
    return "/".join(parts)


class BlobDescriptor(BaseModel):
    """Identity of an immutable blob: ``{digest, size, mediaType}``."""

    model_config = ConfigDict(
        frozen=True,
        validate_by_name=True,
        serialize_by_alias=True,
    )

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int = Field(ge=0)
    annotations: Optional[Dict[str, str]] = None

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        parse_digest(value)
        return value

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LayerRole(str, Enum):
    CONFIG = "config"
    COMPONENT = "component"
    ASSETS = "assets"


class Layer(BlobDescriptor):
    """A blob annotated with its role and where it lands when materialized.

    For ``component`` layers the path is the file the binary is written to;
    for ``assets`` layers the archive is extracted relative to the
    destination root and the path is informational.
    """

    @classmethod
    def create(
        cls,
        descriptor: BlobDescriptor,
        role: LayerRole,
        path: str,
        component_id: Optional[str] = None,
    ) -> "Layer":
        annotations = dict(descriptor.annotations or {})
        annotations[media_types.ANNOTATION_ROLE] = role.value
        annotations[media_types.ANNOTATION_PATH] = path
        if component_id is not None:
            annotations[media_types.ANNOTATION_COMPONENT] = component_id
        return cls(
            media_type=descriptor.media_type,
            digest=descriptor.digest,
            size=descriptor.size,
            annotations=annotations,
        )

    @property
    def role(self) -> LayerRole:
        raw = (self.annotations or {}).get(media_types.ANNOTATION_ROLE)
        if raw is not None:
            return LayerRole(raw)
        if self.media_type == media_types.APPLICATION_CONFIG:
            return LayerRole.CONFIG
        if self.media_type == media_types.ASSET_ARCHIVE:
            return LayerRole.ASSETS
        return LayerRole.COMPONENT

    @property
    def path(self) -> Optional[str]:
        return (self.annotations or {}).get(media_types.ANNOTATION_PATH)

    @property
    def component_id(self) -> Optional[str]:
        return (self.annotations or {}).get(media_types.ANNOTATION_COMPONENT)

    def describe(self) -> str:
        """Human-readable label used in logs and errors."""
        return self.path or self.digest


class ArtifactManifest(BaseModel):
    """Top-level artifact manifest: ordered layers plus the config fragment.

    Immutable once built; a new push always builds a new instance.
    """

    model_config = ConfigDict(
        frozen=True,
        validate_by_name=True,
        serialize_by_alias=True,
    )

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=media_types.OCI_IMAGE_MANIFEST, alias="mediaType")
    artifact_type: str = Field(
        default=media_types.APPLICATION_ARTIFACT_TYPE, alias="artifactType"
    )
    config: Layer
    layers: List[Layer] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None

    def to_bytes(self) -> bytes:
        """Canonical encoding; its digest is the manifest digest."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode(
            "utf-8"
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "ArtifactManifest":
        return cls.model_validate_json(data)

    @property
    def digest(self) -> str:
        return compute_digest(self.to_bytes())

    def blobs(self) -> List[Layer]:
        """Every referenced blob, config first, in manifest order."""
        return [self.config, *self.layers]

    def unique_blobs(self) -> List[Layer]:
        """Referenced blobs with duplicate digests removed, order preserved."""
        seen = set()
        unique = []
        for layer in self.blobs():
            if layer.digest in seen:
                continue
            seen.add(layer.digest)
            unique.append(layer)
        return unique


# Application description (input from the manifest loader)


class FileSource(BaseModel):
    """Content read from a file; relative paths resolve against ``base_dir``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["file"] = "file"
    path: str

    def resolve(self, base_dir: Optional[Path]) -> Path:
        candidate = Path(self.path).expanduser()
        if not candidate.is_absolute() and base_dir is not None:
            candidate = Path(base_dir) / candidate
        return candidate

    def default_destination(self) -> Optional[str]:
        if Path(self.path).is_absolute():
            return None
        return normalize_relative_path(self.path)


class InlineSource(BaseModel):
    """Content supplied in memory by the caller."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["inline"] = "inline"
    data: bytes

    def default_destination(self) -> Optional[str]:
        return None


ContentSource = Annotated[Union[FileSource, InlineSource], Field(discriminator="kind")]


def _resolve_destination(
    source: Union[FileSource, InlineSource], destination: Optional[str], label: str
) -> str:
    if destination is not None:
        return normalize_relative_path(destination)
    default = source.default_destination()
    if default is None:
        raise ValueError(f"{label} needs an explicit destination")
    return default


class AssetSource(BaseModel):
    """One static file shipped with a component."""

    model_config = ConfigDict(frozen=True)

    source: ContentSource
    destination: Optional[str] = None

    @model_validator(mode="after")
    def _fill_destination(self) -> "AssetSource":
        resolved = _resolve_destination(self.source, self.destination, "asset")
        object.__setattr__(self, "destination", resolved)
        return self


class ComponentSource(BaseModel):
    """One executable component and the assets it serves."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    binary: ContentSource
    destination: Optional[str] = None
    assets: List[AssetSource] = Field(default_factory=list)
    config: Dict[str, str] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if any(ch.isspace() for ch in value) or "/" in value:
            raise ValueError(f"component id must not contain spaces or '/': {value!r}")
        return value

    @model_validator(mode="after")
    def _fill_destination(self) -> "ComponentSource":
        resolved = _resolve_destination(
            self.binary, self.destination, f"component {self.id!r} binary"
        )
        object.__setattr__(self, "destination", resolved)
        return self


class TriggerBinding(BaseModel):
    """Routes an event source (e.g. an HTTP route) to a component."""

    model_config = ConfigDict(frozen=True)

    component: str
    type: str = "http"
    config: Dict[str, Any] = Field(default_factory=dict)


class ApplicationDescription(BaseModel):
    """In-memory application description handed over by the manifest loader.

    Validated once here; the builder trusts it afterwards.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version: Optional[str] = None
    base_dir: Optional[Path] = None
    components: List[ComponentSource] = Field(min_length=1)
    triggers: List[TriggerBinding] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_consistency(self) -> "ApplicationDescription":
        ids = [component.id for component in self.components]
        duplicates = sorted({cid for cid in ids if ids.count(cid) > 1})
        if duplicates:
            raise ValueError(f"duplicate component ids: {', '.join(duplicates)}")

        known = set(ids)
        for trigger in self.triggers:
            if trigger.component not in known:
                raise ValueError(
                    f"trigger references unknown component {trigger.component!r}"
                )

        claimed: Dict[str, str] = {}
        for component, destination in self.iter_destinations():
            owner = claimed.get(destination)
            if owner is not None:
                raise ValueError(
                    f"{destination!r} is materialized by both {owner!r} and {component!r}"
                )
            claimed[destination] = component

        # A file cannot also be a directory on the way to another file
        for destination, component in claimed.items():
            for parent in PurePosixPath(destination).parents:
                owner = claimed.get(str(parent))
                if owner is not None:
                    raise ValueError(
                        f"{destination!r} of {component!r} is nested under file "
                        f"{str(parent)!r} of {owner!r}"
                    )
        return self

    def iter_destinations(self) -> Iterator[tuple]:
        for component in self.components:
            yield component.id, component.destination
            for asset in component.assets:
                yield component.id, asset.destination

    @classmethod
    def load(cls, data: Any) -> "ApplicationDescription":
        """Validate loader output, raising :class:`InvalidApplicationError`."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidApplicationError(str(e)) from e

"""Builds artifact manifests from application descriptions and materializes them."""

import io
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cloudpack.cache.local_cache import LocalCache
from cloudpack.core import media_types
from cloudpack.core.digest import hash_stream
from cloudpack.core.models import (
    ApplicationDescription,
    ArtifactManifest,
    BlobDescriptor,
    ComponentSource,
    FileSource,
    InlineSource,
    Layer,
    LayerRole,
    normalize_relative_path,
)
from cloudpack.exceptions import (
    InvalidApplicationError,
    MissingBlobError,
    UnsafeArchiveError,
)

from .archive import ArchiveEntry, extract_archive, plan_archives, write_archive

log = logging.getLogger(__name__)

CONFIG_SCHEMA_VERSION = 1
CONFIG_PATH = ".cloudpack/application.json"


class ArtifactBuilder:
    """Turns an application description into a layered, content-addressed artifact.

    Every distributable object (component binaries, asset archives and the
    application config fragment) is stored in the local cache and referenced
    from the manifest by digest. Building unchanged inputs twice produces the
    same manifest byte for byte.
    """

    def __init__(
        self,
        cache: LocalCache,
        asset_archive_max_bytes: Optional[int] = None,
    ):
        self.cache = cache
        self.asset_archive_max_bytes = asset_archive_max_bytes

    def build(
        self, application: Union[ApplicationDescription, Dict[str, Any]]
    ) -> ArtifactManifest:
        """Build the artifact manifest for ``application``.

        Raises:
            InvalidApplicationError: If the description is invalid or a source
                file cannot be read.
        """
        app = ApplicationDescription.load(application)
        log.info(f"Building artifact for {app.name} ({len(app.components)} components)")

        layers: List[Layer] = []
        components_config = []

        for component in app.components:
            binary = self._store_content(
                component.binary, app.base_dir, media_types.COMPONENT_BINARY
            )
            binary_layer = Layer.create(
                binary, LayerRole.COMPONENT, component.destination, component.id
            )
            layers.append(binary_layer)

            asset_layers = self._build_asset_layers(component, app.base_dir)
            layers.extend(asset_layers)

            components_config.append(
                {
                    "id": component.id,
                    "binary": {
                        "digest": binary_layer.digest,
                        "path": component.destination,
                    },
                    "assets": [
                        {"digest": layer.digest, "path": layer.path}
                        for layer in asset_layers
                    ],
                    "files": sorted(asset.destination for asset in component.assets),
                    "config": dict(sorted(component.config.items())),
                }
            )

        config_payload = {
            "schemaVersion": CONFIG_SCHEMA_VERSION,
            "name": app.name,
            "version": app.version,
            "components": components_config,
            "triggers": [trigger.model_dump(mode="json") for trigger in app.triggers],
            "environment": dict(sorted(app.environment.items())),
        }
        config_bytes = json.dumps(
            config_payload, sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        config_layer = Layer.create(
            self.cache.put_bytes(config_bytes, media_types.APPLICATION_CONFIG),
            LayerRole.CONFIG,
            CONFIG_PATH,
        )

        annotations = {media_types.ANNOTATION_APP_NAME: app.name}
        if app.version:
            annotations[media_types.ANNOTATION_APP_VERSION] = app.version

        manifest = ArtifactManifest(
            config=config_layer, layers=layers, annotations=annotations
        )
        log.info(
            f"Built artifact {manifest.digest} with {len(manifest.unique_blobs())} blobs"
        )
        return manifest

    def _store_content(
        self,
        source: Union[FileSource, InlineSource],
        base_dir: Optional[Path],
        media_type: str,
    ) -> BlobDescriptor:
        if isinstance(source, InlineSource):
            return self.cache.put_bytes(source.data, media_type)

        path = source.resolve(base_dir)
        try:
            return self.cache.import_file(path, media_type)
        except (FileNotFoundError, IsADirectoryError, PermissionError) as e:
            raise InvalidApplicationError(f"Cannot read {path}: {e}") from e

    def _archive_entry(
        self, source: Union[FileSource, InlineSource], destination: str, base_dir
    ) -> ArchiveEntry:
        if isinstance(source, InlineSource):
            data = source.data
            return ArchiveEntry(
                destination=destination,
                size=len(data),
                open=lambda: io.BytesIO(data),
            )

        path = source.resolve(base_dir)
        try:
            size = path.stat().st_size
        except OSError as e:
            raise InvalidApplicationError(f"Cannot read asset {path}: {e}") from e
        if not path.is_file():
            raise InvalidApplicationError(f"Asset is not a file: {path}")
        return ArchiveEntry(
            destination=destination, size=size, open=lambda: open(path, "rb")
        )

    def _build_asset_layers(
        self, component: ComponentSource, base_dir: Optional[Path]
    ) -> List[Layer]:
        entries = [
            self._archive_entry(asset.source, asset.destination, base_dir)
            for asset in component.assets
        ]
        groups = plan_archives(entries, self.asset_archive_max_bytes)

        layers = []
        for index, group in enumerate(groups):
            with tempfile.TemporaryFile(dir=self.cache.tmp_dir) as tmp:
                write_archive(group, tmp)
                tmp.seek(0)
                archive_digest, size = hash_stream(tmp)
                tmp.seek(0)
                self.cache.write(archive_digest, tmp)

            title = f"assets/{component.id}.{index}.tar.gz"
            descriptor = BlobDescriptor(
                digest=archive_digest,
                size=size,
                media_type=media_types.ASSET_ARCHIVE,
                annotations={media_types.ANNOTATION_TITLE: title},
            )
            layers.append(
                Layer.create(descriptor, LayerRole.ASSETS, title, component.id)
            )
            log.debug(
                f"   Assets for {component.id}: {len(group)} files in {archive_digest}"
            )
        return layers

    def read_config(self, manifest: ArtifactManifest) -> Dict[str, Any]:
        """Decode the application config fragment of ``manifest`` from the cache."""
        if not self.cache.has(manifest.config.digest):
            raise MissingBlobError(manifest.config.digest, manifest.config.path)
        return json.loads(self.cache.read_bytes(manifest.config.digest))

    def materialize(
        self,
        manifest: ArtifactManifest,
        destination: Path,
        overwrite: bool = True,
        write_config: bool = False,
    ) -> List[str]:
        """Write the application files of ``manifest`` under ``destination``.

        Every referenced blob must already be in the cache; nothing is written
        otherwise. Files are assembled in a staging directory beside
        ``destination`` and moved into place once all layers are unpacked.

        Args:
            manifest: Artifact to materialize
            destination: Target directory (created if missing)
            overwrite: Replace files that already exist in ``destination``
            write_config: Also write the config fragment to ``CONFIG_PATH``

        Returns:
            Relative paths of the materialized files

        Raises:
            MissingBlobError: If a referenced blob is not cached.
            UnsafeArchiveError: If a layer path or archive member is unsafe.
            FileExistsError: If ``overwrite`` is False and a file exists.
        """
        for layer in manifest.blobs():
            if not self.cache.has(layer.digest):
                raise MissingBlobError(layer.digest, layer.path)

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(
                prefix=f".{destination.name}.staging-", dir=destination.parent
            )
        )

        try:
            files: List[str] = []
            for layer in manifest.layers:
                if layer.role == LayerRole.COMPONENT:
                    relative = self._layer_path(layer)
                    self._place_blob(layer.digest, staging / relative)
                    files.append(relative)
                elif layer.role == LayerRole.ASSETS:
                    with self.cache.open_for_read(layer.digest) as stream:
                        files.extend(extract_archive(stream, staging))
                else:
                    log.warning(f"Skipping layer {layer.digest} with role {layer.role}")

            if write_config:
                self._place_blob(manifest.config.digest, staging / CONFIG_PATH)
                files.append(CONFIG_PATH)

            # A path may be produced by more than one layer; the last one wins
            files = list(dict.fromkeys(files))

            if not overwrite:
                existing = [name for name in files if (destination / name).exists()]
                if existing:
                    raise FileExistsError(
                        f"{len(existing)} files already exist in {destination}: "
                        f"{', '.join(existing[:5])}"
                    )

            for relative in files:
                target = destination / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(staging / relative, target)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        log.info(f"Materialized {len(files)} files into {destination}")
        return files

    @staticmethod
    def _layer_path(layer: Layer) -> str:
        try:
            return normalize_relative_path(layer.path or "")
        except ValueError as e:
            raise UnsafeArchiveError(f"Layer {layer.digest} has unsafe path: {e}") from e

    def _place_blob(self, digest: str, target: Path) -> None:
        # Always a copy: the cached blob must never share an inode with output
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.cache.path_for(digest), target)

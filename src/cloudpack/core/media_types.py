"""Media types and annotation keys used in cloudpack artifacts."""

# Top-level manifest: an OCI image manifest whose artifactType marks it as an app
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
APPLICATION_ARTIFACT_TYPE = "application/vnd.cloudpack.application.v1"

# Layer media types
APPLICATION_CONFIG = "application/vnd.cloudpack.application.config.v1+json"
COMPONENT_BINARY = "application/vnd.cloudpack.component.v1+wasm"
ASSET_ARCHIVE = "application/vnd.cloudpack.assets.v1.tar+gzip"

# Layer annotations
ANNOTATION_ROLE = "io.cloudpack.layer.role"
ANNOTATION_PATH = "io.cloudpack.layer.path"
ANNOTATION_COMPONENT = "io.cloudpack.component.id"
ANNOTATION_TITLE = "org.opencontainers.image.title"

# Manifest annotations
ANNOTATION_APP_NAME = "io.cloudpack.application.name"
ANNOTATION_APP_VERSION = "io.cloudpack.application.version"

# Accept header for manifest fetches
MANIFEST_ACCEPT = ", ".join([OCI_IMAGE_MANIFEST, "application/json"])

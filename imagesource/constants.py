CONFIG_FILE = 'config_file'
IMAGE_LAYER = 'image_layer'

# Provider (source) names
DOCKER_ARCHIVE_SOURCE = 'docker-archive'
OCI_ARCHIVE_SOURCE = 'oci-archive'
OCI_DIRECTORY_SOURCE = 'oci-dir'
SINGULARITY_SOURCE = 'singularity'
DOCKER_DAEMON_SOURCE = 'docker'
PODMAN_DAEMON_SOURCE = 'podman'
CONTAINERD_DAEMON_SOURCE = 'containerd'
OCI_REGISTRY_SOURCE = 'registry'

# Provider capability tags
TAG_FILE = 'file'
TAG_DAEMON = 'daemon'
TAG_REGISTRY = 'registry'
TAG_PULL = 'pull'

# Compression type constants
COMPRESSION_GZIP = 'gzip'
COMPRESSION_ZSTD = 'zstd'
COMPRESSION_NONE = 'none'
COMPRESSION_UNKNOWN = 'unknown'

# Docker manifest media types
MEDIA_TYPE_DOCKER_MANIFEST_V2 = \
    'application/vnd.docker.distribution.manifest.v2+json'
MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2 = \
    'application/vnd.docker.distribution.manifest.list.v2+json'
MEDIA_TYPE_DOCKER_CONFIG = 'application/vnd.docker.container.image.v1+json'

# Docker layer media types
MEDIA_TYPE_DOCKER_LAYER_GZIP = \
    'application/vnd.docker.image.rootfs.diff.tar.gzip'
MEDIA_TYPE_DOCKER_LAYER_ZSTD = \
    'application/vnd.docker.image.rootfs.diff.tar.zstd'

# OCI manifest media types
MEDIA_TYPE_OCI_MANIFEST = 'application/vnd.oci.image.manifest.v1+json'
MEDIA_TYPE_OCI_INDEX = 'application/vnd.oci.image.index.v1+json'
MEDIA_TYPE_OCI_CONFIG = 'application/vnd.oci.image.config.v1+json'

# OCI layer media types
MEDIA_TYPE_OCI_LAYER_GZIP = 'application/vnd.oci.image.layer.v1.tar+gzip'
MEDIA_TYPE_OCI_LAYER_ZSTD = 'application/vnd.oci.image.layer.v1.tar+zstd'
MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED = 'application/vnd.oci.image.layer.v1.tar'

# Singularity image format
MEDIA_TYPE_SIF_LAYER = 'application/vnd.sylabs.sif.layer.v1.squashfs'

MANIFEST_MEDIA_TYPES = (MEDIA_TYPE_DOCKER_MANIFEST_V2,
                        MEDIA_TYPE_OCI_MANIFEST)
INDEX_MEDIA_TYPES = (MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
                     MEDIA_TYPE_OCI_INDEX)
CONFIG_MEDIA_TYPES = (MEDIA_TYPE_DOCKER_CONFIG,
                      MEDIA_TYPE_OCI_CONFIG)

# OCI image layout
OCI_LAYOUT_FILE = 'oci-layout'
OCI_INDEX_FILE = 'index.json'
OCI_BLOBS_DIR = 'blobs'
OCI_LAYOUT_VERSION = '1.0.0'
ANNOTATION_REF_NAME = 'org.opencontainers.image.ref.name'

# docker save tarball
DOCKER_MANIFEST_FILE = 'manifest.json'

# Event types published on the progress bus
EVENT_FETCH_IMAGE = 'fetch-image'
EVENT_PULL_IMAGE = 'pull-image'

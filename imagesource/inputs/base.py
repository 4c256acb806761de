from abc import ABC, abstractmethod
from collections import namedtuple


ImageManifest = namedtuple(
    'ImageManifest',
    ['digest', 'media_type', 'config_name', 'config', 'layers', 'tags'])
ImageManifest.__doc__ = """What an image reader found when loading an image.

digest and media_type describe the manifest (digest may be None for docker
save tarballs, which carry no manifest digest). config is the raw image
config bytes. layers is a list of Layer. tags is a list of repository tags
recorded by the source.
"""

Layer = namedtuple('Layer', ['name', 'media_type', 'size'])


def always_fetch(digest):
    return True


class ImageInput(ABC):
    """Abstract base class for image readers.

    Readers understand one on-disk image format (a docker save tarball, an
    OCI image layout) and present it in a standard way: load() parses the
    manifest and config, and fetch() yields image elements (config files
    and layers), with layers always as plain uncompressed tar streams.
    """

    @property
    @abstractmethod
    def image(self):
        """Return the image name."""
        pass

    @property
    @abstractmethod
    def tag(self):
        """Return the image tag."""
        pass

    @abstractmethod
    def load(self):
        """Parse the image, returning an ImageManifest.

        Raises an exception if the image is not readable.
        """
        pass

    @abstractmethod
    def fetch(self, fetch_callback=always_fetch):
        """Fetch image elements (config files and layers).

        Args:
            fetch_callback: Optional callable that takes a layer digest and
                returns True if the layer should be fetched, False to skip.

        Yields:
            Tuples of (element_type, name, data) where:
            - element_type is constants.CONFIG_FILE or constants.IMAGE_LAYER
            - name is the element identifier (config filename or layer digest)
            - data is a file-like object containing the element data,
              or None if the layer was skipped by fetch_callback
        """
        pass


def split_repo_tag(repo_tag):
    """Split 'registry/image:tag' into image and tag, defaulting the tag."""
    if ':' in repo_tag.rsplit('/', 1)[-1]:
        return repo_tag.rsplit(':', 1)
    return repo_tag, 'latest'

# Read images held in an OCI image layout, either a directory or (once
# unpacked with extract_layout()) an OCI archive tarball.
#
# https://github.com/opencontainers/image-spec/blob/main/image-layout.md
#
# Layers in a layout are usually gzip or zstd compressed. They are
# decompressed to temporary files as they are fetched, so that consumers
# always see plain tar streams, as they do for docker save tarballs.

import io
import json
import logging
import os
import tarfile
import tempfile

from imagesource import compression
from imagesource import constants
from imagesource import layout
from imagesource import resolver
from imagesource.inputs.base import (
    ImageInput, ImageManifest, Layer, always_fetch, split_repo_tag)


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


def extract_layout(tar_path, destination):
    """Unpack an OCI archive into a layout directory."""
    LOG.info('Extracting OCI archive %s to %s' % (tar_path, destination))
    with tarfile.open(tar_path, 'r') as tf:
        if hasattr(tarfile, 'data_filter'):
            tf.extractall(destination, filter='data')
        else:
            tf.extractall(destination,
                          members=_checked_members(tf, destination))
    return destination


def _checked_members(tf, destination):
    """Members safe to extract, for interpreters without tarfile filters.

    A layout only holds directories and regular files, all below its root.
    """
    root = os.path.realpath(destination)
    for member in tf.getmembers():
        target = os.path.realpath(os.path.join(root, member.name))
        if os.path.commonpath([root, target]) != root:
            raise layout.LayoutError(
                'refusing to extract %s outside of %s'
                % (member.name, destination))
        if not (member.isdir() or member.isfile()):
            raise layout.LayoutError(
                'refusing to extract %s, which is not a file or directory'
                % member.name)
        yield member


class OCILayout(ImageInput):
    def __init__(self, path, descriptor=None, reference=None, temp_dir=None):
        """Read one image from the layout at path.

        Args:
            path: The layout directory.
            descriptor: Optional resolver.Descriptor of the manifest (or
                manifest list) to read, as found by a PlatformResolver.
            reference: Optional reference name the image is recorded under
                in index.json. Used to find the image when no descriptor
                is given.
            temp_dir: Directory decompressed layers are written to.
        """
        self.path = path
        self.store = layout.LayoutStore(path)
        self.descriptor = descriptor
        self.reference = reference
        self.temp_dir = temp_dir

        self._manifest_descriptor = None
        self._manifest = None
        self._ref_name = None

    def _top_descriptor(self):
        if self.descriptor is not None:
            return self.descriptor
        if self.reference:
            return self.store.get_image(self.reference)
        return self.store.default_image()

    def _load_manifest(self):
        if self._manifest is not None:
            return self._manifest

        if not self.store.is_layout():
            raise layout.LayoutError('%s is not an OCI image layout'
                                     % self.path)

        descriptor = self._top_descriptor()
        self._ref_name = (descriptor.annotations or {}).get(
            constants.ANNOTATION_REF_NAME)

        # A manifest list without a platform preference reads its first entry
        while descriptor.media_type in constants.INDEX_MEDIA_TYPES:
            index = json.loads(self.store.read_blob(descriptor))
            entries = index.get('manifests', [])
            if not entries:
                raise resolver.ImageNotFoundError(
                    'manifest list %s is empty' % descriptor.digest)
            if len(entries) > 1:
                LOG.info('Manifest list %s has %d entries, using the first'
                         % (descriptor.digest, len(entries)))
            descriptor = resolver.descriptor_from_dict(entries[0])

        if descriptor.media_type not in constants.MANIFEST_MEDIA_TYPES:
            raise resolver.ResolutionError(
                'unexpected mediaType for image manifest: %r'
                % descriptor.media_type)

        self._manifest_descriptor = descriptor
        self._manifest = json.loads(self.store.read_blob(descriptor))
        return self._manifest

    def _name(self):
        self._load_manifest()
        name = self.reference or self._ref_name
        if not name:
            return 'unknown', 'unknown'
        if '/' not in name and ':' not in name:
            # Layouts commonly record just a tag as the reference name
            return 'unknown', name
        return split_repo_tag(name)

    @property
    def image(self):
        return self._name()[0]

    @property
    def tag(self):
        return self._name()[1]

    def load(self):
        manifest = self._load_manifest()
        config_digest = manifest['config']['digest']
        config_data = self.store.read_blob(config_digest)

        layers = [Layer(layer['digest'], layer.get('mediaType'),
                        layer.get('size'))
                  for layer in manifest.get('layers', [])]

        tags = []
        if self.reference:
            tags.append(self.reference)
        elif self._ref_name and ':' in self._ref_name:
            tags.append(self._ref_name)

        return ImageManifest(self._manifest_descriptor.digest,
                             self._manifest_descriptor.media_type,
                             config_digest, config_data, layers, tags)

    def fetch(self, fetch_callback=always_fetch):
        LOG.info('Reading image from OCI layout %s' % self.path)
        manifest = self._load_manifest()

        config_digest = manifest['config']['digest']
        LOG.info('Reading config file %s' % config_digest)
        yield (constants.CONFIG_FILE, config_digest,
               io.BytesIO(self.store.read_blob(config_digest)))

        layers = manifest.get('layers', [])
        LOG.info('There are %d image layers' % len(layers))

        for layer in layers:
            digest = layer['digest']
            if not fetch_callback(digest):
                LOG.info('Fetch callback says skip layer %s' % digest)
                yield (constants.IMAGE_LAYER, digest, None)
                continue

            with self.store.open_blob(digest) as blob:
                compression_type = compression.layer_compression(
                    layer.get('mediaType'), blob)
                LOG.info('Reading layer %s (compression %s)'
                         % (digest, compression_type))
                if compression_type == constants.COMPRESSION_UNKNOWN:
                    compression_type = constants.COMPRESSION_NONE

                with tempfile.TemporaryFile(dir=self.temp_dir) as tf:
                    compression.decompress_stream(blob, tf, compression_type)
                    tf.seek(0)
                    yield (constants.IMAGE_LAYER, digest, tf)

        LOG.info('Done')

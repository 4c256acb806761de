# Read images in the format written by 'docker save' (and by the Docker
# Engine API's /images/{name}/get endpoint). The tarball carries a
# manifest.json listing, for each image, its config file, its layers and
# the repository tags it was saved under.
#
# Older Docker releases store layers as <id>/layer.tar, Docker 25 and later
# store them OCI style as blobs/sha256/<hex>. Both are handled.

import io
import json
import logging
import os
import tarfile
import tempfile

from imagesource import compression
from imagesource import constants
from imagesource.inputs.base import (
    ImageInput, ImageManifest, Layer, always_fetch, split_repo_tag)


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

COMPRESSED = (constants.COMPRESSION_GZIP, constants.COMPRESSION_ZSTD)

LAYER_MEDIA_TYPES = {
    constants.COMPRESSION_GZIP: constants.MEDIA_TYPE_OCI_LAYER_GZIP,
    constants.COMPRESSION_ZSTD: constants.MEDIA_TYPE_OCI_LAYER_ZSTD,
}


def get_member(tf, name):
    """Find a member, which some tools record with a leading ./"""
    try:
        return tf.getmember(name)
    except KeyError:
        return tf.getmember('./%s' % name)


def layer_name(layer_path):
    """Name a layer after its path in the tarball."""
    if layer_path.startswith('%s/' % constants.OCI_BLOBS_DIR):
        algorithm, digest = layer_path.split('/')[1:3]
        return '%s:%s' % (algorithm, digest)
    # Layer path is like "abc123/layer.tar"
    return os.path.dirname(layer_path)


class DockerArchive(ImageInput):
    def __init__(self, tarfile_path, temp_dir=None):
        self.tarfile_path = tarfile_path
        self.temp_dir = temp_dir
        self._manifest = None
        self._image = None
        self._tag = None

    def _load_manifest(self):
        if self._manifest is not None:
            return self._manifest

        with tarfile.open(self.tarfile_path, 'r') as tf:
            manifest_member = get_member(tf, constants.DOCKER_MANIFEST_FILE)
            manifest_file = tf.extractfile(manifest_member)
            manifest = json.loads(manifest_file.read().decode('utf-8'))

        if not manifest:
            raise ValueError('%s lists no images' % self.tarfile_path)
        if len(manifest) > 1:
            LOG.warning('%s holds %d images, using the first'
                        % (self.tarfile_path, len(manifest)))
        self._manifest = manifest

        # Format is typically ["image:tag"] or ["registry/image:tag"]
        repo_tags = self._manifest[0].get('RepoTags') or []
        if repo_tags:
            self._image, self._tag = split_repo_tag(repo_tags[0])
        else:
            self._image = 'unknown'
            self._tag = 'unknown'
        return self._manifest

    @property
    def image(self):
        self._load_manifest()
        return self._image

    @property
    def tag(self):
        self._load_manifest()
        return self._tag

    def load(self):
        manifest = self._load_manifest()[0]
        with tarfile.open(self.tarfile_path, 'r') as tf:
            config_filename = manifest['Config']
            config_file = tf.extractfile(get_member(tf, config_filename))
            config_data = config_file.read()

            layers = []
            for layer_path in manifest['Layers']:
                member = get_member(tf, layer_path)
                compression_type = compression.detect_compression(
                    tf.extractfile(member))
                layers.append(Layer(
                    layer_name(layer_path),
                    LAYER_MEDIA_TYPES.get(
                        compression_type,
                        constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED),
                    member.size))

        return ImageManifest(None, constants.MEDIA_TYPE_DOCKER_MANIFEST_V2,
                             config_filename, config_data, layers,
                             list(manifest.get('RepoTags') or []))

    def fetch(self, fetch_callback=always_fetch):
        LOG.info('Reading image from tarball %s' % self.tarfile_path)
        manifest = self._load_manifest()[0]

        with tarfile.open(self.tarfile_path, 'r') as tf:
            config_filename = manifest['Config']
            LOG.info('Reading config file %s' % config_filename)
            config_file = tf.extractfile(get_member(tf, config_filename))
            yield (constants.CONFIG_FILE, config_filename,
                   io.BytesIO(config_file.read()))

            layers = manifest['Layers']
            LOG.info('There are %d image layers' % len(layers))

            for layer_path in layers:
                name = layer_name(layer_path)
                if not fetch_callback(name):
                    LOG.info('Fetch callback says skip layer %s' % name)
                    yield (constants.IMAGE_LAYER, name, None)
                    continue

                LOG.info('Reading layer %s' % layer_path)
                layer_file = tf.extractfile(get_member(tf, layer_path))
                compression_type = compression.detect_compression(layer_file)
                if compression_type not in COMPRESSED:
                    yield (constants.IMAGE_LAYER, name, layer_file)
                    continue

                # containerd exports keep layers as compressed blobs
                LOG.info('Decompressing %s layer %s'
                         % (compression_type, name))
                with tempfile.TemporaryFile(dir=self.temp_dir) as plain:
                    compression.decompress_stream(layer_file, plain,
                                                  compression_type)
                    plain.seek(0)
                    yield (constants.IMAGE_LAYER, name, plain)

        LOG.info('Done')

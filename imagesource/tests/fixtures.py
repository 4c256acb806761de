"""Builders for small on disk images used by the tests."""

import gzip
import hashlib
import io
import json
import os
import tarfile

from imagesource import constants
from imagesource.inputs import sif


def digest_of(data):
    return 'sha256:%s' % hashlib.sha256(data).hexdigest()


def layer_tar(files):
    """A plain tar layer holding files, a dict of name to bytes."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w') as tf:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def image_config(os_name='linux', architecture='amd64', variant=None):
    config = {'os': os_name, 'architecture': architecture,
              'config': {'Env': ['PATH=/bin']},
              'rootfs': {'type': 'layers', 'diff_ids': []}}
    if variant:
        config['variant'] = variant
    return json.dumps(config, sort_keys=True).encode('utf-8')


def _add_bytes(tf, name, data):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    tf.addfile(info, io.BytesIO(data))


def make_docker_archive(path, repo_tags=('busybox:latest',), config=None,
                        layers=None, oci_style=False, prefix=''):
    """Write a docker save style tarball.

    Args:
        oci_style: Lay layers out as blobs/sha256/<hex>, as Docker 25 and
            later do, rather than <id>/layer.tar.
        prefix: Prefix for member names, for example './'.
    """
    config = config or image_config()
    layers = layers or [layer_tar({'etc/hostname': b'test\n'})]

    with tarfile.open(path, 'w') as tf:
        config_hex = hashlib.sha256(config).hexdigest()
        if oci_style:
            config_name = 'blobs/sha256/%s' % config_hex
        else:
            config_name = '%s.json' % config_hex
        _add_bytes(tf, prefix + config_name, config)

        layer_names = []
        for layer in layers:
            layer_hex = hashlib.sha256(layer).hexdigest()
            if oci_style:
                name = 'blobs/sha256/%s' % layer_hex
            else:
                name = '%s/layer.tar' % layer_hex
            _add_bytes(tf, prefix + name, layer)
            layer_names.append(name)

        manifest = [{'Config': config_name,
                     'RepoTags': list(repo_tags) if repo_tags else None,
                     'Layers': layer_names}]
        _add_bytes(tf, prefix + constants.DOCKER_MANIFEST_FILE,
                   json.dumps(manifest).encode('utf-8'))
    return path


class LayoutBuilder:
    """Write an OCI image layout, one manifest per platform."""

    def __init__(self, path):
        self.path = path
        os.makedirs(os.path.join(path, 'blobs', 'sha256'), exist_ok=True)
        with open(os.path.join(path, constants.OCI_LAYOUT_FILE), 'w') as f:
            f.write(json.dumps(
                {'imageLayoutVersion': constants.OCI_LAYOUT_VERSION}))
        self.index_entries = []

    def add_blob(self, data):
        if not isinstance(data, bytes):
            data = json.dumps(data, sort_keys=True).encode('utf-8')
        digest = digest_of(data)
        with open(os.path.join(self.path, 'blobs', 'sha256',
                               digest.split(':')[1]), 'wb') as f:
            f.write(data)
        return digest, len(data)

    def add_image(self, os_name='linux', architecture='amd64', variant=None,
                  files=None, compress=True):
        """Add a single platform image, returning its manifest descriptor."""
        config = image_config(os_name, architecture, variant)
        config_digest, config_size = self.add_blob(config)

        layer = layer_tar(files or {'etc/hostname': b'%s\n'
                                    % architecture.encode('utf-8')})
        if compress:
            layer = gzip.compress(layer)
            layer_media_type = constants.MEDIA_TYPE_OCI_LAYER_GZIP
        else:
            layer_media_type = constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED
        layer_digest, layer_size = self.add_blob(layer)

        manifest = {
            'schemaVersion': 2,
            'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
            'config': {'mediaType': constants.MEDIA_TYPE_OCI_CONFIG,
                       'digest': config_digest, 'size': config_size},
            'layers': [{'mediaType': layer_media_type,
                        'digest': layer_digest, 'size': layer_size}],
        }
        digest, size = self.add_blob(manifest)

        platform = {'os': os_name, 'architecture': architecture}
        if variant:
            platform['variant'] = variant
        return {'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
                'digest': digest, 'size': size, 'platform': platform}

    def add_index(self, entries):
        index = {'schemaVersion': 2,
                 'mediaType': constants.MEDIA_TYPE_OCI_INDEX,
                 'manifests': entries}
        digest, size = self.add_blob(index)
        return {'mediaType': constants.MEDIA_TYPE_OCI_INDEX,
                'digest': digest, 'size': size}

    def tag(self, descriptor, ref_name=None):
        entry = dict(descriptor)
        if ref_name:
            entry['annotations'] = {constants.ANNOTATION_REF_NAME: ref_name}
        self.index_entries.append(entry)

    def write(self):
        with open(os.path.join(self.path, constants.OCI_INDEX_FILE),
                  'w') as f:
            f.write(json.dumps({'schemaVersion': 2,
                                'manifests': self.index_entries}))
        return self.path


def make_oci_layout(path, ref_name='latest', **kwargs):
    builder = LayoutBuilder(path)
    builder.tag(builder.add_image(**kwargs), ref_name)
    return builder.write()


def make_oci_archive(tar_path, layout_path, **kwargs):
    make_oci_layout(layout_path, **kwargs)
    with tarfile.open(tar_path, 'w') as tf:
        for name in sorted(os.listdir(layout_path)):
            tf.add(os.path.join(layout_path, name), arcname=name)
    return tar_path


class FakeRemote:
    """Stands in for a registry.RegistryClient, serving from memory."""

    def __init__(self, tag='latest'):
        self.tag = tag
        self.manifests = {}
        self.blobs = {}
        self.requested = []
        self.closed = False

    def add_blob(self, data):
        if not isinstance(data, bytes):
            data = json.dumps(data, sort_keys=True).encode('utf-8')
        digest = digest_of(data)
        self.blobs[digest] = data
        return digest, len(data)

    def add_image(self, os_name='linux', architecture='amd64', variant=None):
        config_digest, config_size = self.add_blob(
            image_config(os_name, architecture, variant))
        layer_digest, layer_size = self.add_blob(gzip.compress(layer_tar(
            {'etc/hostname': architecture.encode('utf-8')})))
        manifest = json.dumps({
            'schemaVersion': 2,
            'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
            'config': {'mediaType': constants.MEDIA_TYPE_OCI_CONFIG,
                       'digest': config_digest, 'size': config_size},
            'layers': [{'mediaType': constants.MEDIA_TYPE_OCI_LAYER_GZIP,
                        'digest': layer_digest, 'size': layer_size}],
        }, sort_keys=True).encode('utf-8')
        digest = digest_of(manifest)
        self.manifests[digest] = (constants.MEDIA_TYPE_OCI_MANIFEST,
                                  manifest)

        platform = {'os': os_name, 'architecture': architecture}
        if variant:
            platform['variant'] = variant
        return {'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
                'digest': digest, 'size': len(manifest),
                'platform': platform}

    def tag_index(self, entries):
        index = json.dumps({'schemaVersion': 2,
                            'mediaType': constants.MEDIA_TYPE_OCI_INDEX,
                            'manifests': entries},
                           sort_keys=True).encode('utf-8')
        self.manifests[self.tag] = (constants.MEDIA_TYPE_OCI_INDEX, index)
        return digest_of(index)

    def tag_manifest(self, entry):
        self.manifests[self.tag] = self.manifests[entry['digest']]
        return entry['digest']

    def get_manifest(self, identifier=None, accept=None):
        identifier = identifier or self.tag
        self.requested.append(identifier)
        media_type, body = self.manifests[identifier]
        return media_type, body, digest_of(body)

    def get_blob(self, digest):
        self.requested.append(digest)
        return self.blobs[digest]

    def stream_blob(self, digest):
        self.requested.append(digest)
        data = self.blobs[digest]
        half = len(data) // 2
        yield data[:half]
        yield data[half:]

    def close(self):
        self.closed = True


def multi_arch_remote(tag='latest'):
    remote = FakeRemote(tag)
    entries = [remote.add_image('linux', 'amd64'),
               remote.add_image('linux', 'arm64', 'v8'),
               remote.add_image('linux', 'arm', 'v7')]
    remote.tag_index(entries)
    return remote, entries


def make_sif(path, partition=b'hsqs squashfs image', architecture='02',
             fs_type=sif.FS_SQUASHFS, part_type=sif.PART_PRIMARY_SYSTEM):
    """Write a SIF file holding a single partition."""
    descriptors_offset = sif.HEADER.size
    data_offset = descriptors_offset + sif.DESCRIPTOR.size
    arch = architecture.encode('ascii')

    header = sif.HEADER.pack(
        sif.LAUNCH_SCRIPT, sif.SIF_MAGIC, b'01', arch, b'\x00' * 16,
        0, 0, 0, 1, descriptors_offset, sif.DESCRIPTOR.size, data_offset,
        len(partition))
    descriptor = sif.DESCRIPTOR.pack(
        sif.DATA_PARTITION, True, 1, 0, 0, data_offset, len(partition),
        len(partition), 0, 0, 0, 0, b'rootfs',
        sif.PARTITION.pack(fs_type, part_type, arch))

    with open(path, 'wb') as f:
        f.write(header)
        f.write(descriptor)
        f.write(partition)
    return path

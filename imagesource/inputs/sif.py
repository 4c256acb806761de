# Read Singularity Image Format (SIF) files, as built by Singularity and
# Apptainer.
#
# https://github.com/sylabs/sif documents the format. A SIF file starts
# with a launch script line and a fixed size global header, followed by a
# table of data object descriptors. The container root filesystem is the
# primary system partition, a squashfs image, which is presented here as
# the image's only layer. Turning that squashfs into a tar layer needs
# unsquashfs from squashfs-tools.

from collections import namedtuple
import hashlib
import io
import json
import logging
import os
import shutil
import struct
import tarfile
import tempfile

from oslo_concurrency import processutils

from imagesource import constants
from imagesource import util
from imagesource.inputs.base import (
    ImageInput, ImageManifest, Layer, always_fetch)


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

SIF_MAGIC = b'SIF_MAGIC\x00'
LAUNCH_SCRIPT = b'#!/usr/bin/env run-singularity\n'

# All integers are little endian, and structures are packed
HEADER = struct.Struct('<32s10s3s3s16sqqqqqqqq')
DESCRIPTOR = struct.Struct('<i?IIIqqqqqqq128s384s')
PARTITION = struct.Struct('<ii3s')

DATA_PARTITION = 0x4004
FS_SQUASHFS = 1
PART_PRIMARY_SYSTEM = 2

ARCHITECTURES = {
    '01': '386',
    '02': 'amd64',
    '03': 'arm',
    '04': 'arm64',
    '05': 'ppc64',
    '06': 'ppc64le',
    '07': 'mips',
    '08': 'mipsle',
    '09': 'mips64',
    '10': 'mips64le',
    '11': 's390x',
    '12': 'riscv64',
}

UNSQUASHFS = 'unsquashfs'
CHUNK_SIZE = 65536


class SIFError(Exception):
    pass


Header = namedtuple('Header', ['version', 'architecture',
                               'descriptors_total', 'descriptors_offset'])
Partition = namedtuple('Partition', ['id', 'name', 'offset', 'size',
                                     'fs_type', 'part_type', 'architecture'])


def _cstring(raw):
    return raw.split(b'\x00', 1)[0].decode('utf-8', 'replace')


def is_sif(path):
    """Check for the SIF magic which follows the launch script."""
    try:
        with open(path, 'rb') as f:
            raw = f.read(HEADER.size)
    except OSError:
        return False
    return len(raw) == HEADER.size and HEADER.unpack(raw)[1] == SIF_MAGIC


def read_header(f):
    f.seek(0)
    raw = f.read(HEADER.size)
    if len(raw) != HEADER.size:
        raise SIFError('file is too short to hold a SIF header')

    fields = HEADER.unpack(raw)
    if fields[1] != SIF_MAGIC:
        raise SIFError('no SIF magic found')
    descriptors_total, descriptors_offset = fields[8], fields[9]
    return Header(_cstring(fields[2]), ARCHITECTURES.get(_cstring(fields[3])),
                  descriptors_total, descriptors_offset)


def read_partitions(f, header):
    """Return the partitions listed in the descriptor table."""
    partitions = []
    f.seek(header.descriptors_offset)
    for _ in range(header.descriptors_total):
        raw = f.read(DESCRIPTOR.size)
        if len(raw) != DESCRIPTOR.size:
            raise SIFError('descriptor table is truncated')

        fields = DESCRIPTOR.unpack(raw)
        data_type, used, object_id = fields[0:3]
        offset, size = fields[5:7]
        name, extra = fields[12:14]
        if not used or data_type != DATA_PARTITION:
            continue

        fs_type, part_type, arch = PARTITION.unpack(extra[:PARTITION.size])
        partitions.append(Partition(
            object_id, _cstring(name), offset, size, fs_type, part_type,
            ARCHITECTURES.get(_cstring(arch))))
    return partitions


def primary_partition(partitions):
    for partition in partitions:
        if partition.part_type != PART_PRIMARY_SYSTEM:
            continue
        if partition.fs_type != FS_SQUASHFS:
            raise SIFError('primary partition is not squashfs (filesystem '
                           'type %d)' % partition.fs_type)
        return partition
    raise SIFError('no primary system partition found')


def load_container(path):
    """Parse a SIF file, returning its header and primary partition."""
    with open(path, 'rb') as f:
        header = read_header(f)
        return header, primary_partition(read_partitions(f, header))


def _read_range(f, offset, size):
    f.seek(offset)
    remaining = size
    while remaining > 0:
        chunk = f.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            raise SIFError('partition extends past the end of the file')
        remaining -= len(chunk)
        yield chunk


def unsquash(squashfs_path, destination):
    try:
        util.execute([UNSQUASHFS, '-no-xattrs', '-force', '-dest',
                      destination, squashfs_path])
    except processutils.ProcessExecutionError as e:
        raise SIFError('unable to unpack squashfs partition: %s' % e)
    except OSError as e:
        raise SIFError('unable to run %s: %s' % (UNSQUASHFS, e))


class SIFImage(ImageInput):
    def __init__(self, path, temp_dir=None):
        self.path = path
        self.temp_dir = temp_dir
        self._header = None
        self._partition = None
        self._layer_digest = None

    def _load(self):
        if self._partition is None:
            self._header, self._partition = load_container(self.path)
        return self._partition

    @property
    def image(self):
        return os.path.splitext(os.path.basename(self.path))[0]

    @property
    def tag(self):
        # SIF files record no repository tags
        return 'unknown'

    def _config(self):
        partition = self._load()
        architecture = partition.architecture or self._header.architecture
        return json.dumps({'os': 'linux', 'architecture': architecture or ''},
                          sort_keys=True).encode('utf-8')

    def layer_digest(self):
        if self._layer_digest is None:
            partition = self._load()
            h = hashlib.sha256()
            with open(self.path, 'rb') as f:
                for chunk in _read_range(f, partition.offset, partition.size):
                    h.update(chunk)
            self._layer_digest = 'sha256:%s' % h.hexdigest()
        return self._layer_digest

    def load(self):
        partition = self._load()
        layer = Layer(self.layer_digest(), constants.MEDIA_TYPE_SIF_LAYER,
                      partition.size)
        return ImageManifest(None, None, None, self._config(), [layer], [])

    def fetch(self, fetch_callback=always_fetch):
        LOG.info('Reading image from SIF file %s' % self.path)
        partition = self._load()

        config = self._config()
        yield (constants.CONFIG_FILE,
               'sha256:%s' % hashlib.sha256(config).hexdigest(),
               io.BytesIO(config))

        digest = self.layer_digest()
        if not fetch_callback(digest):
            LOG.info('Fetch callback says skip layer %s' % digest)
            yield (constants.IMAGE_LAYER, digest, None)
            return

        work_dir = tempfile.mkdtemp(prefix='sif-', dir=self.temp_dir)
        try:
            squashfs_path = os.path.join(work_dir, 'rootfs.squashfs')
            with open(self.path, 'rb') as f:
                with open(squashfs_path, 'wb') as out:
                    for chunk in _read_range(f, partition.offset,
                                             partition.size):
                        out.write(chunk)

            rootfs = os.path.join(work_dir, 'rootfs')
            LOG.info('Unpacking partition %s (%d bytes)'
                     % (partition.name, partition.size))
            unsquash(squashfs_path, rootfs)

            with tempfile.TemporaryFile(dir=self.temp_dir) as layer:
                with tarfile.open(fileobj=layer, mode='w') as tf:
                    for name in sorted(os.listdir(rootfs)):
                        tf.add(os.path.join(rootfs, name), arcname=name)
                layer.seek(0)
                yield (constants.IMAGE_LAYER, digest, layer)
        finally:
            shutil.rmtree(work_dir)

        LOG.info('Done')

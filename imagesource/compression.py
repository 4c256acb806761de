"""Layer compression handling.

OCI images may carry their layers gzip or zstd compressed, while a docker
save tarball carries plain tar layers. Images are normalised to plain tar
layers when fetched, so consumers see the same thing whichever source the
image came from.
"""

import zlib

import zstandard as zstd

from imagesource import constants


GZIP_MAGIC = b'\x1f\x8b'
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'
TAR_MAGIC_OFFSET = 257
TAR_MAGIC = b'ustar'

CHUNK_SIZE = 8192


def detect_compression(fileobj):
    """Detect compression from the magic bytes of a seekable file.

    The file position is restored before returning.
    """
    pos = fileobj.tell()
    try:
        magic = fileobj.read(4)
        if magic[:2] == GZIP_MAGIC:
            return constants.COMPRESSION_GZIP
        if magic == ZSTD_MAGIC:
            return constants.COMPRESSION_ZSTD

        fileobj.seek(pos + TAR_MAGIC_OFFSET)
        if fileobj.read(len(TAR_MAGIC)) == TAR_MAGIC:
            return constants.COMPRESSION_NONE
        return constants.COMPRESSION_UNKNOWN
    finally:
        fileobj.seek(pos)


def detect_compression_from_media_type(media_type):
    if media_type is None:
        return constants.COMPRESSION_UNKNOWN

    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_GZIP,
                      constants.MEDIA_TYPE_OCI_LAYER_GZIP):
        return constants.COMPRESSION_GZIP
    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_ZSTD,
                      constants.MEDIA_TYPE_OCI_LAYER_ZSTD):
        return constants.COMPRESSION_ZSTD
    if media_type == constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED:
        return constants.COMPRESSION_NONE

    # Fallback: check for known suffixes
    if media_type.endswith('+gzip') or media_type.endswith('.gzip'):
        return constants.COMPRESSION_GZIP
    if media_type.endswith('+zstd') or media_type.endswith('.zstd'):
        return constants.COMPRESSION_ZSTD
    if media_type.endswith('.tar') and '+' not in media_type:
        return constants.COMPRESSION_NONE

    return constants.COMPRESSION_UNKNOWN


def layer_compression(media_type, fileobj):
    """Work out how a layer is compressed, preferring its media type."""
    compression_type = detect_compression_from_media_type(media_type)
    if compression_type == constants.COMPRESSION_UNKNOWN:
        compression_type = detect_compression(fileobj)
    return compression_type


class StreamingDecompressor:
    """Chunk by chunk decompression of gzip or zstd data."""

    def __init__(self, compression_type):
        self.compression_type = compression_type

        if compression_type == constants.COMPRESSION_GZIP:
            # Use zlib with gzip header support (16 + MAX_WBITS)
            self._decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        elif compression_type == constants.COMPRESSION_ZSTD:
            self._decompressor = zstd.ZstdDecompressor().decompressobj()
        elif compression_type == constants.COMPRESSION_NONE:
            self._decompressor = None
        else:
            raise ValueError(
                'Unsupported compression type: %s' % compression_type)

    def decompress(self, chunk):
        if self._decompressor is None:
            return chunk
        return self._decompressor.decompress(chunk)

    def flush(self):
        if self._decompressor is None:
            return b''
        if self.compression_type == constants.COMPRESSION_GZIP:
            return self._decompressor.flush()
        # zstd doesn't have a flush method on decompressobj
        return b''


def decompress_stream(source, destination, compression_type):
    """Copy source to destination, decompressing on the way."""
    d = StreamingDecompressor(compression_type)
    while True:
        chunk = source.read(CHUNK_SIZE)
        if not chunk:
            break
        destination.write(d.decompress(chunk))
    remaining = d.flush()
    if remaining:
        destination.write(remaining)

# A content store backed by an OCI image layout directory.
#
# https://github.com/opencontainers/image-spec/blob/main/image-layout.md
# documents the layout: an oci-layout marker file, an index.json listing
# the images held (tagged with an org.opencontainers.image.ref.name
# annotation) and a blobs/<algorithm>/<hex> tree of content addressed
# blobs.
#
# When given a remote (a registry.RegistryClient), the store can pull
# references into itself. For a manifest list only the entry strictly
# matching the requested platform is pulled, so the layout never holds
# content for platforms nobody asked for.

import hashlib
import json
import logging
import os
import tempfile

from imagesource import constants
from imagesource import progress
from imagesource import resolver


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class LayoutError(Exception):
    pass


def digest_bytes(data):
    return 'sha256:%s' % hashlib.sha256(data).hexdigest()


class LayoutStore:
    def __init__(self, path, remote=None, context=None):
        """Create a store for the layout at path.

        Args:
            path: The layout directory.
            remote: Optional registry client references are pulled from.
            context: Optional runtime.ExecutionContext, checked for
                cancellation while copying blobs.
        """
        self.path = path
        self.remote = remote
        self.context = context

    def _check_cancelled(self):
        if self.context is not None:
            self.context.check_cancelled()

    def is_layout(self):
        return os.path.exists(os.path.join(self.path,
                                           constants.OCI_LAYOUT_FILE))

    def initialize(self):
        """Create an empty layout, unless one already exists."""
        os.makedirs(os.path.join(self.path, constants.OCI_BLOBS_DIR),
                    exist_ok=True)
        layout_file = os.path.join(self.path, constants.OCI_LAYOUT_FILE)
        if not os.path.exists(layout_file):
            with open(layout_file, 'w') as f:
                f.write(json.dumps(
                    {'imageLayoutVersion': constants.OCI_LAYOUT_VERSION}))

        index_file = os.path.join(self.path, constants.OCI_INDEX_FILE)
        if not os.path.exists(index_file):
            self._write_index({'schemaVersion': 2,
                               'mediaType': constants.MEDIA_TYPE_OCI_INDEX,
                               'manifests': []})

    # Blobs

    def blob_path(self, digest):
        if not digest or ':' not in digest:
            raise LayoutError('Invalid digest %r' % digest)
        algorithm, encoded = digest.split(':', 1)
        if '/' in algorithm or '/' in encoded or encoded.startswith('.'):
            raise LayoutError('Invalid digest %r' % digest)
        return os.path.join(self.path, constants.OCI_BLOBS_DIR, algorithm,
                            encoded)

    def has_blob(self, digest):
        return os.path.exists(self.blob_path(digest))

    def read_blob(self, descriptor):
        """Return the bytes a descriptor (or bare digest) refers to."""
        digest = getattr(descriptor, 'digest', descriptor)
        path = self.blob_path(digest)
        if not os.path.exists(path):
            raise resolver.ResolutionError('blob %s not found in %s'
                                           % (digest, self.path))
        with open(path, 'rb') as f:
            return f.read()

    def open_blob(self, digest):
        return open(self.blob_path(digest), 'rb')

    def write_blob(self, data, expected_digest=None):
        digest = digest_bytes(data)
        if expected_digest and expected_digest != digest:
            raise LayoutError('Hash verification failed for blob (%s vs %s)'
                              % (expected_digest, digest))
        self.write_blob_chunks([data], digest)
        return digest

    def write_blob_chunks(self, chunks, expected_digest, copied=None):
        """Write a blob from an iterable of chunks, verifying its digest.

        The blob only appears at its final path once fully written and
        verified.
        """
        final_path = self.blob_path(expected_digest)
        os.makedirs(os.path.dirname(final_path), exist_ok=True)

        h = hashlib.sha256()
        fd, temp_path = tempfile.mkstemp(dir=os.path.dirname(final_path),
                                         prefix='.partial-')
        try:
            with os.fdopen(fd, 'wb') as f:
                for chunk in chunks:
                    self._check_cancelled()
                    f.write(chunk)
                    h.update(chunk)
                    if copied is not None:
                        copied.add(len(chunk))

            actual = 'sha256:%s' % h.hexdigest()
            if actual != expected_digest:
                LOG.error('Hash verification failed for blob (%s vs %s)'
                          % (expected_digest, actual))
                raise LayoutError('Hash verification failed for blob %s'
                                  % expected_digest)
            os.rename(temp_path, final_path)
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

    # Index

    def read_index(self):
        index_file = os.path.join(self.path, constants.OCI_INDEX_FILE)
        if not os.path.exists(index_file):
            return {'schemaVersion': 2, 'manifests': []}
        with open(index_file) as f:
            return json.loads(f.read())

    def _write_index(self, index):
        index_file = os.path.join(self.path, constants.OCI_INDEX_FILE)
        with open(index_file, 'w') as f:
            f.write(json.dumps(index, indent=4, sort_keys=True))

    def add_reference(self, reference, descriptor):
        """Record descriptor in index.json under a reference name."""
        index = self.read_index()
        manifests = [
            m for m in index.get('manifests', [])
            if (m.get('annotations') or {}).get(
                constants.ANNOTATION_REF_NAME) != reference]

        entry = {
            'mediaType': descriptor.media_type,
            'digest': descriptor.digest,
            'size': descriptor.size,
            'annotations': {constants.ANNOTATION_REF_NAME: reference},
        }
        if descriptor.platform:
            entry['platform'] = descriptor.platform
        manifests.append(entry)
        index['manifests'] = manifests
        self._write_index(index)

    def get_image(self, reference):
        """Find the index entry recorded under a reference name."""
        for entry in self.read_index().get('manifests', []):
            annotations = entry.get('annotations') or {}
            if annotations.get(constants.ANNOTATION_REF_NAME) == reference:
                return resolver.descriptor_from_dict(entry)
        raise resolver.ImageNotFoundError(
            'image %s not found in %s' % (reference, self.path))

    def default_image(self):
        """The first image listed in index.json."""
        manifests = self.read_index().get('manifests', [])
        if not manifests:
            raise resolver.ImageNotFoundError(
                'no images listed in %s' % self.path)
        return resolver.descriptor_from_dict(manifests[0])

    # Pulling

    def pull(self, reference, platform):
        """Copy a reference from the remote registry into the layout."""
        if self.remote is None:
            raise resolver.ResolutionError(
                'no registry to pull %s from' % reference)

        self.initialize()
        LOG.info('Pulling %s into %s' % (reference, self.path))
        media_type, body, digest = self.remote.get_manifest()
        self.write_blob(body, digest)
        top = resolver.Descriptor(media_type, digest, len(body))

        if media_type in constants.INDEX_MEDIA_TYPES:
            index = json.loads(body)
            if platform is None:
                children = [resolver.descriptor_from_dict(m)
                            for m in index.get('manifests', [])]
            else:
                selected = resolver.select_manifest(index, platform)
                children = [selected] if selected else []
                if not children:
                    LOG.warning('No manifest in %s matches platform %s'
                                % (reference, platform))

            for child in children:
                self._pull_manifest(reference, child.digest)

        elif media_type in constants.MANIFEST_MEDIA_TYPES:
            self._pull_image_content(reference, json.loads(body))

        else:
            raise resolver.ResolutionError(
                'unexpected mediaType for image: %r' % media_type)

        self.add_reference(reference, top)

    def _pull_manifest(self, reference, digest):
        _, body, _ = self.remote.get_manifest(
            digest, accept=constants.MANIFEST_MEDIA_TYPES)
        self.write_blob(body, digest)
        self._pull_image_content(reference, json.loads(body))

    def _pull_image_content(self, reference, manifest):
        config = manifest['config']
        if not self.has_blob(config['digest']):
            LOG.info('Fetching config file')
            self.write_blob(self.remote.get_blob(config['digest']),
                            config['digest'])

        layers = manifest.get('layers', [])
        LOG.info('There are %d image layers' % len(layers))
        total = sum(layer.get('size', 0) for layer in layers)

        tracked = progress.track_copy_progress(
            reference, total, event_type=constants.EVENT_PULL_IMAGE)
        try:
            for layer in layers:
                self._check_cancelled()
                tracked.stage.current = 'pulling layer %s' % layer['digest']
                if self.has_blob(layer['digest']):
                    LOG.info('Layer %s already present' % layer['digest'])
                    tracked.copied.add(layer.get('size', 0))
                    continue

                LOG.info('Fetching layer %s (%d bytes)'
                         % (layer['digest'], layer.get('size', 0)))
                self.write_blob_chunks(
                    self.remote.stream_blob(layer['digest']),
                    layer['digest'], copied=tracked.copied)
        finally:
            # Observers must always see the copy finish
            tracked.set_completed()

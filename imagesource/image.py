"""The image artifact returned by providers.

An Image wraps an image reader (a docker save tarball or an OCI layout)
together with where it came from. Nothing is parsed until read() is
called, which loads the manifest and config into Metadata and then applies
the metadata updates the provider and the caller asked for, in order.
"""

import hashlib
import json
import logging

from imagesource import reference


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class ImageReadError(Exception):
    """Raised when an image (or one of its metadata updates) fails to read.

    Every failure is collected in errors, read() does not stop at the
    first one.
    """

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])

    def __str__(self):
        if not self.errors:
            return super().__str__()
        return '%s: %s' % (super().__str__(),
                           '; '.join(str(e) for e in self.errors))


class Metadata:
    def __init__(self, id=None, manifest_digest=None, media_type=None,
                 os='', architecture='', variant='', tags=None,
                 repo_digests=None, layers=None, size=0, config=None):
        self.id = id
        self.manifest_digest = manifest_digest
        self.media_type = media_type
        self.os = os
        self.architecture = architecture
        self.variant = variant
        self.tags = list(tags or [])
        self.repo_digests = list(repo_digests or [])
        self.layers = list(layers or [])
        self.size = size
        self.config = config or {}

    def __repr__(self):
        return ('Metadata(id=%s, os=%s, architecture=%s, variant=%s, '
                'tags=%s)' % (self.id, self.os, self.architecture,
                              self.variant, self.tags))

    def to_dict(self):
        return {
            'id': self.id,
            'manifestDigest': self.manifest_digest,
            'mediaType': self.media_type,
            'os': self.os,
            'architecture': self.architecture,
            'variant': self.variant,
            'tags': self.tags,
            'repoDigests': self.repo_digests,
            'layers': [
                {'digest': layer.name, 'mediaType': layer.media_type,
                 'size': layer.size}
                for layer in self.layers],
            'size': self.size,
        }


# Metadata updates. Each returns a callable taking an Image, which may raise
# to report that the update could not be applied.

def with_tags(*tags):
    def update(image):
        for tag in tags:
            # Validate, as a tag must be a usable image reference
            reference.parse_reference(tag)
            if tag not in image.metadata.tags:
                image.metadata.tags.append(tag)
    return update


def with_architecture(architecture, variant=''):
    def update(image):
        image.metadata.architecture = architecture
        image.metadata.variant = variant
    return update


def with_os(os_name):
    def update(image):
        image.metadata.os = os_name
    return update


def with_repo_digests(*digests):
    def update(image):
        for digest in digests:
            if digest not in image.metadata.repo_digests:
                image.metadata.repo_digests.append(digest)
    return update


class Image:
    def __init__(self, reader, source, reference=None,
                 additional_metadata=None, context=None, owns_context=False):
        """An image acquired by a provider.

        Args:
            reader: An inputs.base.ImageInput for the image content.
            source: The name of the provider which found the image.
            reference: The reference or path the user asked for.
            additional_metadata: Updates applied, in order, by read().
            context: The runtime.ExecutionContext the image was acquired
                under. Its temporary directories hold the image content.
            owns_context: If True, cleanup() also cleans up the context.
        """
        self.reader = reader
        self.source = source
        self.reference = reference
        self.additional_metadata = list(additional_metadata or [])
        self.context = context
        self.owns_context = owns_context
        self.metadata = None

    def __repr__(self):
        return 'Image(source=%s, reference=%s)' % (self.source,
                                                   self.reference)

    @property
    def image(self):
        return self.reader.image

    @property
    def tag(self):
        return self.reader.tag

    def read(self):
        """Parse the image and apply its metadata updates.

        Raises:
            ImageReadError: If the image can not be parsed, or any update
                fails. Updates after a failing one are still applied.
        """
        try:
            manifest = self.reader.load()
            config = json.loads(manifest.config)
        except Exception as e:
            raise ImageReadError('unable to read image', [e])

        config_digest = manifest.config_name
        if not config_digest or not config_digest.startswith('sha256:'):
            config_digest = 'sha256:%s' % hashlib.sha256(
                manifest.config).hexdigest()

        repo_digests = []
        if manifest.digest and self.reference:
            try:
                ref = reference.parse_reference(self.reference)
                repo_digests.append('%s@%s' % (ref.repository,
                                               manifest.digest))
            except reference.ReferenceParseError:
                LOG.debug('%s is not a reference, no repo digest recorded'
                          % self.reference)

        self.metadata = Metadata(
            id=config_digest, manifest_digest=manifest.digest,
            media_type=manifest.media_type, os=config.get('os', ''),
            architecture=config.get('architecture', ''),
            variant=config.get('variant', ''), tags=manifest.tags,
            repo_digests=repo_digests, layers=manifest.layers,
            size=sum(layer.size or 0 for layer in manifest.layers),
            config=config)

        errors = []
        for update in self.additional_metadata:
            try:
                update(self)
            except Exception as e:
                errors.append(e)
        if errors:
            raise ImageReadError('unable to apply image metadata', errors)

        LOG.debug('Read image %r' % self.metadata)
        return self.metadata

    def fetch(self, fetch_callback=None):
        """Yield the image config and its layers as plain tar streams."""
        if fetch_callback is None:
            return self.reader.fetch()
        return self.reader.fetch(fetch_callback=fetch_callback)

    def cleanup(self):
        """Release the temporary content behind this image."""
        if self.context is None:
            return
        if self.owns_context:
            self.context.cleanup()
        else:
            LOG.debug('Image %r content is released with its context' % self)

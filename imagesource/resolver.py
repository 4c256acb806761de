"""Resolving image references to a single platform specific manifest.

A reference may point at a single platform manifest, at a manifest list
(OCI index) covering several platforms, or (for daemons which only expose
image configs) directly at an image config. The PlatformResolver walks
whichever of these it finds in a content store and works out the concrete
platform of the image, selecting the strictly matching entry of a manifest
list when a platform was requested.

A content store is any object providing:

    get_image(reference) -> Descriptor
        Look a reference up. Raises ImageNotFoundError when absent.
    read_blob(descriptor) -> bytes
        Return the content a descriptor refers to.
    pull(reference, platform)
        Fetch a reference (for the given platform, which may be None) into
        the store from wherever the store pulls from.
"""

from collections import namedtuple
import json
import logging

from imagesource import constants
from imagesource import platforms


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


Descriptor = namedtuple(
    'Descriptor', ['media_type', 'digest', 'size', 'platform', 'annotations'],
    defaults=(None, None))


def descriptor_from_dict(data):
    return Descriptor(data.get('mediaType'), data.get('digest'),
                      data.get('size'), data.get('platform'),
                      data.get('annotations'))


Resolution = namedtuple('Resolution', ['reference', 'platform', 'descriptor'])
Resolution.__doc__ = """The outcome of resolving a reference.

platform is the platforms.Platform the image declares, or None when no
platform was requested (and so none was looked for). descriptor is the
platform specific manifest (or config) selected, or the top level
descriptor when no platform was requested.
"""


class ResolutionError(Exception):
    """Raised when a reference cannot be resolved to a manifest."""
    pass


class ImageNotFoundError(ResolutionError):
    """Raised by content stores when a reference is not present."""
    pass


class NoMatchingManifestError(ResolutionError):
    """Raised when no manifest list entry matches the requested platform."""
    pass


class PlatformMismatchError(Exception):
    """Raised when the resolved platform differs from the requested one."""
    pass


def select_manifest(index, platform):
    """Return the first index entry strictly matching platform, or None.

    Entries are considered in the order they are listed. Entries without
    platform information never match.
    """
    for entry in index.get('manifests', []):
        entry_platform = entry.get('platform')
        if not entry_platform:
            continue

        candidate = platforms.from_dict(entry_platform)
        LOG.debug('Found manifest %s for %s'
                  % (entry.get('digest'), candidate))
        if platform.matches(candidate):
            return descriptor_from_dict(entry)
    return None


class PlatformResolver:
    def __init__(self, store, platform=None, context=None):
        """Resolve references held in a content store.

        Args:
            store: The content store to resolve against.
            platform: The platforms.Platform wanted, or None to accept
                whatever the store resolves a reference to.
            context: Optional runtime.ExecutionContext checked for
                cancellation before each store operation.
        """
        self.store = store
        self.platform = platform
        self.context = context

    def _check_cancelled(self):
        if self.context is not None:
            self.context.check_cancelled()

    def _read_json(self, descriptor, what):
        self._check_cancelled()
        try:
            data = self.store.read_blob(descriptor)
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError('unable to fetch %s: %s' % (what, e))

        try:
            return json.loads(data)
        except ValueError as e:
            raise ResolutionError('unable to parse %s: %s' % (what, e))

    def fetch_manifest(self, descriptor):
        if descriptor.media_type not in constants.MANIFEST_MEDIA_TYPES:
            raise ResolutionError('unexpected mediaType for image manifest: %r'
                                  % descriptor.media_type)
        return self._read_json(descriptor, 'image manifest')

    def fetch_platform_from_config(self, descriptor):
        if descriptor.media_type not in constants.CONFIG_MEDIA_TYPES:
            raise ResolutionError('unexpected mediaType for image config: %r'
                                  % descriptor.media_type)
        config = self._read_json(descriptor, 'image config')
        return platforms.from_dict(config)

    def _process_manifest(self, reference, descriptor):
        manifest = self.fetch_manifest(descriptor)
        config = manifest.get('config')
        if not config:
            raise ResolutionError('image manifest %s has no config'
                                  % descriptor.digest)
        platform = self.fetch_platform_from_config(
            descriptor_from_dict(config))
        return Resolution(reference, platform, descriptor)

    def resolve(self, reference):
        """Resolve a reference present in the store.

        Raises:
            ResolutionError: If the reference is absent, or no manifest
                for the requested platform can be found.
        """
        self._check_cancelled()
        descriptor = self.store.get_image(reference)

        if self.platform is None:
            # Not a platform specific request, take what the store has
            return Resolution(reference, None, descriptor)

        if descriptor.media_type in constants.MANIFEST_MEDIA_TYPES:
            return self._process_manifest(reference, descriptor)

        if descriptor.media_type in constants.INDEX_MEDIA_TYPES:
            index = self._read_json(descriptor, 'manifest list')
            selected = select_manifest(index, self.platform)
            if selected is None:
                raise NoMatchingManifestError(
                    'no manifest found in manifest list for platform %r'
                    % str(self.platform))
            LOG.info('Selected manifest %s for platform %s'
                     % (selected.digest, self.platform))
            return self._process_manifest(reference, selected)

        if descriptor.media_type in constants.CONFIG_MEDIA_TYPES:
            platform = self.fetch_platform_from_config(descriptor)
            return Resolution(reference, platform, descriptor)

        raise ResolutionError('unexpected mediaType for image: %r'
                              % descriptor.media_type)

    def validate(self, platform):
        """Check a resolved platform against the requested one.

        Raises:
            PlatformMismatchError: naming the first differing field.
        """
        if self.platform is None:
            return

        if platform is None or not platform.complete:
            raise PlatformMismatchError(
                'image has no platform information (might be a manifest '
                'list)')

        differences = self.platform.differences(platform)
        if differences:
            field, wanted, found = differences[0]
            raise PlatformMismatchError(
                'image has unexpected %s %r, which differs from the user '
                'specified %s %r' % (field, found, field, wanted))

    def pull_if_missing(self, reference):
        """Resolve a reference, pulling it into the store once if needed.

        The store is asked to pull only if the first resolution fails, and
        resolution is then retried exactly once.
        """
        try:
            resolution = self.resolve(reference)
        except ResolutionError as e:
            LOG.info('Unable to resolve %s locally (%s), pulling'
                     % (reference, e))
            self._check_cancelled()
            self.store.pull(reference, self.platform)

            try:
                resolution = self.resolve(reference)
            except ResolutionError as e:
                raise ResolutionError(
                    'unable to resolve image after pull: %s' % e)

        try:
            self.validate(resolution.platform)
        except PlatformMismatchError as e:
            raise PlatformMismatchError('platform validation failed: %s' % e)
        return resolution

"""Container image platforms (os / architecture / variant).

Platforms are normalised as they are created, so that the aliases used by
different tools compare equal: x86_64 is amd64, aarch64 is arm64, an arm64
platform without a variant is arm64/v8 and an arm platform without a
variant is arm/v7. Matching between normalised platforms is strict, every
field must be equal.
"""

from collections import namedtuple
import platform as host_platform


class PlatformParseError(Exception):
    pass


ARCHITECTURE_ALIASES = {
    'x86_64': 'amd64',
    'x86-64': 'amd64',
    'aarch64': 'arm64',
    'armhf': 'arm',
    'armel': 'arm',
    'i386': '386',
    'i686': '386',
}

DEFAULT_VARIANTS = {
    'arm64': 'v8',
    'arm': 'v7',
}


def _normalise(os_name, architecture, variant):
    os_name = (os_name or '').strip().lower()
    architecture = (architecture or '').strip().lower()
    variant = (variant or '').strip().lower()

    architecture = ARCHITECTURE_ALIASES.get(architecture, architecture)
    if architecture == 'arm64' and variant == '8':
        variant = 'v8'
    if architecture == 'arm' and variant in ('5', '6', '7', '8'):
        variant = 'v%s' % variant
    if not variant:
        variant = DEFAULT_VARIANTS.get(architecture, '')
    return os_name, architecture, variant


class Platform(namedtuple('Platform', ['os', 'architecture', 'variant'])):
    __slots__ = ()

    def __new__(cls, os, architecture, variant=''):
        return super().__new__(cls, *_normalise(os, architecture, variant))

    def __str__(self):
        parts = [self.os, self.architecture]
        if self.variant:
            parts.append(self.variant)
        return '/'.join(parts)

    @property
    def complete(self):
        return bool(self.os and self.architecture)

    def matches(self, other):
        """Strictly compare with another platform (or platform dict)."""
        if other is None:
            return False
        if isinstance(other, dict):
            other = from_dict(other)
        return (self.os == other.os and
                self.architecture == other.architecture and
                self.variant == other.variant)

    def differences(self, other):
        """Return (field, ours, theirs) for every field which differs."""
        out = []
        for field in self._fields:
            ours = getattr(self, field)
            theirs = getattr(other, field)
            if ours != theirs:
                out.append((field, ours, theirs))
        return out


def parse(platform_string):
    """Parse a platform string like 'linux/arm64/v8' or 'linux/amd64'."""
    if not platform_string or not platform_string.strip():
        raise PlatformParseError('Empty platform specification')

    parts = platform_string.strip().split('/')
    if len(parts) == 1:
        # A bare architecture is taken to be a linux one
        return Platform('linux', parts[0])
    if len(parts) > 3 or not all(parts):
        raise PlatformParseError(
            'Invalid platform specification: %s' % platform_string)
    return Platform(*parts)


def from_dict(data):
    """Build a platform from an OCI platform or image config dictionary."""
    if data is None:
        return None
    return Platform(data.get('os', ''), data.get('architecture', ''),
                    data.get('variant', ''))


def host():
    """The linux platform matching the architecture of this host."""
    return Platform('linux', host_platform.machine())

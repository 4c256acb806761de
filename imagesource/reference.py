"""Parsing of container image references.

Handles references like:
    busybox
    busybox:latest
    library/busybox@sha256:<hex>
    ghcr.io/owner/repo:v1.0
    localhost:5000/myimage:dev

Validation is deliberately weak: a registry host is not required, so that
references meant for a local daemon (which has no notion of a default
registry) are accepted. Only the minimum of the reference grammar is
checked, enough to tell a reference apart from a file path.
"""

from collections import namedtuple
import re


DEFAULT_REGISTRY = 'docker.io'
DEFAULT_REGISTRY_API_HOST = 'registry-1.docker.io'
DEFAULT_NAMESPACE = 'library'
DEFAULT_TAG = 'latest'

DOCKER_HUB_ALIASES = {'docker.io', 'index.docker.io', 'registry-1.docker.io'}

DOMAIN_COMPONENT_RE = re.compile(
    r'^(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])$')
PORT_RE = re.compile(r'^[0-9]+$')
PATH_COMPONENT_RE = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')
TAG_RE = re.compile(r'^[\w][\w.-]{0,127}$')
DIGEST_RE = re.compile(
    r'^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$')


class ReferenceParseError(Exception):
    """Raised when a string is not a container image reference."""
    pass


class Reference(namedtuple('Reference',
                           ['registry', 'repository', 'tag', 'digest'])):
    __slots__ = ()

    def __str__(self):
        out = self.repository
        if self.registry:
            out = '%s/%s' % (self.registry, out)
        if self.tag:
            out = '%s:%s' % (out, self.tag)
        if self.digest:
            out = '%s@%s' % (out, self.digest)
        return out

    @property
    def identifier(self):
        """The tag or digest to ask a registry for."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def api_host(self):
        """The host which serves the registry v2 API for this reference."""
        if not self.registry or self.registry in DOCKER_HUB_ALIASES:
            return DEFAULT_REGISTRY_API_HOST
        return self.registry

    def with_defaults(self):
        """Fill in the registry host, namespace and tag Docker would assume."""
        registry = self.registry or DEFAULT_REGISTRY
        repository = self.repository
        if registry in DOCKER_HUB_ALIASES:
            registry = DEFAULT_REGISTRY
            if '/' not in repository:
                repository = '%s/%s' % (DEFAULT_NAMESPACE, repository)

        tag = self.tag
        if not tag and not self.digest:
            tag = DEFAULT_TAG
        return Reference(registry, repository, tag, self.digest)


def _is_domain(component):
    if component == 'localhost':
        return True
    return '.' in component or ':' in component


def _validate_domain(domain, reference_string):
    host = domain
    if ':' in domain:
        host, port = domain.rsplit(':', 1)
        if not PORT_RE.match(port):
            raise ReferenceParseError(
                'Invalid registry port in reference: %s' % reference_string)
    for component in host.split('.'):
        if not DOMAIN_COMPONENT_RE.match(component):
            raise ReferenceParseError(
                'Invalid registry host in reference: %s' % reference_string)


def parse_reference(reference_string):
    """Parse a reference string into a Reference.

    Raises:
        ReferenceParseError: If the string is not a valid reference.
    """
    if not reference_string or not reference_string.strip():
        raise ReferenceParseError('Empty image reference')
    reference_string = reference_string.strip()

    name = reference_string
    digest = ''
    if '@' in name:
        name, digest = name.split('@', 1)
        if not DIGEST_RE.match(digest):
            raise ReferenceParseError(
                'Invalid digest in reference: %s' % reference_string)

    # The tag separator is the last colon after the last slash, anything
    # earlier is a registry port
    tag = ''
    last_colon = name.rfind(':')
    if last_colon > name.rfind('/'):
        tag = name[last_colon + 1:]
        name = name[:last_colon]
        if not TAG_RE.match(tag):
            raise ReferenceParseError(
                'Invalid tag in reference: %s' % reference_string)

    components = name.split('/')
    registry = ''
    if len(components) > 1 and _is_domain(components[0]):
        registry = components.pop(0)
        _validate_domain(registry, reference_string)

    for component in components:
        if not PATH_COMPONENT_RE.match(component):
            raise ReferenceParseError(
                'Invalid repository name in reference: %s' % reference_string)

    return Reference(registry, '/'.join(components), tag, digest)


def check_registry_host_missing(reference_string):
    """Add the Docker Hub host and library namespace where they are absent."""
    parts = reference_string.split('/')
    if len(parts) == 1:
        return '%s/%s/%s' % (DEFAULT_REGISTRY, DEFAULT_NAMESPACE,
                             reference_string)
    if not _is_domain(parts[0]):
        return '%s/%s' % (DEFAULT_REGISTRY, reference_string)
    return reference_string

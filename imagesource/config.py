"""Configuration handed to every image provider."""

from collections import namedtuple
import copy

from imagesource import reference


RegistryCredentials = namedtuple(
    'RegistryCredentials', ['authority', 'username', 'password', 'token'],
    defaults=(None, None, None))
RegistryCredentials.__doc__ = """Credentials for one registry host.

Either username and password (exchanged for a bearer token with the
registry's token service) or a pre-obtained bearer token.
"""


def _authority_matches(authority, host):
    if authority == host:
        return True
    return (authority in reference.DOCKER_HUB_ALIASES and
            host in reference.DOCKER_HUB_ALIASES)


class RegistryOptions:
    def __init__(self, insecure_skip_tls_verify=False, insecure_use_http=False,
                 ca_file=None, credentials=None):
        self.insecure_skip_tls_verify = insecure_skip_tls_verify
        self.insecure_use_http = insecure_use_http
        self.ca_file = ca_file
        self.credentials = list(credentials or [])

    def __repr__(self):
        return ('RegistryOptions(insecure_skip_tls_verify=%s, '
                'insecure_use_http=%s, ca_file=%r, credentials=<%d>)'
                % (self.insecure_skip_tls_verify, self.insecure_use_http,
                   self.ca_file, len(self.credentials)))

    @property
    def scheme(self):
        if self.insecure_use_http:
            return 'http'
        return 'https'

    def authenticator(self, host):
        """Return the credentials for a registry host, if any.

        Credentials without an authority apply to every host, but only when
        no credentials name the host explicitly.
        """
        fallback = None
        for creds in self.credentials:
            if not creds.authority:
                if fallback is None:
                    fallback = creds
                continue
            if _authority_matches(creds.authority, host):
                return creds
        return fallback

    def copy(self):
        return RegistryOptions(
            insecure_skip_tls_verify=self.insecure_skip_tls_verify,
            insecure_use_http=self.insecure_use_http, ca_file=self.ca_file,
            credentials=self.credentials)

    def tls_verify(self):
        """The value to pass as requests' verify argument."""
        if self.insecure_skip_tls_verify:
            return False
        if self.ca_file:
            return self.ca_file
        return True


class ProviderConfig:
    def __init__(self, registry=None, platform=None, additional_metadata=None):
        """Everything a provider needs beyond the user input.

        Args:
            registry: RegistryOptions for registry and pull operations.
            platform: Optional platforms.Platform requested by the caller.
            additional_metadata: Callables applied to the image, in order,
                after the provider's own defaults.
        """
        self.registry = registry or RegistryOptions()
        self.platform = platform
        self.additional_metadata = list(additional_metadata or [])

    def __repr__(self):
        return ('ProviderConfig(registry=%r, platform=%s, '
                'additional_metadata=<%d>)'
                % (self.registry, self.platform,
                   len(self.additional_metadata)))

    def copy(self):
        return copy.deepcopy(self)

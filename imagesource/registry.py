# A simple registry v2 API client, fetching manifests and blobs for one
# repository. With a big nod to
# https://github.com/NotGlop/docker-drag/blob/master/docker_pull.py
#
# https://docs.docker.com/registry/spec/manifest-v2-2/ documents the image
# manifest format, noting that the response format you get back varies
# based on what you have in your accept header for the request.
#
# https://github.com/opencontainers/image-spec/blob/main/media-types.md
# documents the OCI mime types.
#
# Authentication follows the token flow: an unauthorized response carries
# a Www-Authenticate header naming a token service, which is asked for a
# bearer token (with basic credentials if we have them).

import hashlib
import logging
import re
import threading

import requests

from imagesource import constants
from imagesource import runtime
from imagesource import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

CHUNK_SIZE = 8192
REQUEST_TIMEOUT = 60

AUTH_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')

DEFAULT_MANIFEST_ACCEPT = (constants.MEDIA_TYPE_DOCKER_MANIFEST_V2,
                           constants.MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
                           constants.MEDIA_TYPE_OCI_MANIFEST,
                           constants.MEDIA_TYPE_OCI_INDEX)


def parse_www_authenticate(header):
    """Split a 'Bearer realm="...",service="..."' header into a dict."""
    if not header or not header.lower().startswith('bearer '):
        return None
    return dict(AUTH_PARAM_RE.findall(header))


class RegistryClient:
    def __init__(self, reference, options, context=None):
        """A client for the repository a reference names.

        Args:
            reference: A reference.Reference, with defaults already applied.
            options: config.RegistryOptions.
            context: Optional runtime.ExecutionContext bounding requests.
        """
        self.reference = reference
        self.options = options
        self.context = context

        self._session = requests.Session()
        self._cached_auth = None
        self._auth_lock = threading.Lock()

    @property
    def host(self):
        return self.reference.api_host

    @property
    def repository(self):
        return self.reference.repository

    def close(self):
        self._session.close()

    def _url(self, kind, identifier):
        return ('%(scheme)s://%(host)s/v2/%(image)s/%(kind)s/%(identifier)s'
                % {
                    'scheme': self.options.scheme,
                    'host': self.host,
                    'image': self.repository,
                    'kind': kind,
                    'identifier': identifier
                })

    def _timeout(self):
        if self.context is None:
            return REQUEST_TIMEOUT
        return self.context.timeout(REQUEST_TIMEOUT)

    def _authenticate(self, challenge):
        params = parse_www_authenticate(challenge)
        if not params or 'realm' not in params:
            return None

        creds = self.options.authenticator(self.reference.registry)
        if creds and creds.token:
            return creds.token

        auth_params = {
            'scope': params.get('scope',
                                'repository:%s:pull' % self.repository)
        }
        if 'service' in params:
            auth_params['service'] = params['service']

        auth = None
        if creds and creds.username and creds.password:
            auth = (creds.username, creds.password)

        r = util.request_url('GET', params['realm'], params=auth_params,
                             session=self._session, auth=auth,
                             verify=self.options.tls_verify(),
                             timeout=self._timeout())
        body = r.json()
        return body.get('token') or body.get('access_token')

    def request_url(self, method, url, headers=None, stream=False):
        """Make an authenticated request to the registry.

        Thread-safe: uses _auth_lock to protect _cached_auth updates.
        """
        if not headers:
            headers = {}

        with self._auth_lock:
            if self._cached_auth:
                headers.update(
                    {'Authorization': 'Bearer %s' % self._cached_auth})

        try:
            return util.request_url(
                method, url, headers=headers, stream=stream,
                session=self._session, verify=self.options.tls_verify(),
                timeout=self._timeout())
        except util.UnauthorizedException as e:
            token = self._authenticate(e.headers.get('Www-Authenticate', ''))
            if not token:
                raise

            headers.update({'Authorization': 'Bearer %s' % token})
            with self._auth_lock:
                self._cached_auth = token

            return util.request_url(
                method, url, headers=headers, stream=stream,
                session=self._session, verify=self.options.tls_verify(),
                timeout=self._timeout())

    def get_manifest(self, identifier=None, accept=DEFAULT_MANIFEST_ACCEPT):
        """Fetch a manifest (or manifest list) by tag or digest.

        Returns:
            Tuple of (media_type, body, digest).
        """
        identifier = identifier or self.reference.identifier
        LOG.info('Fetching manifest %s for %s' % (identifier, self.repository))
        r = self.request_url('GET', self._url('manifests', identifier),
                             headers={'Accept': ','.join(accept)})

        body = r.content
        media_type = r.headers.get('Content-Type', '').split(';')[0].strip()
        digest = 'sha256:%s' % hashlib.sha256(body).hexdigest()

        declared = r.headers.get('Docker-Content-Digest')
        if declared and declared.startswith('sha256:') and declared != digest:
            raise util.APIException(
                'Hash verification failed for manifest %s (%s vs %s)'
                % (identifier, declared, digest))
        if identifier.startswith('sha256:') and identifier != digest:
            raise util.APIException(
                'Hash verification failed for manifest %s (got %s)'
                % (identifier, digest))
        return media_type, body, digest

    def get_blob(self, digest):
        r = self.request_url('GET', self._url('blobs', digest))
        return r.content

    def stream_blob(self, digest):
        responses = []

        def read():
            r = self.request_url('GET', self._url('blobs', digest),
                                 stream=True)
            responses.append(r)
            for chunk in r.iter_content(CHUNK_SIZE):
                if chunk:
                    yield chunk

        def abort():
            for r in responses:
                util.abort_response(r)

        return runtime.cancellable(self.context, read(), abort=abort)

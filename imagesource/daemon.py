# Talk to the local Docker or Podman daemon via the Docker Engine API.
# This communicates over a Unix domain socket (default:
# /var/run/docker.sock).
#
# Docker Engine API documentation:
# https://docs.docker.com/engine/api/
#
# Podman compatibility:
# Podman provides a Docker-compatible API via podman.socket.
# - Rootful: /run/podman/podman.sock
# - Rootless: /run/user/<uid>/podman/podman.sock
# See: https://docs.podman.io/en/latest/markdown/podman-system-service.1.html
#
# API Limitation: the Engine API does not expose individual manifests or
# blobs, only image inspection and /images/{name}/get which returns a
# complete 'docker save' tarball. DaemonStore therefore presents an image
# to the PlatformResolver as a bare config, synthesised from the inspect
# data, rather than as a manifest.

import json
import logging
import os
from urllib.parse import quote

import requests_unixsocket

from imagesource import constants
from imagesource import resolver
from imagesource import runtime
from imagesource import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

DEFAULT_SOCKET_PATH = '/var/run/docker.sock'
PODMAN_ROOTFUL_SOCKET_PATH = '/run/podman/podman.sock'

CHUNK_SIZE = 8192
REQUEST_TIMEOUT = 60


def _socket_from_host(env_value):
    if env_value and env_value.startswith('unix://'):
        return env_value[len('unix://'):]
    return None


def docker_socket_path():
    """The Docker socket, honouring DOCKER_HOST when it names a socket."""
    return _socket_from_host(os.environ.get('DOCKER_HOST')) or \
        DEFAULT_SOCKET_PATH


def podman_socket_path():
    """The Podman socket: CONTAINER_HOST, then rootless, then rootful."""
    path = _socket_from_host(os.environ.get('CONTAINER_HOST'))
    if path:
        return path

    if os.geteuid() != 0:
        runtime_dir = os.environ.get('XDG_RUNTIME_DIR',
                                     '/run/user/%d' % os.geteuid())
        return os.path.join(runtime_dir, 'podman', 'podman.sock')
    return PODMAN_ROOTFUL_SOCKET_PATH


class DaemonClient:
    def __init__(self, socket_path=DEFAULT_SOCKET_PATH, name='docker',
                 context=None):
        self.socket_path = socket_path
        self.name = name
        self.context = context
        self._session = None

    def _get_session(self):
        if self._session is None:
            self._session = requests_unixsocket.Session()
        return self._session

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None

    def _socket_url(self, path):
        # requests_unixsocket uses http+unix:// scheme with URL-encoded path
        encoded_socket = self.socket_path.replace('/', '%2F')
        return 'http+unix://%s%s' % (encoded_socket, path)

    def _timeout(self, seconds=REQUEST_TIMEOUT):
        if self.context is None:
            return seconds
        return self.context.timeout(seconds)

    def _request(self, method, path, stream=False, params=None,
                 timeout=REQUEST_TIMEOUT):
        LOG.debug('%s API request: %s %s' % (self.name, method, path))
        return util.request_url(method, self._socket_url(path),
                                stream=stream, session=self._get_session(),
                                params=params, timeout=self._timeout(timeout))

    def _stream(self, method, path, params=None, lines=False):
        """Stream a response body as lines or chunks.

        Streams have no read timeout, as a pull or export can legitimately
        go quiet for a long time. Cancelling the context instead shuts the
        connection down under the read.
        """
        responses = []

        def read():
            r = self._request(method, path, stream=True, params=params,
                              timeout=None)
            responses.append(r)
            if lines:
                yield from r.iter_lines()
            else:
                yield from r.iter_content(CHUNK_SIZE)

        def abort():
            for r in responses:
                util.abort_response(r)

        return runtime.cancellable(self.context, read(), abort=abort)

    def ping(self, timeout=None):
        """Check the daemon is alive, returning its API version."""
        r = self._request('GET', '/_ping', timeout=timeout)
        return r.headers.get('Api-Version', '')

    def inspect_image(self, ref):
        r = self._request('GET', '/images/%s/json' % quote(ref, safe=':@/'))
        return r.json()

    def pull(self, ref, platform=None):
        """Pull an image, as 'docker pull' does.

        The daemon streams JSON progress messages; an error message in the
        stream means the pull failed even though the request succeeded.
        """
        params = {'fromImage': ref}
        if platform is not None:
            params['platform'] = str(platform)

        LOG.info('Pulling %s with %s (platform %s)'
                 % (ref, self.name, platform or 'default'))
        for line in self._stream('POST', '/images/create', params=params,
                                 lines=True):
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                LOG.debug('Unparseable pull status: %s' % line)
                continue

            if message.get('error'):
                raise util.APIException(
                    'Pull of %s failed: %s' % (ref, message['error']))
            LOG.debug('Pull status: %s %s'
                      % (message.get('status', ''),
                         message.get('progress', '')))

    def export(self, ref):
        """Stream an image in 'docker save' format, yielding chunks."""
        path = '/images/%s/get' % quote(ref, safe=':@/')
        for chunk in self._stream('GET', path):
            if chunk:
                yield chunk


class DaemonStore:
    """A content store view of a daemon's image store.

    Lookups are image inspections. The descriptor returned for an image is
    its config (the daemon's image ID is the config digest), and reading it
    yields a config synthesised from the inspect data.
    """

    def __init__(self, client):
        self.client = client
        self._inspected = {}

    def inspect(self, ref):
        if ref not in self._inspected:
            try:
                self._inspected[ref] = self.client.inspect_image(ref)
            except util.NotFoundException:
                raise resolver.ImageNotFoundError(
                    'image %s not found in %s daemon'
                    % (ref, self.client.name))
        return self._inspected[ref]

    def get_image(self, ref):
        data = self.inspect(ref)
        return resolver.Descriptor(
            constants.MEDIA_TYPE_DOCKER_CONFIG, data.get('Id'),
            data.get('Size'), annotations={
                constants.ANNOTATION_REF_NAME: ref})

    def read_blob(self, descriptor):
        ref = (descriptor.annotations or {}).get(
            constants.ANNOTATION_REF_NAME)
        data = self.inspect(ref)
        config = {
            'os': data.get('Os', ''),
            'architecture': data.get('Architecture', ''),
        }
        if data.get('Variant'):
            config['variant'] = data['Variant']
        return json.dumps(config).encode('utf-8')

    def pull(self, ref, platform):
        self._inspected.pop(ref, None)
        self.client.pull(ref, platform=platform)

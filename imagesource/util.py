import json
import logging
import socket
from oslo_concurrency import processutils
from pbr.version import VersionInfo
import requests


LOG = logging.getLogger(__name__)


class APIException(Exception):
    def __init__(self, message, method=None, url=None, status_code=None,
                 text=None, headers=None):
        super().__init__(message, method, url, status_code, text, headers)
        self.message = message
        self.method = method
        self.url = url
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}

    def __str__(self):
        if self.status_code is None:
            return self.message
        return '%s: %s %s returned %s' % (
            self.message, self.method, self.url, self.status_code)


class UnauthorizedException(APIException):
    pass


class NotFoundException(APIException):
    pass


STATUS_CODES_TO_ERRORS = {
    401: UnauthorizedException,
    404: NotFoundException,
}

OK_STATUS_CODES = (200, 201, 202, 204)


def get_user_agent():
    try:
        version = VersionInfo('imagesource').version_string()
    except Exception:
        version = '0.0.0'
    return 'Mozilla/5.0 (Ubuntu; Linux x86_64) imagesource/%s' % version


def request_url(method, url, headers=None, data=None, stream=False,
                session=None, auth=None, verify=True, timeout=None,
                params=None):
    """Make an HTTP request, logging it and mapping failures to exceptions.

    Args:
        session: Optional requests (or requests_unixsocket) session. The
            requests module itself is used when None.
        auth: Optional (username, password) for basic authentication.
        verify: TLS verification, as for requests.
        timeout: Seconds to wait for the server, or None.
    """
    if not headers:
        headers = {}
    headers.update({'User-Agent': get_user_agent()})
    body = None
    if data is not None:
        headers['Content-Type'] = 'application/json'
        body = json.dumps(data)

    requester = session if session is not None else requests
    r = requester.request(method, url, data=body, headers=headers,
                          stream=stream, auth=auth, verify=verify,
                          timeout=timeout, params=params)

    LOG.debug('-------------------------------------------------------')
    LOG.debug('API client requested: %s %s (stream=%s)'
              % (method, url, stream))
    for h in headers:
        if h == 'Authorization':
            LOG.debug('Header: %s = <redacted>' % h)
        else:
            LOG.debug('Header: %s = %s' % (h, headers[h]))
    if data is not None:
        LOG.debug('Data:\n    %s'
                  % ('\n    '.join(json.dumps(data,
                                              indent=4,
                                              sort_keys=True).split('\n'))))
    LOG.debug('API client response: code = %s' % r.status_code)
    for h in r.headers:
        LOG.debug('Header: %s = %s' % (h, r.headers[h]))
    if not stream:
        if r.text:
            try:
                LOG.debug('Data:\n    %s'
                          % ('\n    '.join(json.dumps(json.loads(r.text),
                                                      indent=4,
                                                      sort_keys=True).split('\n'))))
            except Exception:
                LOG.debug('Text:\n    %s'
                          % ('\n    '.join(r.text.split('\n'))))
    else:
        LOG.debug('Result content not logged for streaming requests')
    LOG.debug('-------------------------------------------------------')

    if r.status_code in STATUS_CODES_TO_ERRORS:
        raise STATUS_CODES_TO_ERRORS[r.status_code](
            'API request failed', method, url, r.status_code, r.text,
            r.headers)

    if r.status_code not in OK_STATUS_CODES:
        raise APIException(
            'API request failed', method, url, r.status_code, r.text,
            r.headers)
    return r


def abort_response(r):
    """Shut down the socket under a streaming response.

    Closing the response itself would wait on a read blocked in another
    thread. Shutting the socket down instead makes that read return.
    """
    connection = getattr(r.raw, 'connection', None)
    sock = getattr(connection, 'sock', None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        LOG.debug('Shutting down response socket failed: %s' % e)


def execute(command, check_exit_code=[0], env_variables=None, cwd=None,
            binary=False, on_execute=None):
    """Run a command given as a list of arguments.

    The arguments go straight to the process rather than through a shell,
    as they include user supplied image references.
    """
    return processutils.execute(
        *command, check_exit_code=check_exit_code,
        env_variables=env_variables, cwd=cwd, binary=binary,
        on_execute=on_execute)

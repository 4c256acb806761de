import hashlib
import threading
import time
import unittest
from unittest import mock

from imagesource import config
from imagesource import constants
from imagesource import reference
from imagesource import registry
from imagesource import runtime
from imagesource import util


CHALLENGE = ('Bearer realm="https://auth.example.com/token",'
             'service="registry.example.com",scope="repository:app:pull"')


def response(content=b'', headers=None, body=None, chunks=None):
    r = mock.MagicMock()
    r.content = content
    r.headers = headers or {}
    r.json.return_value = body
    r.iter_content.return_value = chunks or []
    return r


def unauthorized():
    return util.UnauthorizedException(
        'API request failed', 'GET', 'https://registry.example.com/v2/',
        401, '', {'Www-Authenticate': CHALLENGE})


class FakeRequests:
    """Replays responses, recording each request's headers as sent."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, headers=None, **kwargs):
        self.calls.append((method, url, dict(headers or {}), kwargs))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class ParseWwwAuthenticateTestCase(unittest.TestCase):
    def test_bearer(self):
        self.assertEqual(
            {'realm': 'https://auth.example.com/token',
             'service': 'registry.example.com',
             'scope': 'repository:app:pull'},
            registry.parse_www_authenticate(CHALLENGE))

    def test_not_bearer(self):
        self.assertIsNone(registry.parse_www_authenticate('Basic realm="x"'))
        self.assertIsNone(registry.parse_www_authenticate(''))


class RegistryClientTestCase(unittest.TestCase):
    def setUp(self):
        self.options = config.RegistryOptions()
        self.client = self.make_client('registry.example.com/app:1')

    def make_client(self, ref):
        return registry.RegistryClient(
            reference.parse_reference(ref).with_defaults(), self.options)

    def test_url(self):
        self.assertEqual(
            'https://registry.example.com/v2/app/manifests/1',
            self.client._url('manifests', '1'))
        self.options.insecure_use_http = True
        self.assertEqual(
            'http://registry.example.com/v2/app/blobs/sha256:abc',
            self.client._url('blobs', 'sha256:abc'))

    def test_docker_hub_url(self):
        client = self.make_client('busybox')
        self.assertEqual(
            'https://registry-1.docker.io/v2/library/busybox/manifests/'
            'latest', client._url('manifests', 'latest'))

    @mock.patch('imagesource.util.request_url')
    def test_get_manifest(self, mock_request):
        body = b'{"schemaVersion": 2}'
        digest = 'sha256:%s' % hashlib.sha256(body).hexdigest()
        mock_request.return_value = response(body, headers={
            'Content-Type': '%s; charset=utf-8'
            % constants.MEDIA_TYPE_OCI_INDEX,
            'Docker-Content-Digest': digest})

        self.assertEqual((constants.MEDIA_TYPE_OCI_INDEX, body, digest),
                         self.client.get_manifest())
        args, kwargs = mock_request.call_args
        self.assertEqual(
            'https://registry.example.com/v2/app/manifests/1', args[1])
        self.assertIn(constants.MEDIA_TYPE_OCI_MANIFEST,
                      kwargs['headers']['Accept'])

    @mock.patch('imagesource.util.request_url')
    def test_manifest_digest_mismatch(self, mock_request):
        mock_request.return_value = response(b'{}', headers={
            'Docker-Content-Digest': 'sha256:%s' % ('0' * 64)})
        self.assertRaises(util.APIException, self.client.get_manifest)

    @mock.patch('imagesource.util.request_url')
    def test_manifest_by_digest_verified(self, mock_request):
        mock_request.return_value = response(b'{}')
        self.assertRaises(util.APIException, self.client.get_manifest,
                          'sha256:%s' % ('1' * 64))

    def test_token_flow(self):
        self.options.credentials.append(config.RegistryCredentials(
            'registry.example.com', 'user', 'secret'))
        fake = FakeRequests(unauthorized(),
                            response(body={'token': 'tok'}),
                            response(b'blob'),
                            response(b'blob2'))

        with mock.patch('imagesource.util.request_url', fake):
            self.assertEqual(b'blob', self.client.get_blob('sha256:a'))
            self.assertEqual(b'blob2', self.client.get_blob('sha256:b'))

        token_call = fake.calls[1]
        self.assertEqual('https://auth.example.com/token', token_call[1])
        self.assertEqual(('user', 'secret'), token_call[3]['auth'])
        self.assertEqual({'scope': 'repository:app:pull',
                          'service': 'registry.example.com'},
                         token_call[3]['params'])

        self.assertNotIn('Authorization', fake.calls[0][2])
        self.assertEqual('Bearer tok', fake.calls[2][2]['Authorization'])
        # The token is reused for later requests
        self.assertEqual('Bearer tok', fake.calls[3][2]['Authorization'])

    def test_anonymous_token(self):
        fake = FakeRequests(unauthorized(),
                            response(body={'access_token': 'anon'}),
                            response(b'blob'))
        with mock.patch('imagesource.util.request_url', fake):
            self.client.get_blob('sha256:a')
        self.assertIsNone(fake.calls[1][3]['auth'])
        self.assertEqual('Bearer anon', fake.calls[2][2]['Authorization'])

    def test_preobtained_token(self):
        self.options.credentials.append(config.RegistryCredentials(
            None, token='given'))
        fake = FakeRequests(unauthorized(), response(b'blob'))
        with mock.patch('imagesource.util.request_url', fake):
            self.client.get_blob('sha256:a')
        self.assertEqual(2, len(fake.calls))
        self.assertEqual('Bearer given', fake.calls[1][2]['Authorization'])

    def test_unauthorized_without_challenge(self):
        error = util.UnauthorizedException(
            'API request failed', 'GET', 'https://registry.example.com/v2/',
            401, '', {})
        fake = FakeRequests(error)
        with mock.patch('imagesource.util.request_url', fake):
            self.assertRaises(util.UnauthorizedException,
                              self.client.get_blob, 'sha256:a')

    @mock.patch('imagesource.util.request_url')
    def test_stream_blob(self, mock_request):
        mock_request.return_value = response(chunks=[b'a', b'', b'b'])
        self.assertEqual([b'a', b'b'],
                         list(self.client.stream_blob('sha256:a')))
        self.assertTrue(mock_request.call_args[1]['stream'])

    @mock.patch('imagesource.util.abort_response')
    @mock.patch('imagesource.util.request_url')
    def test_stream_blob_cancelled_while_stalled(self, mock_request,
                                                 mock_abort):
        release = threading.Event()
        self.addCleanup(release.set)

        def stalled(chunk_size):
            yield b'a'
            release.wait(10)
            yield b'b'

        r = response()
        r.iter_content.side_effect = stalled
        mock_request.return_value = r
        mock_abort.side_effect = lambda _: release.set()

        self.client.context = runtime.ExecutionContext(mock.MagicMock())
        chunks = self.client.stream_blob('sha256:a')
        self.assertEqual(b'a', next(chunks))

        timer = threading.Timer(0.3, self.client.context.cancel)
        timer.start()
        self.addCleanup(timer.cancel)

        start = time.monotonic()
        self.assertRaises(runtime.CancelledError, next, chunks)
        self.assertLess(time.monotonic() - start, 5)
        mock_abort.assert_called_once_with(r)

    @mock.patch('imagesource.util.request_url')
    def test_tls_options(self, mock_request):
        self.options.insecure_skip_tls_verify = True
        mock_request.return_value = response(b'blob')
        self.client.get_blob('sha256:a')
        self.assertFalse(mock_request.call_args[1]['verify'])


class RegistryOptionsTestCase(unittest.TestCase):
    def test_authenticator(self):
        hub = config.RegistryCredentials('docker.io', 'hub', 'x')
        anywhere = config.RegistryCredentials(None, 'any', 'y')
        options = config.RegistryOptions(credentials=[anywhere, hub])
        self.assertIs(hub, options.authenticator('registry-1.docker.io'))
        self.assertIs(anywhere, options.authenticator('ghcr.io'))
        self.assertIsNone(config.RegistryOptions().authenticator('ghcr.io'))

    def test_tls_verify(self):
        self.assertTrue(config.RegistryOptions().tls_verify())
        options = config.RegistryOptions(ca_file='/ca.pem')
        self.assertEqual('/ca.pem', options.tls_verify())
        self.assertFalse(config.RegistryOptions(
            insecure_skip_tls_verify=True, ca_file='/ca.pem').tls_verify())

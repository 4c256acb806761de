# Talk to containerd with its ctr command line client.
#
# containerd's API is gRPC only, so the ctr client shipped with containerd
# is used instead, as other tools shell out to runc or docker. Images live
# in a containerd namespace ('default' unless CONTAINERD_NAMESPACE says
# otherwise), and are stored under fully qualified names such as
# docker.io/library/busybox:latest.
#
# See: https://containerd.io/docs/getting-started/
#
# 'ctr images export' writes an OCI archive which also carries a docker
# style manifest.json, so an export is read back as a docker archive.

import logging
import os
import re
import shutil

from oslo_concurrency import processutils

from imagesource import reference
from imagesource import resolver
from imagesource import runtime
from imagesource import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

CTR = 'ctr'
DEFAULT_ADDRESS = '/run/containerd/containerd.sock'
DEFAULT_NAMESPACE = 'default'

SIZE_RE = re.compile(r'^([0-9.]+)\s*([KMGT]i?B|B)$')
SIZE_UNITS = {
    'B': 1,
    'KB': 10 ** 3, 'MB': 10 ** 6, 'GB': 10 ** 9, 'TB': 10 ** 12,
    'KiB': 2 ** 10, 'MiB': 2 ** 20, 'GiB': 2 ** 30, 'TiB': 2 ** 40,
}


class ContainerdError(Exception):
    pass


def containerd_address():
    return os.environ.get('CONTAINERD_ADDRESS', DEFAULT_ADDRESS)


def containerd_namespace():
    return os.environ.get('CONTAINERD_NAMESPACE') or DEFAULT_NAMESPACE


def ctr_available(binary=CTR):
    return shutil.which(binary) is not None


def parse_size(text):
    """Turn a size as ctr prints it ('2.1 MiB') into bytes, or None."""
    m = SIZE_RE.match(text.strip())
    if not m:
        return None
    return int(float(m.group(1)) * SIZE_UNITS[m.group(2)])


def parse_version(output):
    """Find the server version in 'ctr version' output."""
    in_server = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped == 'Server:':
            in_server = True
        elif in_server and stripped.startswith('Version:'):
            return stripped[len('Version:'):].strip()
    return ''


def parse_image_list(output):
    """Parse 'ctr images ls' output into a list of dicts.

    Columns are REF TYPE DIGEST SIZE PLATFORMS LABELS, where SIZE is
    printed as a number and a unit separated by a space.
    """
    images = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 5:
            continue
        images.append({
            'ref': parts[0],
            'media_type': parts[1],
            'digest': parts[2],
            'size': parse_size('%s %s' % (parts[3], parts[4])),
        })
    return images


class ContainerdClient:
    name = 'containerd'

    def __init__(self, address=None, namespace=None, registry_options=None,
                 context=None, binary=CTR):
        self.address = address or containerd_address()
        self.namespace = namespace or containerd_namespace()
        self.registry_options = registry_options
        self.context = context
        self.binary = binary

    def _command(self, *args):
        return [self.binary, '--address', self.address,
                '--namespace', self.namespace] + list(args)

    def _execute(self, *args, binary=False):
        """Run ctr, killing it if the context is cancelled meanwhile."""
        processes = []

        def run():
            yield util.execute(self._command(*args), binary=binary,
                               on_execute=processes.append)

        def abort():
            for process in processes:
                if process.poll() is None:
                    LOG.info('Killing cancelled ctr %s' % args[0])
                    process.kill()

        try:
            results = list(runtime.cancellable(self.context, run(),
                                               abort=abort))
        except processutils.ProcessExecutionError as e:
            raise ContainerdError('ctr %s failed: %s'
                                  % (' '.join(args[:2]), e))
        except OSError as e:
            raise ContainerdError('unable to run %s: %s' % (self.binary, e))

        out, _ = results[0]
        return out

    def version(self):
        return parse_version(self._execute('version'))

    def list_image(self, ref):
        """Return the image list entry for ref, or None if absent."""
        for entry in parse_image_list(
                self._execute('images', 'ls', 'name==%s' % ref)):
            if entry['ref'] == ref:
                return entry
        return None

    def read_blob(self, digest):
        return self._execute('content', 'get', digest, binary=True)

    def _registry_args(self, ref):
        args = []
        options = self.registry_options
        if options is None:
            return args

        if options.insecure_use_http:
            args.append('--plain-http')
        if options.insecure_skip_tls_verify:
            args.append('--skip-verify')

        host = reference.parse_reference(ref).with_defaults().registry
        creds = options.authenticator(host)
        if creds and creds.username and creds.password:
            args.extend(['--user', '%s:%s' % (creds.username,
                                               creds.password)])
        elif creds and creds.token:
            LOG.warning('ctr can not pull with a bearer token, pulling %s '
                        'without credentials' % ref)
        return args

    def pull(self, ref, platform=None):
        args = ['images', 'pull']
        if platform is not None:
            args.extend(['--platform', str(platform)])
        args.extend(self._registry_args(ref))
        args.append(ref)

        LOG.info('Pulling %s with containerd (platform %s)'
                 % (ref, platform or 'default'))
        self._execute(*args)

    def export(self, ref, tar_path, platform):
        """Save one platform of an image to tar_path.

        Without --platform ctr exports every platform it holds for a
        manifest list, so a platform is always given.
        """
        self._execute('images', 'export', '--platform', str(platform),
                      tar_path, ref)
        return tar_path


class ContainerdStore:
    """A content store view of containerd's image and content stores."""

    def __init__(self, client):
        self.client = client

    def get_image(self, ref):
        entry = self.client.list_image(ref)
        if entry is None:
            raise resolver.ImageNotFoundError(
                'image %s not found in containerd namespace %s'
                % (ref, self.client.namespace))
        return resolver.Descriptor(entry['media_type'], entry['digest'],
                                   entry['size'])

    def read_blob(self, descriptor):
        return self.client.read_blob(descriptor.digest)

    def pull(self, ref, platform):
        self.client.pull(ref, platform=platform)

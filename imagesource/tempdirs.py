import logging
import os
import shutil
import tempfile
import threading


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class TempDirGenerator:
    """A root scope for temporary directories.

    The root directory is created lazily on the first request and removed,
    along with everything beneath it, by cleanup(). A generator is usable
    again after cleanup.
    """

    def __init__(self, prefix='imagesource', parent_dir=None):
        self.prefix = prefix
        self.parent_dir = parent_dir
        self._root = None
        self._lock = threading.Lock()

    @property
    def root(self):
        return self._root

    def _ensure_root(self):
        if self._root is None:
            if self.parent_dir:
                os.makedirs(self.parent_dir, exist_ok=True)
            self._root = tempfile.mkdtemp(
                prefix='%s-' % self.prefix, dir=self.parent_dir)
            LOG.debug('Created temporary root %s' % self._root)
        return self._root

    def new_directory(self, *names):
        """Create a new uniquely named directory under the root."""
        with self._lock:
            root = self._ensure_root()
            prefix = '-'.join(n for n in names if n) or 'tmp'
            return tempfile.mkdtemp(prefix='%s-' % prefix, dir=root)

    def cleanup(self):
        with self._lock:
            if self._root and os.path.exists(self._root):
                LOG.debug('Removing temporary root %s' % self._root)
                shutil.rmtree(self._root)
            self._root = None

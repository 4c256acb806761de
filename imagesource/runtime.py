"""The execution context shared by every provider in one detection.

An ExecutionContext is created by the caller at the start of a detection
and handed by reference to every provider it tries. Providers register
cleanups on it (temporary directories, open clients) and consult its
cancellation signal during long running work. Nothing is released until the
caller explicitly calls cleanup(), either directly or by leaving a with
block.
"""

import logging
import os
import queue
import shutil
import threading
import time

from imagesource import tempdirs


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

CANCEL_POLL_INTERVAL = 0.2
STREAM_QUEUE_DEPTH = 16


class CancelledError(Exception):
    """Raised when work is attempted on a cancelled context."""
    pass


class DeadlineExceededError(CancelledError):
    """Raised when the context deadline has already passed."""
    pass


def _remove_directory(path):
    if os.path.exists(path):
        shutil.rmtree(path)


class ExecutionContext:
    def __init__(self, temp_dirs, cancel_event=None, deadline=None,
                 log=None, owns_temp_dirs=False):
        """Create a context.

        Args:
            temp_dirs: The TempDirGenerator temporary directories are
                allocated from.
            cancel_event: Optional threading.Event shared with the caller.
                Setting it cancels this context.
            deadline: Optional absolute time.monotonic() value after which
                the context counts as cancelled.
            log: Logger used for cleanup faults and by providers.
            owns_temp_dirs: If True, cleanup() finishes by cleaning up
                temp_dirs as a whole.
        """
        self.temp_dirs = temp_dirs
        self.deadline = deadline
        self.owns_temp_dirs = owns_temp_dirs
        self._cancel_event = cancel_event or threading.Event()
        self._log = log or logging.getLogger('imagesource')
        self._cleanups = []
        self._lock = threading.RLock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.cleanup()

    @property
    def log(self):
        return self._log

    # Cancellation

    def cancel(self):
        self._cancel_event.set()

    @property
    def cancelled(self):
        if self._cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check_cancelled(self):
        if self._cancel_event.is_set():
            raise CancelledError('operation cancelled')
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceededError('operation deadline exceeded')

    def remaining(self):
        """Seconds until the deadline, or None if there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def timeout(self, seconds):
        """Return a timeout for a sub-operation bounded by the deadline."""
        self.check_cancelled()
        remaining = self.remaining()
        if remaining is None:
            return seconds
        if seconds is None:
            return remaining
        return min(seconds, remaining)

    # Resources

    def register_cleanup(self, callback):
        with self._lock:
            self._cleanups.append(callback)

    def new_directory(self, *names):
        """Allocate a temporary directory whose removal is already registered.

        The directory is created and its cleanup registered while holding
        the lock, so a concurrent cleanup() never sees one without the
        other.
        """
        with self._lock:
            path = self.temp_dirs.new_directory(*names)
            self._cleanups.append(lambda: _remove_directory(path))
            return path

    def cleanup(self):
        """Run every registered cleanup, in registration order.

        A failing callback is logged and does not stop the callbacks after
        it. This method never raises.
        """
        with self._lock:
            failures = 0
            while self._cleanups:
                callback = self._cleanups.pop(0)
                try:
                    callback()
                except Exception as e:
                    failures += 1
                    self._log.error('Cleanup callback %r failed: %s'
                                    % (callback, e))
            if self.owns_temp_dirs:
                try:
                    self.temp_dirs.cleanup()
                except Exception as e:
                    failures += 1
                    self._log.error('Removing temporary root failed: %s' % e)

            if failures:
                self._log.warning('%d cleanup callback(s) failed' % failures)


def new_execution_context(temp_dirs=None, timeout=None, cancel_event=None,
                          log=None):
    """Convenience constructor for outermost callers.

    A fresh TempDirGenerator is created when none is given. The context
    then owns it and removes its root at the end of cleanup().
    """
    owns_temp_dirs = temp_dirs is None
    if owns_temp_dirs:
        temp_dirs = tempdirs.TempDirGenerator()

    deadline = None
    if timeout is not None:
        deadline = time.monotonic() + timeout

    return ExecutionContext(temp_dirs, cancel_event=cancel_event,
                            deadline=deadline, log=log,
                            owns_temp_dirs=owns_temp_dirs)


def cancellable(context, iterable, abort=None):
    """Iterate over iterable, returning promptly when context is cancelled.

    A read from a stalled socket can not be interrupted from the thread
    doing it. The iterable is therefore consumed by a worker thread and
    handed over through a bounded queue, while this generator checks the
    context between short waits. If iteration stops before the worker
    finished (the context was cancelled, or the caller stopped early) the
    abort callback is called so the worker's blocked read can be released.

    Without a context the iterable is consumed directly.
    """
    if context is None:
        yield from iterable
        return

    handoff = queue.Queue(maxsize=STREAM_QUEUE_DEPTH)
    stopped = threading.Event()

    def put(kind, value):
        while not stopped.is_set():
            try:
                handoff.put((kind, value), timeout=CANCEL_POLL_INTERVAL)
                return True
            except queue.Full:
                pass
        return False

    def produce():
        try:
            for item in iterable:
                if not put('item', item):
                    return
        except Exception as e:
            put('error', e)
            return
        finally:
            close = getattr(iterable, 'close', None)
            if close is not None:
                close()
        put('done', None)

    worker = threading.Thread(target=produce, name='imagesource-stream',
                              daemon=True)
    worker.start()

    finished = False
    try:
        while True:
            context.check_cancelled()
            try:
                kind, value = handoff.get(timeout=CANCEL_POLL_INTERVAL)
            except queue.Empty:
                continue

            if kind == 'done':
                finished = True
                return
            if kind == 'error':
                finished = True
                raise value
            yield value
    finally:
        stopped.set()
        if not finished and abort is not None:
            abort()

"""Progress reporting for long running copies.

A copy (a daemon export or a registry pull) is described by two progress
signals: a coarse estimate which advances with wall clock time based on an
assumed throughput, and a manual counter advanced by the copy itself. Both
are combined into an aggregate that observers can poll. Whoever starts a
copy must mark both signals complete when it finishes, whether it succeeded
or not, so observers never see progress stall below 100%.
"""

from collections import namedtuple
import threading
import time

from imagesource import constants
from imagesource import events


MB = 2 ** 20

# Observed docker save throughput, used to estimate how long a copy takes
ASSUMED_THROUGHPUT = 40 * MB

# Used when the size of what is being copied is not known
DEFAULT_SIZE = 50 * MB


class ManualProgress:
    """A progress counter advanced explicitly by the work it tracks."""

    def __init__(self, size=-1):
        self._lock = threading.Lock()
        self._current = 0
        self._size = size
        self._completed = False

    @property
    def current(self):
        return self._current

    @property
    def size(self):
        return self._size

    @property
    def completed(self):
        return self._completed

    def add(self, amount):
        with self._lock:
            self._current += amount

    def set_total(self, size):
        with self._lock:
            self._size = size

    def set_completed(self):
        with self._lock:
            self._completed = True
            if self._size < 0:
                self._size = self._current
            self._current = self._size

    def ratio(self):
        if self._completed:
            return 1.0
        if self._size <= 0:
            return 0.0
        return min(1.0, float(self._current) / self._size)


class TimedProgress:
    """A progress estimate which advances with elapsed time.

    The estimate never reaches 100% on its own; it holds just short of it
    until set_completed() is called.
    """

    CEILING = 0.99

    def __init__(self, duration, clock=time.monotonic):
        self.duration = duration
        self._clock = clock
        self._started = clock()
        self._completed = False

    @property
    def completed(self):
        return self._completed

    def set_completed(self):
        self._completed = True

    def ratio(self):
        if self._completed:
            return 1.0
        if self.duration <= 0:
            return self.CEILING
        elapsed = self._clock() - self._started
        return min(self.CEILING, elapsed / self.duration)


class Aggregator:
    """The mean of several progress signals."""

    def __init__(self, *progresses):
        self.progresses = progresses

    @property
    def completed(self):
        return all(p.completed for p in self.progresses)

    def ratio(self):
        if not self.progresses:
            return 1.0
        return sum(p.ratio() for p in self.progresses) / len(self.progresses)


class Stage:
    """A human readable description of what a copy is currently doing."""

    def __init__(self, current=''):
        self.current = current


class CopyProgress(namedtuple('CopyProgress',
                              ['estimate', 'copied', 'stage', 'aggregate'])):
    __slots__ = ()

    def set_completed(self):
        self.estimate.set_completed()
        self.copied.set_completed()


def estimate_duration(size, throughput=ASSUMED_THROUGHPUT):
    if not size or size < 0:
        size = DEFAULT_SIZE
    return float(size) / throughput


def track_copy_progress(source, size, event_type=constants.EVENT_FETCH_IMAGE,
                        throughput=ASSUMED_THROUGHPUT):
    """Start tracking a copy of roughly size bytes and announce it."""
    estimate = TimedProgress(estimate_duration(size, throughput))
    copied = ManualProgress(size if size and size > 0 else -1)
    stage = Stage()
    tracked = CopyProgress(estimate, copied, stage,
                           Aggregator(estimate, copied))
    events.publish(event_type, source, tracked)
    return tracked

"""A minimal publish / subscribe bus for progress events.

Subscribers are plain callables taking an Event. Publishing with no
subscribers is a no-op. A subscriber which raises is logged and does not
affect the publisher or the other subscribers.
"""

from collections import namedtuple
import logging
import threading


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


Event = namedtuple('Event', ['type', 'source', 'value'])


_subscribers = []
_lock = threading.Lock()


def subscribe(callback):
    with _lock:
        _subscribers.append(callback)


def unsubscribe(callback):
    with _lock:
        if callback in _subscribers:
            _subscribers.remove(callback)


def publish(event_type, source, value):
    with _lock:
        subscribers = list(_subscribers)

    event = Event(event_type, source, value)
    for callback in subscribers:
        try:
            callback(event)
        except Exception as e:
            LOG.warning('Event subscriber %r failed on %s: %s'
                        % (callback, event_type, e))
    return event

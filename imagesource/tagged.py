"""Tagged collections of values.

A TaggedCollection is an ordered list of values, each carrying a set of
string tags. Collections are narrowed and combined with a small algebra
(select, remove, join, sort) where every operation returns a new collection
and the receiver is left untouched.

Equality of values is only needed when joining collections (to avoid adding
a value twice) and for has_value(). It is decided by an explicit predicate
passed to the collection, which defaults to ==. Behaviour-bearing values
such as callables should be given a predicate that compares something
meaningful, for example a name.
"""

from collections import namedtuple
import operator


class TaggedItem(namedtuple('TaggedItem', ['value', 'tags'])):
    """An immutable (value, tags) pair."""

    __slots__ = ()

    def has_tag(self, *tags):
        """Return True if this item carries any of the given tags."""
        for tag in tags:
            if tag in self.tags:
                return True
        return False


def new(value, *tags):
    """Tag a value, ready to be placed in a TaggedCollection."""
    return TaggedItem(value, tuple(tags))


SelectionRequest = namedtuple(
    'SelectionRequest', ['base', 'select', 'remove', 'add'],
    defaults=(None, None, None, None))
SelectionRequest.__doc__ = """How to narrow a collection into candidates.

Each field is None when omitted, or a sequence of tags. An omitted field
leaves the collection alone. An explicitly empty base or select sequence
selects nothing, in the same way select() with no arguments does.
"""


class TaggedCollection:
    def __init__(self, items=None, equals=operator.eq):
        self._items = tuple(items or ())
        self._equals = equals

    def _derive(self, items):
        return TaggedCollection(items, equals=self._equals)

    @property
    def equals(self):
        return self._equals

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return self._derive(self._items[index])
        return self._items[index]

    def __eq__(self, other):
        if not isinstance(other, TaggedCollection):
            return NotImplemented
        return self._items == other._items

    def __repr__(self):
        return 'TaggedCollection(%r)' % (list(self._items),)

    def has_tag(self, *tags):
        """Return True if any item carries any of the given tags."""
        for item in self._items:
            if item.has_tag(*tags):
                return True
        return False

    def has_value(self, value):
        for item in self._items:
            if self._equals(item.value, value):
                return True
        return False

    def select(self, *tags):
        """Keep the items which carry any of the tags.

        Selecting with no tags selects nothing.
        """
        return self._derive(
            item for item in self._items if item.has_tag(*tags))

    def remove(self, *tags):
        """Drop the items which carry any of the tags.

        Removing with no tags is a no-op.
        """
        if not tags:
            return self
        return self._derive(
            item for item in self._items if not item.has_tag(*tags))

    def join(self, *items):
        """Append items whose value is not already in this collection."""
        if not items:
            return self

        out = list(self._items)
        for item in items:
            if self.has_value(item.value):
                continue
            out.append(item)
        return self._derive(out)

    def sort(self, *tags):
        """Reorder so items carrying earlier tags come first.

        For each distinct tag in turn, the not yet placed items carrying it
        are appended in their original order. Items carrying none of the
        tags follow, also in original order.
        """
        placed = [False] * len(self._items)
        out = []
        seen_tags = set()
        for tag in tags:
            if tag in seen_tags:
                continue
            seen_tags.add(tag)

            for idx, item in enumerate(self._items):
                if not placed[idx] and item.has_tag(tag):
                    placed[idx] = True
                    out.append(item)

        for idx, item in enumerate(self._items):
            if not placed[idx]:
                out.append(item)
        return self._derive(out)

    def collect(self):
        """Return the plain list of values, tags discarded."""
        return [item.value for item in self._items]

    def apply(self, request):
        """Narrow this collection with a SelectionRequest.

        The steps run in a fixed order: base, select, remove and finally
        add. Additions are selected from this (unfiltered) collection so
        that an added tag always brings its items back, whatever the
        earlier steps removed.
        """
        values = self
        if request.base is not None:
            values = values.select(*request.base)
        if request.select is not None:
            values = values.select(*request.select)
        if request.remove is not None:
            values = values.remove(*request.remove)
        if request.add is not None:
            values = values.join(*self.select(*request.add))
        return values

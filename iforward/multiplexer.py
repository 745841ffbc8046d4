import selectors
from typing import Set, Tuple

from .exceptions import FatalIOError


class ReadinessMultiplexer(object):
    """Two watch sets (read and write) over one selector.

    Adding or removing an endpoint is idempotent, teardown may touch endpoints
    which have already been unwatched."""

    def __init__(self, selector=None):
        self.selector = selector or selectors.DefaultSelector()
        self.read_set: Set = set()
        self.write_set: Set = set()

    def _sync(self, fileobj):
        events = 0
        if fileobj in self.read_set:
            events |= selectors.EVENT_READ
        if fileobj in self.write_set:
            events |= selectors.EVENT_WRITE
        try:
            registered = self.selector.get_key(fileobj).events
        except (KeyError, ValueError):
            registered = 0
        if events == registered:
            return
        try:
            if not registered:
                self.selector.register(fileobj, events)
            elif not events:
                self.selector.unregister(fileobj)
            else:
                self.selector.modify(fileobj, events)
        except (OSError, ValueError) as error:
            raise FatalIOError(f"selector failed on {fileobj!r}: {error!r}") from error

    def watch_for_read(self, fileobj):
        self.read_set.add(fileobj)
        self._sync(fileobj)

    def unwatch_for_read(self, fileobj):
        self.read_set.discard(fileobj)
        self._sync(fileobj)

    def watch_for_write(self, fileobj):
        self.write_set.add(fileobj)
        self._sync(fileobj)

    def unwatch_for_write(self, fileobj):
        self.write_set.discard(fileobj)
        self._sync(fileobj)

    def forget(self, fileobj):
        "unwatch both directions, must be called before the endpoint is closed"
        self.read_set.discard(fileobj)
        self.write_set.discard(fileobj)
        self._sync(fileobj)

    def is_watching_read(self, fileobj):
        return fileobj in self.read_set

    def is_watching_write(self, fileobj):
        return fileobj in self.write_set

    def poll(self, timeout=None) -> Tuple[Set, Set]:
        """Block until something is ready, return (ready_to_read, ready_to_write).
        timeout=None blocks forever."""
        try:
            events = self.selector.select(timeout)
        except (OSError, ValueError) as error:
            raise FatalIOError(f"poll failed: {error!r}") from error
        ready_to_read, ready_to_write = set(), set()
        for key, mask in events:
            if mask & selectors.EVENT_READ and key.fileobj in self.read_set:
                ready_to_read.add(key.fileobj)
            if mask & selectors.EVENT_WRITE and key.fileobj in self.write_set:
                ready_to_write.add(key.fileobj)
        return ready_to_read, ready_to_write

    def close(self):
        self.read_set.clear()
        self.write_set.clear()
        self.selector.close()

    def __len__(self):
        return len(self.selector.get_map())

    def __str__(self):
        return f"{self.__class__.__name__}(read={len(self.read_set)}, write={len(self.write_set)})"

    def __repr__(self):
        return str(self)

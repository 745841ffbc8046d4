from typing import Dict

from .exceptions import NotPairedError, PairingError


class ConnectionPairRegistry(object):
    """Peers and pending write buffers of the connection pairs of one engine.

    Pairs are only created by `pair` and only destroyed by `unpair_and_forget`,
    so an endpoint is never registered without its peer."""

    def __init__(self):
        self._peers: Dict = {}
        self._pending: Dict = {}

    def pair(self, a, b):
        if a is b:
            raise PairingError(f"could not pair {a!r} with itself")
        for endpoint in (a, b):
            if endpoint in self._peers:
                raise PairingError(f"{endpoint!r} is paired already")
        self._peers[a] = b
        self._peers[b] = a

    def peer_of(self, endpoint):
        try:
            return self._peers[endpoint]
        except KeyError:
            raise NotPairedError(f"{endpoint!r} has no peer")

    def set_pending_write(self, endpoint, data: bytes):
        if endpoint not in self._peers:
            raise NotPairedError(f"{endpoint!r} has no peer")
        if data:
            self._pending[endpoint] = data
        else:
            self._pending.pop(endpoint, None)

    def take_pending_write(self, endpoint) -> bytes:
        return self._pending.pop(endpoint, b"")

    def has_pending_write(self, endpoint) -> bool:
        return endpoint in self._pending

    def unpair_and_forget(self, endpoint):
        "remove the endpoint, its peer and both pending buffers, return (endpoint, peer)"
        peer = self._peers.pop(endpoint, None)
        if peer is None:
            raise NotPairedError(f"{endpoint!r} has no peer")
        self._peers.pop(peer, None)
        self._pending.pop(endpoint, None)
        self._pending.pop(peer, None)
        return endpoint, peer

    @property
    def pair_count(self):
        return len(self._peers) // 2

    @property
    def pending_count(self):
        return len(self._pending)

    def __contains__(self, endpoint):
        return endpoint in self._peers

    def __len__(self):
        return len(self._peers)

    def __iter__(self):
        return iter(list(self._peers))

# -*- coding: utf-8 -*-
import errno
import os
import socket
import time
from typing import Dict

from morebuiltins.utils import read_size
from torequests.utils import timepass

from .base import ForwardRule, resolve_target
from .datagram import DatagramEngine
from .exceptions import ForwardTypeError, TargetUnreachable
from .logs import logger
from .multiplexer import ReadinessMultiplexer
from .registry import ConnectionPairRegistry

CONNECT_IN_PROGRESS = {0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN}


class ForwardingEngine(object):
    """Relay every client accepted by `listener` to the target of `rule`.

    One single-threaded loop per listener, all the sockets are non-blocking
    and every readiness event does one recv or one send at most.

    Each endpoint is:
        READING   watched for read, no pending buffer
        FLUSHING  watched for write, holding the bytes read from its peer,
                  both sides of the pair stop reading until it is flushed
        CLOSED    removed from the registry and the multiplexer

    A target connection in progress is kept out of the registry, the pair
    only exists after the connect succeeded.
    """

    BUFFER_SIZE = 8192

    def __init__(self, rule: ForwardRule, listener: socket.socket, buffer_size=None):
        self.rule = rule
        self.listener = listener
        self.buffer_size = buffer_size or self.BUFFER_SIZE
        self.multiplexer = ReadinessMultiplexer()
        self.registry = ConnectionPairRegistry()
        # target socket -> (client socket, client address)
        self._connecting: Dict = {}
        self._transferred: Dict = {}
        self.stats = {"accepted": 0, "unreachable": 0, "closed": 0, "bytes": 0}
        self.start_time = time.time()
        self.target_info = None
        self.resolve_error = None
        try:
            self.target_info = resolve_target(self.rule)
        except TargetUnreachable as error:
            # each client is dropped with this error, the name is not looked up again
            self.resolve_error = error
            logger.error(f"{self} {error}")
        self.listener.setblocking(False)
        self.multiplexer.watch_for_read(self.listener)

    def run_forever(self):
        logger.info(
            f"{self} forwarding {self.rule.listen_host}:{self.rule.listen_port} -> {self.rule.target_host}:{self.rule.target_port}"
        )
        while 1:
            self.serve_once()

    def serve_once(self, timeout=None):
        "poll once and handle every reported event, timeout=None blocks until something is ready"
        ready_to_read, ready_to_write = self.multiplexer.poll(timeout)
        for sock in ready_to_write:
            if sock in self._connecting:
                self._finish_connect(sock)
            elif self.multiplexer.is_watching_write(sock):
                self._on_writable(sock)
        for sock in ready_to_read:
            if sock is self.listener:
                self._accept()
            elif self.multiplexer.is_watching_read(sock):
                self._on_readable(sock)

    def _accept(self):
        try:
            client, address = self.listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as error:
            logger.error(f"{self} accept failed: {error!r}")
            return
        client.setblocking(False)
        self.stats["accepted"] += 1
        try:
            target = self._connect_target()
        except TargetUnreachable as error:
            self.stats["unreachable"] += 1
            logger.info(f"{self} drop client {address[0]}:{address[1]}, {error}")
            client.close()
            return
        self._connecting[target] = (client, address)
        self.multiplexer.watch_for_write(target)
        logger.info(
            f"{self} new connection from {address[0]}:{address[1]}, fds: {1 + len(self.registry) + 2 * len(self._connecting)}, pairs: {self.registry.pair_count}, connecting: {len(self._connecting)}, read_set: {len(self.multiplexer.read_set)}, write_set: {len(self.multiplexer.write_set)}"
        )

    def _connect_target(self):
        if self.target_info is None:
            raise TargetUnreachable(str(self.resolve_error))
        host, port = self.rule.target_address
        family, socktype, proto, address = self.target_info
        sock = socket.socket(family, socktype, proto)
        sock.setblocking(False)
        try:
            code = sock.connect_ex(address)
        except OSError as error:
            sock.close()
            raise TargetUnreachable(f"connect {host}:{port} failed: {error!r}") from error
        if code not in CONNECT_IN_PROGRESS:
            sock.close()
            raise TargetUnreachable(f"connect {host}:{port} failed: {os.strerror(code)}")
        return sock

    def _finish_connect(self, target):
        client, address = self._connecting.pop(target)
        self.multiplexer.forget(target)
        code = target.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if code:
            self.stats["unreachable"] += 1
            logger.info(
                f"{self} drop client {address[0]}:{address[1]}, connect {self.rule.target_host}:{self.rule.target_port} failed: {os.strerror(code)}"
            )
            target.close()
            client.close()
            return
        self.registry.pair(client, target)
        self.multiplexer.watch_for_read(client)
        self.multiplexer.watch_for_read(target)
        logger.debug(f"{self} paired {address[0]}:{address[1]} with {target.getsockname()}")

    def _on_readable(self, endpoint):
        peer = self.registry.peer_of(endpoint)
        try:
            data = endpoint.recv(self.buffer_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as error:
            return self.teardown(endpoint, error)
        if not data:
            return self.teardown(endpoint)
        self.multiplexer.unwatch_for_read(endpoint)
        self.multiplexer.unwatch_for_read(peer)
        self.registry.set_pending_write(peer, data)
        self.multiplexer.watch_for_write(peer)

    def _on_writable(self, endpoint):
        peer = self.registry.peer_of(endpoint)
        data = self.registry.take_pending_write(endpoint)
        if data:
            try:
                sent = endpoint.send(data)
            except (BlockingIOError, InterruptedError):
                self.registry.set_pending_write(endpoint, data)
                return
            except OSError as error:
                return self.teardown(endpoint, error)
            if not sent:
                return self.teardown(endpoint)
            self._transferred[endpoint] = self._transferred.get(endpoint, 0) + sent
            self.stats["bytes"] += sent
            if sent < len(data):
                self.registry.set_pending_write(endpoint, data[sent:])
                return
        self.multiplexer.unwatch_for_write(endpoint)
        self.multiplexer.watch_for_read(endpoint)
        self.multiplexer.watch_for_read(peer)

    def teardown(self, endpoint, error=None):
        "close the pair of endpoint, both sides at once"
        endpoint, peer = self.registry.unpair_and_forget(endpoint)
        transferred = 0
        for sock in (endpoint, peer):
            transferred += self._transferred.pop(sock, 0)
            self.multiplexer.forget(sock)
            sock.close()
        self.stats["closed"] += 1
        reason = f" for {error!r}" if error else ""
        logger.debug(
            f"{self} closed pair{reason}, transferred: {read_size(transferred, rounded=1)}, pairs: {self.registry.pair_count}"
        )

    def close(self):
        for endpoint in self.registry:
            if endpoint in self.registry:
                self.teardown(endpoint)
        for target, (client, _) in self._connecting.items():
            self.multiplexer.forget(target)
            target.close()
            client.close()
        self._connecting.clear()
        self.multiplexer.close()
        logger.debug(
            f"{self} closed, duration: {timepass(time.time() - self.start_time, accuracy=3, format=1)}, stats: {self.stats}"
        )

    def __str__(self):
        return f"{self.__class__.__name__}({self.rule})"

    def __repr__(self):
        return str(self)


def run(rule: ForwardRule, listener: socket.socket, **kwargs):
    """Forward the traffic of listener by rule forever.
    Only returns by raising, FatalIOError if the readiness mechanism breaks."""
    if rule.protocol == "tcp":
        engine = ForwardingEngine(rule, listener, **kwargs)
    elif rule.protocol == "udp":
        engine = DatagramEngine(rule, listener, **kwargs)
    else:
        raise ForwardTypeError(f"unsupported protocol {rule.protocol!r} of {rule}")
    return engine.run_forever()

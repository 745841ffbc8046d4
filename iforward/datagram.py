# -*- coding: utf-8 -*-
import socket
import time
from typing import Dict

from .base import ForwardRule, resolve_target
from .exceptions import TargetUnreachable
from .logs import logger
from .multiplexer import ReadinessMultiplexer


class DatagramSession(object):
    "the connected target socket serving one source address"

    def __init__(self, address, sock: socket.socket):
        self.address = address
        self.sock = sock
        self.last_active = time.time()

    def touch(self):
        self.last_active = time.time()

    def __str__(self):
        return f"{self.__class__.__name__}({self.address[0]}:{self.address[1]})"

    def __repr__(self):
        return str(self)


class DatagramEngine(object):
    """UDP has no accept, so every source address gets its own pseudo session:
    a connected socket to the target whose replies are sent back to that address.

    Datagrams are forwarded one by one and never buffered, a datagram which
    could not be sent is dropped. Sessions idle for more than
    `session_timeout` seconds are closed, 0 or None keeps them forever."""

    BUFFER_SIZE = 65535
    SESSION_TIMEOUT = 60

    def __init__(
        self,
        rule: ForwardRule,
        listener: socket.socket,
        buffer_size=None,
        session_timeout=None,
    ):
        self.rule = rule
        self.listener = listener
        self.buffer_size = buffer_size or self.BUFFER_SIZE
        self.session_timeout = (
            self.SESSION_TIMEOUT if session_timeout is None else session_timeout
        )
        self.multiplexer = ReadinessMultiplexer()
        self.sessions: Dict = {}
        self._sessions_by_sock: Dict = {}
        self.stats = {"sessions": 0, "dropped": 0, "datagrams": 0}
        self.target_info = None
        self.resolve_error = None
        try:
            self.target_info = resolve_target(self.rule)
        except TargetUnreachable as error:
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
        if timeout is None:
            timeout = self.session_timeout or None
        ready_to_read, _ = self.multiplexer.poll(timeout)
        for sock in ready_to_read:
            if sock is self.listener:
                self._on_datagram()
            else:
                session = self._sessions_by_sock.get(sock)
                if session is not None:
                    self._on_reply(session)
        if self.session_timeout:
            self.expire_sessions()

    def _open_session(self, address):
        if self.target_info is None:
            raise TargetUnreachable(str(self.resolve_error))
        host, port = self.rule.target_address
        family, socktype, proto, target = self.target_info
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setblocking(False)
            sock.connect(target)
        except OSError as error:
            sock.close()
            raise TargetUnreachable(f"connect {host}:{port} failed: {error!r}") from error
        session = DatagramSession(address, sock)
        self.sessions[address] = session
        self._sessions_by_sock[sock] = session
        self.multiplexer.watch_for_read(sock)
        self.stats["sessions"] += 1
        logger.info(
            f"{self} new session from {address[0]}:{address[1]}, fds: {1 + len(self.sessions)}, sessions: {len(self.sessions)}, read_set: {len(self.multiplexer.read_set)}"
        )
        return session

    def _on_datagram(self):
        try:
            data, address = self.listener.recvfrom(self.buffer_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as error:
            # ICMP errors of earlier replies may show up here on some platforms
            logger.debug(f"{self} recvfrom failed: {error!r}")
            return
        session = self.sessions.get(address)
        if session is None:
            try:
                session = self._open_session(address)
            except TargetUnreachable as error:
                self.stats["dropped"] += 1
                logger.info(f"{self} drop datagram from {address[0]}:{address[1]}, {error}")
                return
        session.touch()
        try:
            session.sock.send(data)
        except (BlockingIOError, InterruptedError):
            self.stats["dropped"] += 1
            logger.debug(f"{self} drop {len(data)} bytes to target of {session}, socket busy")
            return
        except OSError as error:
            self.stats["dropped"] += 1
            return self.close_session(session, error)
        self.stats["datagrams"] += 1

    def _on_reply(self, session: DatagramSession):
        try:
            data = session.sock.recv(self.buffer_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as error:
            return self.close_session(session, error)
        session.touch()
        try:
            self.listener.sendto(data, session.address)
        except OSError as error:
            self.stats["dropped"] += 1
            logger.debug(f"{self} drop {len(data)} bytes to {session}: {error!r}")
            return
        self.stats["datagrams"] += 1

    def expire_sessions(self, now=None):
        "close the sessions idle longer than session_timeout, return the count"
        now = time.time() if now is None else now
        expired = [
            session
            for session in self.sessions.values()
            if now - session.last_active > self.session_timeout
        ]
        for session in expired:
            self.close_session(session, reason="idle timeout")
        return len(expired)

    def close_session(self, session: DatagramSession, error=None, reason=None):
        self.sessions.pop(session.address, None)
        self._sessions_by_sock.pop(session.sock, None)
        self.multiplexer.forget(session.sock)
        session.sock.close()
        reason = reason or (repr(error) if error else "")
        logger.debug(f"{self} closed {session} for {reason}, sessions: {len(self.sessions)}")

    def close(self):
        for session in list(self.sessions.values()):
            self.close_session(session, reason="close")
        self.multiplexer.close()

    def __str__(self):
        return f"{self.__class__.__name__}({self.rule})"

    def __repr__(self):
        return str(self)

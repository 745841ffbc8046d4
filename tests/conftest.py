import socket
import threading
import time

import pytest

from iforward import DatagramEngine, ForwardingEngine, ForwardRule, create_listener, logger


def wait_until(predicate, timeout=3, interval=0.01):
    start = time.time()
    while time.time() - start < timeout:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def recv_exactly(sock, size):
    chunks = []
    received = 0
    while received < size:
        chunk = sock.recv(size - received)
        if not chunk:
            break
        chunks.append(chunk)
        received += len(chunk)
    return b"".join(chunks)


def is_closed_by_peer(sock):
    try:
        return sock.recv(1) == b""
    except ConnectionResetError:
        return True


def free_port(socktype=socket.SOCK_STREAM):
    sock = socket.socket(socket.AF_INET, socktype)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def make_rule(target_port, protocol="tcp", listen_port="0"):
    return ForwardRule(protocol, "127.0.0.1", str(listen_port), "127.0.0.1", str(target_port))


class EngineThread(threading.Thread):
    def __init__(self, engine):
        super().__init__(daemon=True)
        self.engine = engine
        self.address = engine.listener.getsockname()
        self.stopped = threading.Event()

    def run(self):
        while not self.stopped.is_set():
            self.engine.serve_once(0.05)

    def stop(self):
        self.stopped.set()
        self.join(2)
        self.engine.close()
        self.engine.listener.close()


@pytest.fixture
def target_server():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen(16)
    server.settimeout(3)
    yield server
    server.close()


@pytest.fixture
def start_forwarder():
    threads = []

    def start(rule, **kwargs):
        listener = create_listener(rule)
        engine_class = ForwardingEngine if rule.protocol == "tcp" else DatagramEngine
        thread = EngineThread(engine_class(rule, listener, **kwargs))
        thread.start()
        threads.append(thread)
        return thread

    yield start
    for thread in threads:
        thread.stop()


@pytest.fixture
def connect():
    socks = []

    def _connect(address, timeout=3):
        sock = socket.create_connection(address, timeout=timeout)
        socks.append(sock)
        return sock

    yield _connect
    for sock in socks:
        sock.close()


@pytest.fixture(autouse=True)
def restore_log_level():
    level = logger.level
    yield
    logger.setLevel(level)

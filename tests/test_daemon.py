import logging
import signal
import socket
import subprocess
import sys
from multiprocessing.connection import wait as wait_sentinels

import pytest

from conftest import free_port, is_closed_by_peer, make_rule, recv_exactly, wait_until
from iforward import ForwardDaemon, ForwardWorkers
from iforward.__main__ import main
from iforward.base import clear_forward_process, get_proc
from iforward.exceptions import ForwardRuntimeError


def test_daemon_forwards_in_worker_process(target_server):
    rule = make_rule(target_server.getsockname()[1], listen_port=free_port())
    with ForwardDaemon(rule) as daemon:
        assert daemon.proc_ok
        assert daemon.proc.pid in ForwardDaemon.LAUNCHED_PIDS
        assert daemon.get_memory() > 0
        client = socket.create_connection(rule.listen_address, timeout=5)
        conn, _ = target_server.accept()
        conn.settimeout(5)
        try:
            client.sendall(b"hello")
            assert recv_exactly(conn, 5) == b"hello"
            conn.sendall(b"world")
            assert recv_exactly(client, 5) == b"world"
            client.close()
            assert is_closed_by_peer(conn)
        finally:
            client.close()
            conn.close()
    assert not daemon.proc_ok
    assert daemon.proc.pid not in ForwardDaemon.LAUNCHED_PIDS
    with pytest.raises(ForwardRuntimeError):
        daemon.launch()


def test_daemon_accepts_rule_string():
    port = free_port()
    daemon = ForwardDaemon(f"tcp://127.0.0.1:{port}/127.0.0.1:9", start=False)
    assert daemon.rule.listen_address == ("127.0.0.1", port)
    assert daemon.engine_kwargs == {"buffer_size": 8192}
    assert daemon.proc is None
    assert daemon.get_memory() == 0


def test_udp_daemon_kwargs():
    daemon = ForwardDaemon("udp://:5353/127.0.0.1:53", session_timeout=0, start=False)
    assert daemon.engine_kwargs == {"buffer_size": 65535, "session_timeout": 0}


def test_daemon_address_in_use(target_server):
    port = target_server.getsockname()[1]
    with pytest.raises(ForwardRuntimeError):
        ForwardDaemon(make_rule(9, listen_port=port))


def test_workers_wait_until_every_worker_exits(caplog):
    caplog.set_level(logging.INFO, logger="iforward")
    rules = [make_rule(9, listen_port=free_port()) for _ in range(2)]
    with ForwardWorkers(rules, check_interval=0.1) as workers:
        assert len(workers.daemons) == 2
        for daemon in workers.daemons:
            daemon.proc.terminate()
        workers.wait()
        exited = [
            record.getMessage()
            for record in caplog.records
            if " exited, exitcode: " in record.getMessage()
        ]
        assert len(exited) == 2
        for daemon in workers.daemons:
            assert not daemon.proc_ok
            assert daemon.exitcode is not None
            assert daemon.proc.pid not in ForwardDaemon.LAUNCHED_PIDS
            if sys.platform != "win32":
                assert daemon.exitcode == -signal.SIGTERM
                assert any(
                    line.startswith(f"{daemon} exited, exitcode: {-signal.SIGTERM},")
                    for line in exited
                )


def test_forget_reaps_the_exited_worker():
    daemons = [ForwardDaemon(make_rule(9, listen_port=free_port())) for _ in range(3)]
    try:
        for daemon in daemons:
            daemon.proc.terminate()
        for daemon in daemons:
            assert wait_sentinels([daemon.sentinel], timeout=5)
            daemon.forget()
            assert daemon.exitcode is not None
            assert not daemon.proc_ok
            assert daemon.proc.pid not in ForwardDaemon.LAUNCHED_PIDS
    finally:
        for daemon in daemons:
            daemon.shutdown("test done")


def test_workers_startup_failure_shuts_down_started(target_server):
    busy_port = target_server.getsockname()[1]
    rules = [make_rule(9, listen_port=free_port()), make_rule(9, listen_port=busy_port)]
    workers = ForwardWorkers(rules)
    with pytest.raises(ForwardRuntimeError):
        workers.create_forward_workers()
    assert len(workers.daemons) == 1
    assert not workers.daemons[0].proc_ok


def is_listening(port):
    try:
        socket.create_connection(("127.0.0.1", port), timeout=0.5).close()
        return True
    except OSError:
        return False


@pytest.fixture
def forward_process():
    procs = []

    def start(port):
        proc = subprocess.Popen(
            [sys.executable, "-m", "iforward", f"tcp://127.0.0.1:{port}/127.0.0.1:9"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        procs.append(proc)
        assert wait_until(lambda: is_listening(port), timeout=10)
        return proc

    yield start
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
            proc.wait(5)


def test_clear_forward_process_by_port(forward_process):
    port, other_port = free_port(), free_port()
    proc = forward_process(port)
    other = forward_process(other_port)
    assert proc.pid in {p.pid for p in get_proc(port)}
    assert clear_forward_process(port) >= 1
    assert proc.wait(5) is not None
    assert not get_proc(port)
    assert other.poll() is None
    assert not is_listening(port)
    assert is_listening(other_port)


def test_shutdown_option_kills_by_port(forward_process):
    port = free_port()
    proc = forward_process(port)
    assert main(["-k", str(port)]) == 0
    assert proc.wait(5) is not None
    assert not get_proc(port)

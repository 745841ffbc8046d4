import os
import socket

import pytest

from iforward.base import (
    ForwardRule,
    create_listener,
    get_proc,
    parse_forward_rule,
    resolve_target,
)
from iforward.exceptions import ForwardRuntimeError, ForwardValueError


def test_parse_full_rule():
    rule = parse_forward_rule("tcp://0.0.0.0:9000/127.0.0.1:9001")
    assert rule == ForwardRule("tcp", "0.0.0.0", "9000", "127.0.0.1", "9001")
    assert rule.listen_address == ("0.0.0.0", 9000)
    assert rule.target_address == ("127.0.0.1", 9001)
    assert rule.socket_type == socket.SOCK_STREAM


@pytest.mark.parametrize(
    "text",
    ["tcp://:9000/example.com:80", "tcp://9000/example.com:80", "9000/example.com:80"],
)
def test_parse_default_listen_host(text):
    rule = parse_forward_rule(text)
    assert rule.protocol == "tcp"
    assert rule.listen_host == "0.0.0.0"
    assert rule.listen_port == "9000"
    assert rule.target_host == "example.com"


def test_parse_udp_and_ipv6():
    rule = parse_forward_rule("UDP://[::]:5353/[::1]:53")
    assert rule.protocol == "udp"
    assert rule.listen_host == "::"
    assert rule.target_host == "::1"
    assert rule.socket_type == socket.SOCK_DGRAM
    assert str(rule) == "udp://[::]:5353/[::1]:53"


def test_str_is_parseable():
    rule = parse_forward_rule("9000/10.0.0.5:22")
    assert str(rule) == "tcp://0.0.0.0:9000/10.0.0.5:22"
    assert parse_forward_rule(str(rule)) == rule


@pytest.mark.parametrize(
    "text",
    [
        "",
        "tcp://0.0.0.0:9000",
        "sctp://:9000/127.0.0.1:9001",
        "tcp://:9000/127.0.0.1",
        "tcp://:9000/:9001",
        "tcp://:0/127.0.0.1:9001",
        "tcp://:9000/127.0.0.1:65536",
        "tcp://:port/127.0.0.1:9001",
        "tcp://::1:9000/127.0.0.1:9001",
    ],
)
def test_parse_invalid_rule(text):
    with pytest.raises(ForwardValueError):
        parse_forward_rule(text)


def test_parse_rule_type():
    with pytest.raises(ForwardValueError):
        parse_forward_rule(9000)


def test_create_tcp_listener():
    rule = ForwardRule("tcp", "127.0.0.1", "0", "127.0.0.1", "9001")
    listener = create_listener(rule)
    try:
        assert listener.type == socket.SOCK_STREAM
        assert listener.getblocking() is False
        client = socket.create_connection(listener.getsockname(), timeout=1)
        client.close()
    finally:
        listener.close()


def test_create_udp_listener():
    rule = ForwardRule("udp", "127.0.0.1", "0", "127.0.0.1", "53")
    listener = create_listener(rule)
    try:
        assert listener.type == socket.SOCK_DGRAM
        assert listener.getsockname()[1] > 0
    finally:
        listener.close()


def test_create_listener_address_in_use(target_server):
    port = target_server.getsockname()[1]
    rule = ForwardRule("tcp", "127.0.0.1", str(port), "127.0.0.1", "9001")
    with pytest.raises(ForwardRuntimeError):
        create_listener(rule)


def test_get_proc_skips_current_process():
    assert os.getpid() not in [proc.pid for proc in get_proc()]


def test_resolve_target():
    family, socktype, _, address = resolve_target(parse_forward_rule("udp://:0/127.0.0.1:53"))
    assert family == socket.AF_INET
    assert socktype == socket.SOCK_DGRAM
    assert address == ("127.0.0.1", 53)

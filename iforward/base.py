# -*- coding: utf-8 -*-
"""
Forward rules, listeners and process utils for iforward
"""

import os
import re
import socket
import time
from typing import List, NamedTuple

import psutil

from .exceptions import ForwardRuntimeError, ForwardValueError, TargetUnreachable
from .logs import logger

WILDCARD_HOST = "0.0.0.0"
SOCKET_TYPES = {"tcp": socket.SOCK_STREAM, "udp": socket.SOCK_DGRAM}
RULE_REGEX = re.compile(
    r"^(?:(?P<protocol>[A-Za-z]+)://)?(?P<listen>[^/]+)/(?P<target>[^/]+)$"
)
ADDRESS_REGEX = re.compile(r"^(?:(?P<host>\[[^\]]*\]|[^:\[\]]*):)?(?P<port>[^:\[\]]+)$")


class ForwardRule(NamedTuple):
    """One relay path: listen on `listen_host:listen_port`, forward to `target_host:target_port`.
    Ports are kept as the strings they were written with."""

    protocol: str
    listen_host: str
    listen_port: str
    target_host: str
    target_port: str

    @property
    def socket_type(self):
        return SOCKET_TYPES[self.protocol]

    @property
    def listen_address(self):
        return (self.listen_host, int(self.listen_port))

    @property
    def target_address(self):
        return (self.target_host, int(self.target_port))

    @staticmethod
    def _join(host, port):
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{port}"

    def __str__(self):
        return f"{self.protocol}://{self._join(self.listen_host, self.listen_port)}/{self._join(self.target_host, self.target_port)}"


def _parse_address(text, rule_text, default_host=None):
    match = ADDRESS_REGEX.match(text)
    if not match:
        raise ForwardValueError(f"invalid address {text!r} in rule {rule_text!r}")
    host, port = match.group("host"), match.group("port")
    if host and host.startswith("["):
        host = host[1:-1]
    if not host:
        if default_host is None:
            raise ForwardValueError(f"missing host in {text!r} of rule {rule_text!r}")
        host = default_host
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ForwardValueError(f"invalid port {port!r} in rule {rule_text!r}")
    return host, port


def parse_forward_rule(text: str) -> ForwardRule:
    """Parse `proto://[listen_host:]listen_port/target_host:target_port`.

    tcp://0.0.0.0:9000/127.0.0.1:9001
    udp://:5353/8.8.8.8:53
    9000/example.com:80   (tcp, listen on 0.0.0.0)
    tcp://[::]:9000/[::1]:9001
    """
    if not isinstance(text, str):
        raise ForwardValueError(f"rule should be str, but {type(text)} was given.")
    match = RULE_REGEX.match(text.strip())
    if not match:
        raise ForwardValueError(
            f"invalid rule {text!r}, should be like tcp://0.0.0.0:9000/127.0.0.1:9001"
        )
    protocol = (match.group("protocol") or "tcp").lower()
    if protocol not in SOCKET_TYPES:
        raise ForwardValueError(
            f"invalid protocol {protocol!r} in rule {text!r}, should be one of {sorted(SOCKET_TYPES)}"
        )
    listen_host, listen_port = _parse_address(
        match.group("listen"), text, default_host=WILDCARD_HOST
    )
    target_host, target_port = _parse_address(match.group("target"), text)
    return ForwardRule(protocol, listen_host, listen_port, target_host, target_port)


def create_listener(rule: ForwardRule, backlog=128) -> socket.socket:
    "create the bound, non-blocking listener socket of the rule"
    try:
        family, socktype, proto, _, address = socket.getaddrinfo(
            rule.listen_host,
            int(rule.listen_port),
            type=rule.socket_type,
            flags=socket.AI_PASSIVE,
        )[0]
    except socket.gaierror as error:
        raise ForwardRuntimeError(
            f"could not resolve listen address of {rule}: {error!r}"
        ) from error
    sock = socket.socket(family, socktype, proto)
    try:
        if socktype == socket.SOCK_STREAM:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(address)
        if socktype == socket.SOCK_STREAM:
            sock.listen(backlog)
        sock.setblocking(False)
    except OSError as error:
        sock.close()
        raise ForwardRuntimeError(f"could not listen on {rule}: {error!r}") from error
    logger.debug(f"listening on {sock.getsockname()} for {rule}")
    return sock


def resolve_target(rule: ForwardRule):
    """resolve the target of the rule to (family, socktype, proto, address).
    Called once when an engine starts, the event loop never resolves names."""
    host, port = rule.target_address
    try:
        family, socktype, proto, _, address = socket.getaddrinfo(
            host, port, type=rule.socket_type
        )[0]
    except socket.gaierror as error:
        raise TargetUnreachable(f"could not resolve {host}:{port}: {error!r}") from error
    return family, socktype, proto, address


def get_proc_by_regex(regex, name_regex="iforward"):
    "find the procs whose cmdline matches both regex and name_regex"
    procs = []
    for proc in psutil.process_iter():
        try:
            cmd_string = " ".join(proc.cmdline())
        except (psutil.Error, OSError):
            continue
        if re.search(name_regex, cmd_string) and re.search(regex, cmd_string):
            procs.append(proc)
    return procs


def get_proc(port=None) -> List[psutil.Process]:
    "find local iforward procs forwarding the given listen port, or all of them if port is None"
    if port:
        regex = rf"(^|[\s:/]){port}/"
    else:
        regex = r"\S+/\S+:\d+"
    return [proc for proc in get_proc_by_regex(regex) if proc.pid != os.getpid()]


def clear_forward_process(port=None, timeout=2, interval=0.5):
    """kill iforward processes, if port is not set, kill all of them.
    return the count of killed procs."""
    killed_count = 0
    start_time = time.time()
    while 1:
        procs = get_proc(port)
        for proc in procs:
            try:
                logger.debug(f"[Killing] {proc}, port: {port}. {' '.join(proc.cmdline())}")
                # workers may not share the cmdline of their parent
                family = proc.children(recursive=True) + [proc]
            except (psutil.NoSuchProcess, ProcessLookupError):
                continue
            for member in family:
                try:
                    member.kill()
                    killed_count += 1
                    try:
                        member.wait(timeout)
                    except psutil.TimeoutExpired:
                        pass
                except (psutil.NoSuchProcess, ProcessLookupError):
                    continue
        if procs and time.time() - start_time < timeout:
            time.sleep(interval)
            continue
        return killed_count


def kill_pid(pid: int):
    try:
        proc = psutil.Process(pid)
        proc.kill()
        try:
            return proc.wait(0.1)
        except psutil.TimeoutExpired:
            pass
    except (psutil.NoSuchProcess, ProcessLookupError):
        pass

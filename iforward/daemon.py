# -*- coding: utf-8 -*-
import atexit
import multiprocessing
import time
from multiprocessing.connection import wait as wait_sentinels
from typing import List, Set

import psutil
from morebuiltins.utils import read_size
from torequests.utils import timepass, ttime

from .base import ForwardRule, create_listener, kill_pid, parse_forward_rule
from .config import Config
from .engine import run
from .exceptions import ForwardException, ForwardRuntimeError
from .logs import logger


def run_worker(rule: ForwardRule, listener, engine_kwargs=None, log_level=None):
    "the target of worker processes, one rule per process"
    if log_level is not None:
        logger.setLevel(log_level)
    try:
        run(rule, listener, **(engine_kwargs or {}))
    except KeyboardInterrupt:
        pass
    except ForwardException as error:
        logger.error(f"worker of {rule} crashed: {error!r}")
        raise SystemExit(1)


class ForwardDaemon(object):
    """Bind the listener of one rule, then forward it in a separate process.

        rule,             ForwardRule or rule string like tcp://0.0.0.0:9000/127.0.0.1:9001
        backlog,          listen backlog of the tcp listener, default to 128
        buffer_size,      max bytes of one read, default to 8192 (tcp) / 65535 (udp)
        session_timeout,  udp only, close the idle sessions after seconds, default to 60
        start,            launch the worker process while init, default to True

    The worker is never restarted: a crashed rule stays dead and its exit
    code is logged. Other rules are not affected.
    """

    LAUNCHED_PIDS: Set[int] = set()

    def __init__(
        self,
        rule,
        backlog=None,
        buffer_size=None,
        session_timeout=None,
        start=True,
    ):
        if isinstance(rule, str):
            rule = parse_forward_rule(rule)
        self.rule = rule
        self.backlog = backlog or Config["ListenerArgs"]["backlog"]
        self.buffer_size = buffer_size
        self.session_timeout = session_timeout
        self.start_time = time.time()
        self.proc = None
        self._shutdown = False
        self._shutdown_reason = ""
        if start:
            self.launch()

    @classmethod
    def cleanup_launched_pids(cls):
        for pid in cls.LAUNCHED_PIDS:
            kill_pid(pid)
        cls.LAUNCHED_PIDS.clear()

    @property
    def engine_kwargs(self):
        if self.rule.protocol == "udp":
            return {
                "buffer_size": self.buffer_size or Config["DatagramArgs"]["buffer_size"],
                "session_timeout": Config["DatagramArgs"]["session_timeout"]
                if self.session_timeout is None
                else self.session_timeout,
            }
        return {"buffer_size": self.buffer_size or Config["EngineArgs"]["buffer_size"]}

    def launch(self):
        if self._shutdown:
            raise ForwardRuntimeError(
                f"{self} launch failed after shutdown({ttime(self._shutdown)})."
            )
        if self.proc_ok:
            return self.proc
        listener = create_listener(self.rule, backlog=self.backlog)
        try:
            self.proc = multiprocessing.Process(
                target=run_worker,
                args=(self.rule, listener, self.engine_kwargs, logger.level),
                name=f"iforward-{self.rule.protocol}-{self.rule.listen_port}",
                daemon=True,
            )
            self.proc.start()
        finally:
            # the worker owns its own copy of the listener
            listener.close()
        self.LAUNCHED_PIDS.add(self.proc.pid)
        logger.debug(f"{self} launched worker pid={self.proc.pid}, {self.engine_kwargs}")
        return self.proc

    @property
    def proc_ok(self):
        return bool(self.proc and self.proc.is_alive())

    @property
    def sentinel(self):
        return self.proc.sentinel

    @property
    def exitcode(self):
        return self.proc.exitcode if self.proc else None

    def get_memory(self, attr="rss"):
        "memory usage of the worker process in bytes, 0 if it is not running"
        if not self.proc_ok:
            return 0
        try:
            return getattr(psutil.Process(self.proc.pid).memory_info(), attr)
        except (psutil.NoSuchProcess, ProcessLookupError):
            return 0

    def forget(self):
        "called after the worker exited by itself"
        if self.proc:
            self.proc.join()
            self.LAUNCHED_PIDS.discard(self.proc.pid)

    def shutdown(self, reason=None, timeout=1):
        if self._shutdown:
            logger.debug(f"{self} shutdown at {ttime(self._shutdown)} yet.")
            return
        self._shutdown = time.time()
        self._shutdown_reason = reason
        reason = f" for {reason}" if reason else ""
        logger.debug(
            f"{self} shutting down{reason}, start-up: {ttime(self.start_time)}, duration: {timepass(time.time() - self.start_time, accuracy=3, format=1)}."
        )
        if self.proc:
            if self.proc.is_alive():
                self.proc.terminate()
                self.proc.join(timeout)
            if self.proc.is_alive():
                kill_pid(self.proc.pid)
                self.proc.join(timeout)
            self.LAUNCHED_PIDS.discard(self.proc.pid)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown("__exit__")

    def __str__(self):
        return f"{self.__class__.__name__}({self.rule})"

    def __repr__(self):
        return str(self)


class ForwardWorkers:
    "one ForwardDaemon per rule, wait until all of them exit"

    def __init__(self, rules, check_interval=None, **kwargs):
        self.rules: List[ForwardRule] = [
            parse_forward_rule(rule) if isinstance(rule, str) else rule
            for rule in rules
        ]
        self.check_interval = check_interval or Config["DaemonArgs"]["check_interval"]
        self.kwargs = kwargs
        self.daemons: List[ForwardDaemon] = []

    def __enter__(self):
        return self.create_forward_workers()

    def create_forward_workers(self):
        try:
            for rule in self.rules:
                logger.debug(f"ForwardDaemon args: rule={rule}, {self.kwargs}")
                self.daemons.append(ForwardDaemon(rule, **self.kwargs))
        except ForwardException:
            self.shutdown("startup failed")
            raise
        return self

    def wait(self):
        "block until every worker exits, log the exit code of each one"
        running = {daemon.sentinel: daemon for daemon in self.daemons if daemon.proc}
        while running:
            ready = wait_sentinels(list(running), timeout=self.check_interval)
            for sentinel in ready:
                daemon = running.pop(sentinel)
                daemon.forget()
                logger.error(
                    f"{daemon} exited, exitcode: {daemon.exitcode}, uptime: {timepass(time.time() - daemon.start_time, accuracy=3, format=1)}, running: {len(running)}"
                )
            if not ready:
                logger.debug(
                    f"{self} running: {len(running)}, memory: {read_size(sum(daemon.get_memory() for daemon in running.values()), rounded=1)}"
                )

    def shutdown(self, reason=None):
        for daemon in self.daemons:
            daemon.shutdown(reason)

    def __exit__(self, *args):
        self.shutdown("__exit__")

    @classmethod
    def run_forward_workers(cls, rules, **kwargs):
        with cls(rules, **kwargs) as workers:
            workers.wait()

    def __str__(self):
        return f"{self.__class__.__name__}({len(self.daemons)} rules)"

    def __repr__(self):
        return str(self)


atexit.register(ForwardDaemon.cleanup_launched_pids)

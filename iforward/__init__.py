from .base import ForwardRule, create_listener, parse_forward_rule
from .daemon import ForwardDaemon, ForwardWorkers
from .datagram import DatagramEngine
from .engine import ForwardingEngine, run
from .logs import logger

__version__ = "1.0.0"
__all__ = [
    "ForwardRule",
    "parse_forward_rule",
    "create_listener",
    "ForwardingEngine",
    "DatagramEngine",
    "run",
    "ForwardDaemon",
    "ForwardWorkers",
    "logger",
]

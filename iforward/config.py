import json
from pathlib import Path

from .exceptions import ForwardValueError

Config = {
    "EngineArgs": {
        "buffer_size": 8192,
    },
    "ListenerArgs": {
        "backlog": 128,
    },
    "DatagramArgs": {
        "session_timeout": 60,
        "buffer_size": 65535,
    },
    "DaemonArgs": {
        "check_interval": 5,
    },
}
CONFIG_KEYS = {"forwards", "log_level", "buffer_size", "backlog", "session_timeout"}
# key -> (accepted types, minimum value)
NUMBER_KEYS = {
    "buffer_size": ((int,), 1),
    "backlog": ((int,), 1),
    "session_timeout": ((int, float), 0),
}


def load_config(path) -> dict:
    """Load the config dict from a JSON file.

    {"forwards": ["tcp://0.0.0.0:9000/127.0.0.1:9001"], "log_level": "INFO",
     "buffer_size": 8192, "backlog": 128, "session_timeout": 60}
    """
    path = Path(path)
    if not path.is_file():
        raise ForwardValueError(f"config file not found: {path}")
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as error:
        raise ForwardValueError(f"invalid JSON in config file {path}: {error}")
    if not isinstance(config, dict):
        raise ForwardValueError(
            f"config should be a JSON object, but {type(config).__name__} was given."
        )
    unknown = set(config) - CONFIG_KEYS
    if unknown:
        raise ForwardValueError(f"unknown config keys: {sorted(unknown)}")
    forwards = config.get("forwards", [])
    if isinstance(forwards, str):
        forwards = [forwards]
    if not isinstance(forwards, list):
        raise ForwardValueError("config key `forwards` should be a list of rules")
    config["forwards"] = forwards
    for key, (types, minimum) in NUMBER_KEYS.items():
        if key not in config:
            continue
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, types) or value < minimum:
            raise ForwardValueError(
                f"config key `{key}` should be a number >= {minimum}, but {value!r} was given."
            )
    return config

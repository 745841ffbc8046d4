# -*- coding: utf-8 -*-
import argparse
import sys

from iforward import ForwardWorkers, __version__, logger
from iforward.base import clear_forward_process, parse_forward_rule
from iforward.config import load_config
from iforward.exceptions import ForwardException


def main(argv=None):
    usage = '''
    Forward local TCP/UDP ports to remote targets, one worker process per rule.

Rule:
    <tcp|udp>://[listen_host:]listen_port/target_host:target_port
    listen_host defaults to 0.0.0.0, IPv6 hosts are written in brackets.

Demo:
    > python -m iforward tcp://0.0.0.0:9000/127.0.0.1:9001
    > python -m iforward tcp://:8080/example.com:80 udp://:5353/8.8.8.8:53
    > python -m iforward 2222/10.0.0.5:22 --debug
    > python -m iforward -c forwards.json

Other operations:
    1. kill local iforward workers forwarding the given listen port:
        python -m iforward -s 9000
        python -m iforward -k 9000
    2. kill all local iforward workers:
        python -m iforward -K
    3. check the rules and exit:
        python -m iforward --check tcp://:9000/127.0.0.1:9001
'''
    parser = argparse.ArgumentParser(prog="iforward", usage=usage)
    parser.add_argument("rules", nargs="*", help="forward rules, see usage")
    parser.add_argument("-v",
                        "-V",
                        "--version",
                        help="iforward version info",
                        action="store_true")
    parser.add_argument("-c",
                        "--config",
                        help="load config dict from JSON file of given path",
                        default="")
    parser.add_argument("--log-level",
                        "--log_level",
                        help="logger level, will be overwrited by --debug",
                        default=argparse.SUPPRESS)
    parser.add_argument("--debug",
                        dest="debug",
                        help="set logger level to DEBUG",
                        default=False,
                        action="store_true")
    parser.add_argument("-b",
                        "--buffer-size",
                        "--buffer_size",
                        help="max bytes of one read, default to 8192 for tcp and 65535 for udp",
                        default=argparse.SUPPRESS,
                        type=int)
    parser.add_argument("--backlog",
                        help="listen backlog of tcp listeners, default to 128",
                        default=argparse.SUPPRESS,
                        type=int)
    parser.add_argument(
        "--session-timeout",
        "--session_timeout",
        dest="session_timeout",
        help="close idle udp sessions after seconds, 0 for never, default to 60",
        default=argparse.SUPPRESS,
        type=float)
    parser.add_argument(
        "-s",
        "-k",
        "--shutdown",
        help="shutdown the workers forwarding the given listen port",
        type=int)
    parser.add_argument("-K",
                        "--killall",
                        help="killall local iforward workers",
                        default=False,
                        action="store_true")
    parser.add_argument("--check",
                        help="parse the rules, print them and exit",
                        default=False,
                        action="store_true")
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0
    if args.shutdown:
        killed = clear_forward_process(args.shutdown)
        logger.info(f"killed {killed} procs forwarding port {args.shutdown}")
        return 0
    if args.killall:
        killed = clear_forward_process(None)
        logger.info(f"killed {killed} iforward procs")
        return 0

    try:
        config = load_config(args.config) if args.config else {}
        kwargs = {}
        for key in ("buffer_size", "backlog", "session_timeout"):
            value = getattr(args, key, config.get(key))
            if value is not None:
                kwargs[key] = value
        log_level = getattr(args, "log_level", config.get("log_level"))
        if args.debug:
            log_level = "DEBUG"
        if log_level:
            logger.setLevel(log_level.upper() if isinstance(log_level, str) else log_level)
        rules = [parse_forward_rule(rule) for rule in config.get("forwards", []) + args.rules]
    except (ForwardException, ValueError) as error:
        logger.error(f"{error}")
        return 1
    if not rules:
        parser.print_usage()
        logger.error("no forward rules given")
        return 1
    if args.check:
        for rule in rules:
            print(rule, flush=True)
        return 0
    try:
        ForwardWorkers.run_forward_workers(rules, **kwargs)
    except ForwardException as error:
        logger.error(f"{error}")
        return 1
    except KeyboardInterrupt:
        logger.info("shutdown by KeyboardInterrupt")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
CLI interface using argparse (standard library).
"""
import argparse
import sys
from typing import List, Optional, Tuple

from . import __version__
from .config import AgentConfig, DecodePolicy, expand_path, parse_tcp_address


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshagentd",
        description="sshagentd - SSH agent serving in-memory keys",
        allow_abbrev=False,
    )
    parser.add_argument("-V", "--version", action="version", version="%(prog)s " + __version__)
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    listen = parser.add_mutually_exclusive_group()
    listen.add_argument("-a", "--socket", dest="socket_path",
                        help="Bind the agent to this Unix socket (default: fresh temp dir)")
    listen.add_argument("--tcp", dest="tcp_address", metavar="HOST:PORT",
                        help="Listen on a TCP address instead (testing only)")
    parser.add_argument("-k", "--key", dest="key_files", action="append", default=[],
                        metavar="KEYFILE", help="OpenSSH private key to load (repeatable)")
    parser.add_argument("--decode-policy", choices=[p.value for p in DecodePolicy],
                        help="Answer malformed requests with a failure (reply) or drop the client (close)")
    parser.add_argument("--max-frame", type=int, metavar="BYTES",
                        help="Largest accepted request frame")
    return parser


def parse_args(argv: Optional[List[str]] = None, environ=None) -> Tuple[AgentConfig, List[str]]:
    """
    Combine environment defaults with command line options.

    Returns:
        (config, key files to load)
    """
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = AgentConfig.from_env(environ)
    except ValueError as e:
        parser.error("invalid environment setting: {}".format(e))

    if args.debug:
        config.debug = True
    if args.decode_policy:
        config.decode_policy = DecodePolicy(args.decode_policy)
    if args.max_frame is not None:
        if args.max_frame < 1:
            parser.error("--max-frame must be positive")
        config.max_frame_length = args.max_frame
    if args.socket_path:
        config.socket_path = str(expand_path(args.socket_path))
    if args.tcp_address:
        try:
            config.tcp_address = parse_tcp_address(args.tcp_address)
        except ValueError:
            parser.error("invalid --tcp address: {}".format(args.tcp_address))
        config.socket_path = None

    return config, [str(expand_path(path)) for path in args.key_files]

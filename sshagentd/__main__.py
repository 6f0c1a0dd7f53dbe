"""
Main entry point for sshagentd.
"""
import logging
import os
import signal
import sys
import threading

from .cli import parse_args
from .config import default_socket_path
from .errors import BackendFailure
from .logging_utils import setup_logging
from .memory import MemoryBackend
from .server import TCPAgentServer, serve_socket

LOG = logging.getLogger("sshagentd")


def main(argv=None) -> int:
    """Run an agent in the foreground until SIGINT/SIGTERM."""
    config, key_files = parse_args(argv)
    setup_logging(logging.DEBUG if config.debug else logging.INFO)
    LOG.debug("Starting sshagentd with %r", config)

    backend = MemoryBackend()
    created_dir = None
    for path in key_files:
        try:
            backend.load_key_file(path)
            LOG.info("Loaded key %s", path)
        except BackendFailure as e:
            LOG.error("%s", e)
            return 1

    if config.tcp_address:
        server = TCPAgentServer(config.tcp_address, backend, config)
        host, port = server.server_address[:2]
        address = "tcp://{}:{}".format(host, port)
    else:
        if not config.socket_path:
            config.socket_path = default_socket_path()
            created_dir = os.path.dirname(config.socket_path)
        server = serve_socket(config.socket_path, backend, config)
        address = config.socket_path

    # print how to setup environment (same behavior as ssh-agent)
    print('SSH_AUTH_SOCK={:s}; export SSH_AUTH_SOCK;'
          'SSH_AGENT_PID={:d}; export SSH_AGENT_PID;'.format(address, os.getpid()),
          flush=True)

    def stop(signo, frame):
        LOG.debug("Signal %d received, shutting down", signo)
        # shutdown() blocks until serve_forever returns, so not from this thread
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, stop)
    signal.signal(signal.SIGINT, stop)
    try:
        server.serve_forever()
    finally:
        server.server_close()
        if created_dir:
            try:
                os.rmdir(created_dir)
            except OSError:
                pass
    LOG.debug("Main exited")
    return 0


if __name__ == "__main__":
    sys.exit(main())

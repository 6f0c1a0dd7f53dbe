"""
Logging setup: a stderr handler with optional ANSI colours per level.
"""
import json
import logging
import os
import sys


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"


LEVEL_COLORS = {
    logging.DEBUG: Colors.MAGENTA,
    logging.INFO: Colors.BLUE,
    logging.WARNING: Colors.YELLOW,
    logging.ERROR: Colors.RED,
    logging.CRITICAL: Colors.RED,
}

FORMAT = "SSH: %(message)s"


def _should_use_colors(stream=None) -> bool:
    """Determine if colors should be used."""
    # Skip if explicitly disabled
    if os.environ.get("NO_COLOR"):
        return False

    if os.environ.get("TERM", "") == "dumb":
        return False

    if os.environ.get("FORCE_COLOR") == "1":
        return True

    stream = stream if stream is not None else sys.stderr
    return hasattr(stream, "isatty") and stream.isatty()


class ColorFormatter(logging.Formatter):
    """Colour the whole line by level when ``colors`` is on."""

    def __init__(self, fmt=FORMAT, colors=False):
        super().__init__(fmt=fmt)
        self.colors = colors

    def format(self, record):
        line = super().format(record).replace('\r', '').rstrip()
        if not self.colors:
            return line
        color = LEVEL_COLORS.get(record.levelno, "")
        bold = Colors.BOLD if record.levelno >= logging.ERROR else ""
        return f"{bold}{color}{line}{Colors.RESET}"


def setup_logging(level=logging.INFO, stream=None) -> logging.Handler:
    """
    Attach a single stderr handler to the root logger.

    Calling it again replaces the handler installed by the previous call.

    Returns:
        The installed handler
    """
    stream = stream if stream is not None else sys.stderr
    log = logging.getLogger()
    log.setLevel(level)
    for handler in list(log.handlers):
        if getattr(handler, "_sshagentd", False):
            log.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(ColorFormatter(colors=_should_use_colors(stream)))
    handler._sshagentd = True
    log.addHandler(handler)
    return handler


def log_event(logger: logging.Logger, operation: str, level=logging.ERROR, **fields) -> None:
    """Log a machine readable ``SSH_AGENT_ERROR: {...}`` line."""
    payload = {"operation": operation}
    payload.update(fields)
    logger.log(level, "SSH_AGENT_ERROR: %s", json.dumps(payload, separators=(',', ':'), default=str))

"""
Operator-facing output for supplant.

Progress is reported through the standard logging module so that the same
lines show up on the terminal, in captured test logs, and in any handler
an embedding program installs. This module provides the header/list
formatting helpers used across the package and the terminal logging setup
used by the command-line entry point.
"""
import logging
import sys

logger = logging.getLogger("supplant")


class ColorFormatter(logging.Formatter):
    """Formatter that colours the level prefix of warnings and errors."""

    RED = "\033[91m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    RESET = "\033[0m"

    def __init__(self, use_color=True):
        super().__init__("%(message)s")
        self.use_color = use_color

    def _paint(self, color, text):
        if not self.use_color:
            return text
        return f"{color}{text}{self.RESET}"

    def format(self, record):
        message = super().format(record)
        if record.levelno >= logging.ERROR:
            return self._paint(self.RED, "ERROR ") + message
        if record.levelno >= logging.WARNING:
            return self._paint(self.YELLOW, "WARN ") + message
        if getattr(record, "banner", False):
            return self._paint(self.CYAN, message)
        if message.startswith("=> "):
            return self._paint(self.GREEN, "=> ") + message[3:]
        return message


class SafeUnicodeFilter(logging.Filter):
    """Filter to sanitize log messages containing surrogate characters.

    kubectl output and exception text can carry undecodable bytes; writing
    them to a UTF-8 stream would raise UnicodeEncodeError inside logging.
    """

    def filter(self, record):
        if isinstance(record.msg, str):
            try:
                record.msg.encode('utf-8')
            except UnicodeEncodeError:
                record.msg = record.msg.encode('utf-8', errors='replace').decode('utf-8')

        if record.args:
            safe_args = []
            for arg in record.args:
                if isinstance(arg, str):
                    try:
                        arg.encode('utf-8')
                        safe_args.append(arg)
                    except UnicodeEncodeError:
                        safe_args.append(arg.encode('utf-8', errors='replace').decode('utf-8'))
                else:
                    safe_args.append(arg)
            record.args = tuple(safe_args)

        return True


def configure_logging(verbose=False, stream=None):
    """
    Install the terminal handler on the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO (default: False)
        stream: Stream to write to (default: sys.stderr)

    Returns:
        logging.Handler: The installed handler
    """
    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    handler.setFormatter(ColorFormatter(use_color=hasattr(stream, "isatty") and stream.isatty()))
    handler.addFilter(SafeUnicodeFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # The kubernetes client logs every request at DEBUG; keep it out of -v output
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return handler


def print_header(message):
    """Log a progress header (``=> message``)."""
    logger.info(f"=> {message}")


def print_list(message):
    """Log a progress list item (`` - message``)."""
    logger.info(f" - {message}")


def print_banner(message):
    """Log a highlighted informational line."""
    logger.info(message, extra={"banner": True})


def print_summary_list(items, title="Items", verbose=True):
    """
    Print a formatted list of items.

    Args:
        items: List of items to print
        title: Title for the list (default: "Items")
        verbose: Whether to print (default: True)
    """
    if not verbose:
        return

    logger.info(f"\n{title}:")
    for idx, item in enumerate(items, 1):
        logger.info(f"  [{idx}] {item}")

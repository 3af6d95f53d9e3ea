"""Logging setup for the ferry CLI.

Library modules only create module loggers; handlers are installed here,
once, by the command line entry point.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(
    verbose: bool = False,
    log_file: Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the ``ferry`` logger.

    Args:
        verbose: Show DEBUG on the console (default WARNING)
        log_file: Optional file receiving DEBUG and up, rotated at 5 MB
        console: Rich console to log through (stderr by default)

    Returns:
        The configured ``ferry`` logger
    """
    root = logging.getLogger("ferry")
    root.setLevel(logging.DEBUG)

    # Re-running setup (tests, repeated CLI invocations) must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=verbose,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    root.propagate = False
    return root

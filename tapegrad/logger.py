"""
Console logging for tapegrad.

Every module logs through ``logging.getLogger(__name__)`` and attaches no handler of
its own, so nothing is printed until an application calls :func:`setup_logger`.
Tape merges and drains log at DEBUG, optimizer warnings (parameters that received no
gradient) at WARNING.
"""

import logging
import os
import sys


class ColorFormatter(logging.Formatter):
    """
    A logging formatter that colors each record according to its level.

    Examples:
        >>> import logging
        >>> from tapegrad.logger import ColorFormatter
        >>> logger = logging.getLogger("example")
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(ColorFormatter())
        >>> logger.addHandler(handler)
        >>> logger.warning("3 parameters received no gradient")
    """

    grey = "\x1b[38;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    cyan = "\x1b[36;20m"
    green = "\x1b[32;20m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    LAYOUT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(self):
        super().__init__()
        self._formatters = {
            level: logging.Formatter(f"{color}{self.LAYOUT}{self.reset}")
            for level, color in self.FORMATS.items()
        }
        self._fallback = logging.Formatter(f"{self.grey}{self.LAYOUT}{self.reset}")

    def format(self, record):
        """
        Format the record with the color that matches its level.

        Args:
            record (logging.LogRecord): The log record to be formatted.

        Returns:
            str: The formatted log message wrapped in ANSI color codes.
        """
        return self._formatters.get(record.levelno, self._fallback).format(record)


def setup_logger(name=None):
    """
    Set up a logger with colored console output.

    The level is DEBUG if the ``DEBUG`` environment variable is set, INFO otherwise.
    Calling this twice for the same name does not attach a second handler.

    Args:
        name (str, optional): The name of the logger. Use ``"tapegrad"`` to see the
            tape and optimizer messages of the whole package. Defaults to None.

    Returns:
        logging.Logger: The configured logger instance.

    Examples:
        >>> import os
        >>> os.environ["DEBUG"] = "1"
        >>> from tapegrad.logger import setup_logger
        >>> logger = setup_logger("tapegrad")
        >>> # backward() now logs how many ops it replays
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if os.getenv("DEBUG") else logging.INFO
    logger.setLevel(level)

    if not any(
        isinstance(h, logging.StreamHandler) and isinstance(h.formatter, ColorFormatter)
        for h in logger.handlers
    ):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter())
        logger.addHandler(console_handler)

    return logger

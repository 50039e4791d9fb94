"""
Shared logging utilities for the Watchlist Screening System

SECURITY: Names and other caller-supplied text are sanitized before logging
to prevent log injection.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig

_CONTROL_CHARS = re.compile(r'[\r\n\x00-\x1f\x7f-\x9f]')
_WHITESPACE = re.compile(r'\s+')


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = _CONTROL_CHARS.sub(' ', str(text))
    sanitized = _WHITESPACE.sub(' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Configure the root logger from the logging section of the config

    Replaces handlers previously installed by this function so repeated
    calls do not duplicate output.

    Args:
        config: Logging configuration (defaults when omitted)

    Returns:
        The configured root logger
    """
    config = config or LoggingConfig()
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(config.level).upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, '_watchlist_handler', False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(config.format)

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler._watchlist_handler = True
        root.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        file_handler._watchlist_handler = True
        root.addHandler(file_handler)

    return root

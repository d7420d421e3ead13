"""Logging helpers for the email scheduler.

Handlers, level and format are configured once through ``logging.basicConfig``
in ``main.py``; modules only ask for a named logger.
"""

import logging


def get_logger(name: str = "EmailScheduler") -> logging.Logger:
    """Return the :class:`logging.Logger` registered under ``name``."""
    return logging.getLogger(name)

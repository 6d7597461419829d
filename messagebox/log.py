"""
Package logger switch.

Disabled (the default) means only errors get through; enabled opens the
package logger up to debug output. Handlers are the application's business.
"""

import logging

logger = logging.getLogger("messagebox")
logger.addHandler(logging.NullHandler())
logger.setLevel(logging.ERROR)


def enable() -> None:
    logger.setLevel(logging.DEBUG)


def disable() -> None:
    logger.setLevel(logging.ERROR)


def is_enabled() -> bool:
    return logger.isEnabledFor(logging.DEBUG)

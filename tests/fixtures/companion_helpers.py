"""Module imported by remote classes through the configured modules root."""

import os

GREETING: str = "Hello"


def shout(text: str) -> str:
    """Upper-case a text and add an exclamation mark.

    :param text: Input text.
    :returns: Shouted text.
    """
    return f"{text.upper()}!"


def process_id() -> int:
    """Return the identifier of the process this module was imported in.

    :returns: Process identifier.
    """
    return os.getpid()

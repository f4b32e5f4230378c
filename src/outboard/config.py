"""Process-wide configuration for outboard."""

import logging
import sys
import threading
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

DEFAULT_LOGGER_NAME: str = "outboard"
DEBUG_ENV_VAR: str = "OUTBOARD_DEBUG"


def _default_logger() -> logging.Logger:
    """Return the logger remote failures are reported to by default.

    :returns: The ``outboard`` logger.
    """
    return logging.getLogger(DEFAULT_LOGGER_NAME)


class OutboardSettings(BaseModel):
    """Settings shared by every remote class in this process.

    Values that shape the companion process (``modules_root``, ``env``,
    ``executable``, ``debug``) are read once, when the companion spawns.
    Timeouts and the logger are read on every call.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    modules_root: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    executable: str = Field(default_factory=lambda: sys.executable, min_length=1)
    spawn_timeout: float = Field(default=5.0, gt=0)
    call_timeout: float = Field(default=60.0, gt=0)
    debug: bool = False
    logger: logging.Logger = Field(default_factory=_default_logger)


_SETTINGS_LOCK: threading.Lock = threading.Lock()
_SETTINGS: OutboardSettings = OutboardSettings()


def get_settings() -> OutboardSettings:
    """Return the process-wide settings object.

    :returns: Current settings.
    """
    return _SETTINGS


def configure(**changes: object) -> OutboardSettings:
    """Validate and apply settings changes.

    All changes are validated together before any of them is applied.

    :param changes: Field values keyed by setting name.
    :returns: Updated settings.
    :raises pydantic.ValidationError: If a value is invalid.
    :raises TypeError: If a setting name is unknown.
    """
    global _SETTINGS
    unknown: list[str] = sorted(set(changes) - set(OutboardSettings.model_fields))
    if len(unknown) > 0:
        raise TypeError("Unknown outboard settings: " + ", ".join(unknown))
    with _SETTINGS_LOCK:
        merged: dict[str, object] = {
            name: getattr(_SETTINGS, name) for name in OutboardSettings.model_fields
        }
        merged.update(changes)
        _SETTINGS = OutboardSettings.model_validate(merged)
        return _SETTINGS


def reset_settings() -> OutboardSettings:
    """Restore default settings.

    :returns: Fresh default settings.
    """
    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = OutboardSettings()
        return _SETTINGS

"""Public package API for outboard."""

from outboard.api import configure
from outboard.api import define_class
from outboard.api import shutdown_companion
from outboard.config import OutboardSettings
from outboard.config import get_settings
from outboard.config import reset_settings
from outboard.core import Core
from outboard.core import constant
from outboard.core import dependency
from outboard.core import function
from outboard.core import script
from outboard.errors import CallTimeoutError
from outboard.errors import DeclarationError
from outboard.errors import DependencyLoadError
from outboard.errors import OutboardError
from outboard.errors import ProtocolError
from outboard.errors import RemoteExecutionError
from outboard.errors import SpawnTimeoutError
from outboard.errors import TransportFailureError

__all__: list[str] = [
    "configure",
    "constant",
    "define_class",
    "dependency",
    "function",
    "get_settings",
    "reset_settings",
    "script",
    "shutdown_companion",
    "Core",
    "OutboardSettings",
    "CallTimeoutError",
    "DeclarationError",
    "DependencyLoadError",
    "OutboardError",
    "ProtocolError",
    "RemoteExecutionError",
    "SpawnTimeoutError",
    "TransportFailureError",
]

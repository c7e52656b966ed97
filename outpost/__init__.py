"""Remote provisioning over pluggable transports."""

from outpost.context import ActionContext, background
from outpost.errors import (
    ActionCancelled,
    ConfigurationError,
    OutpostError,
    RemoteExecutionError,
    StatusTimeoutError,
    TransportError,
)
from outpost.provider import Provider
from outpost.values import UNKNOWN

__version__ = "0.4.0"

__all__ = [
    "UNKNOWN",
    "ActionCancelled",
    "ActionContext",
    "ConfigurationError",
    "OutpostError",
    "Provider",
    "RemoteExecutionError",
    "StatusTimeoutError",
    "TransportError",
    "background",
]

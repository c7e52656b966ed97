from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple, Union

AttributePath = Union[str, Sequence[str]]


def _path_tuple(path: AttributePath) -> Tuple[str, ...]:
    if isinstance(path, str):
        return tuple(part for part in path.split(".") if part)
    return tuple(str(part) for part in path)


class OutpostError(RuntimeError):
    """Base class for every error raised by outpost."""


class ConfigurationError(OutpostError):
    """Raised when attributes are missing, conflicting, or malformed.

    Configuration errors are never retried.  ``attribute_path`` names the
    offending attribute, e.g. ``("transport", "ssh", "host")``.
    """

    def __init__(self, attribute_path: AttributePath, message: str) -> None:
        self.attribute_path = _path_tuple(attribute_path)
        self.message = message
        super().__init__(str(self))

    @property
    def path(self) -> str:
        return ".".join(self.attribute_path)

    def under(self, *prefix: str) -> "ConfigurationError":
        """Return a copy with ``prefix`` prepended to the attribute path."""
        return ConfigurationError(tuple(prefix) + self.attribute_path, self.message)

    def __str__(self) -> str:
        if self.attribute_path:
            return f"{self.path}: {self.message}"
        return self.message


class TransportError(OutpostError):
    """Raised when a transport channel cannot be opened or breaks mid-use."""


class RemoteExecutionError(OutpostError):
    """Raised when a remote command exits non-zero.

    The captured output is kept on the error (and in its message) so an
    operator does not need a second run to see what went wrong.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.message = message
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(str(self))

    def __str__(self) -> str:
        lines = [self.message]
        if self.exit_code is not None:
            lines[0] = f"{self.message} (exit code {self.exit_code})"
        if self.stdout.strip():
            lines.append(f"stdout:\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            lines.append(f"stderr:\n{self.stderr.rstrip()}")
        return "\n".join(lines)


class StatusTimeoutError(OutpostError, TimeoutError):
    """Raised when a service does not reach a desired state in time."""

    def __init__(
        self,
        unit: str,
        last_status: object,
        timeout: float,
        desired: Iterable[object] = (),
    ) -> None:
        self.unit = unit
        self.last_status = last_status
        self.timeout = timeout
        self.desired = tuple(desired)
        super().__init__(str(self))

    def __str__(self) -> str:
        desired = ", ".join(_status_name(s) for s in self.desired) or "desired state"
        return (
            f"timed out after {self.timeout:g}s waiting for {self.unit} to reach "
            f"{desired}; last observed status: {_status_name(self.last_status)}"
        )


class ActionCancelled(OutpostError):
    """Raised when the caller cancelled the action or its deadline passed."""


def _status_name(status: object) -> str:
    name = getattr(status, "name", None)
    return name.lower() if isinstance(name, str) else str(status)


__all__ = [
    "ActionCancelled",
    "ConfigurationError",
    "OutpostError",
    "RemoteExecutionError",
    "StatusTimeoutError",
    "TransportError",
]

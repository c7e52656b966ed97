from __future__ import annotations

import abc
from typing import Tuple, Union

from outpost.context import ActionContext
from outpost.transport.command import Command
from outpost.transport.content import Content

Runnable = Union[str, Command]


class Transport(abc.ABC):
    """Capability to run commands and copy files on one remote target.

    Remote primitives depend on this interface only.  ``run`` raises
    :class:`~outpost.errors.RemoteExecutionError` for a non-zero exit and
    :class:`~outpost.errors.TransportError` when the channel itself fails.
    """

    kind: str = "transport"

    @abc.abstractmethod
    def run(self, ctx: ActionContext, command: Runnable) -> Tuple[str, str]:
        """Run ``command`` and return ``(stdout, stderr)``."""

    @abc.abstractmethod
    def copy(self, ctx: ActionContext, content: Content, destination: str) -> None:
        """Write ``content`` to ``destination`` on the target."""

    @abc.abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def render(command: Runnable) -> str:
    if isinstance(command, Command):
        return command.render()
    return str(command)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from outpost.context import ActionContext
from outpost.errors import RemoteExecutionError
from outpost.transport.base import Runnable, Transport, render

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OutputBuffer:
    """Aggregate stdout/stderr across several remote commands."""

    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)

    def append(self, stdout: str, stderr: str) -> None:
        if stdout:
            self.stdout.append(stdout)
        if stderr:
            self.stderr.append(stderr)

    def extend_from(self, exc: RemoteExecutionError) -> None:
        self.append(exc.stdout, exc.stderr)

    def stdout_text(self) -> str:
        return "".join(self.stdout)

    def stderr_text(self) -> str:
        return "".join(self.stderr)


def run_with_sudo_fallback(
    ctx: ActionContext,
    transport: Transport,
    command: Runnable,
    description: str,
) -> Tuple[str, str]:
    """Run ``command``; on a non-zero exit retry it once prefixed with ``sudo``.

    When both fail the sudo attempt's error is raised with the first
    attempt's output folded in, so neither is lost.
    """

    cmd = render(command)
    try:
        return transport.run(ctx, cmd)
    except RemoteExecutionError as first:
        LOGGER.debug("%s failed without sudo, retrying with sudo: %s", description, cmd)
        try:
            return transport.run(ctx, f"sudo {cmd}")
        except RemoteExecutionError as second:
            raise RemoteExecutionError(
                f"{description} failed",
                command=f"sudo {cmd}",
                exit_code=second.exit_code,
                stdout=_join(first.stdout, second.stdout),
                stderr=_join(first.stderr, second.stderr),
            ) from second


def _join(*chunks: str) -> str:
    return "\n".join(chunk.rstrip("\n") for chunk in chunks if chunk)

"""
File and directory primitives.

Files are first written to a uniquely named temp path, adjusted (mode and
owner) there, and only then moved over the destination, so a reader on the
target never observes a half-written file.  Each step falls back to ``sudo``
when the unprivileged attempt fails.
"""

from __future__ import annotations

import logging
import posixpath
import secrets
import shlex
from dataclasses import dataclass
from typing import Optional

from outpost.context import ActionContext
from outpost.errors import ConfigurationError
from outpost.remote.output import run_with_sudo_fallback
from outpost.retry import RetryPolicy, retry
from outpost.transport.base import Transport
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)

DEFAULT_TMP_DIR = "/tmp"


def random_id(length: int = 10) -> str:
    return secrets.token_hex((length + 1) // 2)[:length]


@dataclass(slots=True)
class RemoteOperationRequest:
    """Everything needed to stage one file on the target."""

    destination: str
    content: Optional[Content] = None
    mode: Optional[str] = None
    owner: Optional[str] = None
    tmp_dir: str = DEFAULT_TMP_DIR
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[float] = None

    def tmp_path(self) -> str:
        name = f"{posixpath.basename(self.destination)}-{random_id()}"
        return posixpath.join(self.tmp_dir, name)


def copy_file(ctx: ActionContext, transport: Transport, request: RemoteOperationRequest) -> None:
    """Write ``request.content`` to ``request.destination``, overwriting it."""
    if not request.destination:
        raise ConfigurationError(("destination",), "you must supply a destination path")
    if request.content is None:
        raise ConfigurationError(("content",), "you must supply content to copy")

    op_ctx = ctx.child(request.timeout) if request.timeout is not None else ctx
    tmp_path = request.tmp_path()
    tmp = shlex.quote(tmp_path)
    dest = shlex.quote(request.destination)
    parent = shlex.quote(posixpath.dirname(request.destination) or "/")

    def _operations() -> None:
        transport.copy(op_ctx, request.content, tmp_path)
        if request.mode:
            run_with_sudo_fallback(
                op_ctx, transport, f"chmod {shlex.quote(request.mode)} {tmp}", "changing file permissions"
            )
        if request.owner:
            run_with_sudo_fallback(
                op_ctx, transport, f"chown {shlex.quote(request.owner)} {tmp}", "changing file ownership"
            )
        run_with_sudo_fallback(
            op_ctx, transport, f"mkdir -p {parent}", "creating file's directory on target host"
        )
        run_with_sudo_fallback(
            op_ctx, transport, f"mv {tmp} {dest}", "moving file to destination path"
        )

    LOGGER.debug("Copying %d bytes to %s", request.content.size, request.destination)
    retry(op_ctx, _operations, request.retry_policy, description=f"copy {request.destination}")


def delete_file(
    ctx: ActionContext,
    transport: Transport,
    path: str,
    retry_policy: Optional[RetryPolicy] = None,
) -> None:
    if not path:
        raise ConfigurationError(("path",), "you must supply a path to delete")
    quoted = shlex.quote(path)
    retry(
        ctx,
        lambda: transport.run(ctx, f"rm -r {quoted} || sudo rm -r {quoted}"),
        retry_policy,
        description=f"delete {path}",
    )


def create_directory(
    ctx: ActionContext,
    transport: Transport,
    path: str,
    owner: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> None:
    """Create ``path`` (and parents) if missing and optionally chown it."""
    if not path:
        raise ConfigurationError(("path",), "no directory provided")
    quoted = shlex.quote(path)

    def _operations() -> None:
        transport.run(ctx, f"mkdir -p {quoted} || sudo mkdir -p {quoted}")
        if owner:
            who = shlex.quote(owner)
            transport.run(ctx, f"chown -R {who} {quoted} || sudo chown -R {who} {quoted}")

    retry(ctx, _operations, retry_policy, description=f"create directory {path}")


__all__ = [
    "RemoteOperationRequest",
    "copy_file",
    "create_directory",
    "delete_file",
    "random_id",
]

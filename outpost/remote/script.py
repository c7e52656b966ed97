from __future__ import annotations

import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Dict, Optional

from outpost.context import ActionContext
from outpost.errors import ActionCancelled, RemoteExecutionError
from outpost.remote.files import DEFAULT_TMP_DIR, RemoteOperationRequest, copy_file, random_id
from outpost.remote.output import OutputBuffer
from outpost.retry import RetryPolicy, retry
from outpost.transport.base import Transport, render
from outpost.transport.command import Command
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)


def script_destination(content: Content, prefix: Optional[str] = None, tmp_dir: str = DEFAULT_TMP_DIR) -> str:
    """Derive a collision-free path from the script's own digest."""
    stem = f"{prefix}-{content.sha256()}" if prefix else content.sha256()
    return posixpath.join(tmp_dir, f"{stem}.sh")


@dataclass(slots=True)
class RunScriptRequest:
    content: Content
    destination: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    mode: str = "0777"
    owner: Optional[str] = None
    sudo: bool = False
    no_cleanup: bool = False
    tmp_dir: str = DEFAULT_TMP_DIR
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[float] = None

    def resolved_destination(self) -> str:
        if self.destination:
            return self.destination
        return posixpath.join(self.tmp_dir, f"outpost_run_script_{random_id()}")


@dataclass(slots=True)
class RunScriptResponse:
    stdout: str = ""
    stderr: str = ""


def run_script(ctx: ActionContext, transport: Transport, request: RunScriptRequest) -> RunScriptResponse:
    """Upload the script, execute it with ``env``, then remove it.

    ``request.timeout`` bounds the upload and the execution together.
    Raises :class:`RemoteExecutionError` carrying everything the script
    printed when it exits non-zero or runs out of time.  The execution
    itself is never retried; only the upload and the cleanup are.
    """

    op_ctx = ctx.child(request.timeout) if request.timeout is not None else ctx
    destination = request.resolved_destination()
    copy_file(
        op_ctx,
        transport,
        RemoteOperationRequest(
            destination=destination,
            content=request.content,
            mode=request.mode,
            owner=request.owner,
            tmp_dir=request.tmp_dir,
            retry_policy=request.retry_policy,
        ),
    )

    buffer = OutputBuffer()
    cmd = shlex.quote(destination)
    if request.sudo:
        cmd = f"sudo {_sudo_env(request.env)}{cmd}"
        command = Command(cmd)
    else:
        command = Command(cmd, request.env)

    LOGGER.debug("Running script %s", destination)
    try:
        stdout, stderr = transport.run(op_ctx, command)
    except RemoteExecutionError as exc:
        buffer.extend_from(exc)
        raise RemoteExecutionError(
            f"executing script {destination} failed",
            command=exc.command,
            exit_code=exc.exit_code,
            stdout=buffer.stdout_text(),
            stderr=buffer.stderr_text(),
        ) from exc
    except ActionCancelled as exc:
        ctx.check()
        if request.timeout is None:
            raise
        raise RemoteExecutionError(
            f"executing script {destination} timed out after {request.timeout:g}s",
            command=render(command),
        ) from exc
    buffer.append(stdout, stderr)

    if not request.no_cleanup:
        cleanup = f"rm -f {shlex.quote(destination)}"
        try:
            stdout, stderr = retry(
                ctx,
                lambda: transport.run(ctx, cleanup),
                request.retry_policy,
                description=f"remove {destination}",
            )
        except RemoteExecutionError as exc:
            buffer.extend_from(exc)
            raise RemoteExecutionError(
                f"cleaning up script file {destination} failed",
                command=exc.command,
                exit_code=exc.exit_code,
                stdout=buffer.stdout_text(),
                stderr=buffer.stderr_text(),
            ) from exc
        buffer.append(stdout, stderr)

    return RunScriptResponse(stdout=buffer.stdout_text(), stderr=buffer.stderr_text())


def _sudo_env(env: Dict[str, str]) -> str:
    # sudo resets the environment; pass variables as sudo arguments instead.
    return "".join(f"{key}={shlex.quote(str(env[key]))} " for key in sorted(env))


__all__ = ["RunScriptRequest", "RunScriptResponse", "run_script", "script_destination"]

"""
Nomad allocation exec transport.

Allocation lookups go through the HTTP API (``httpx``); command execution
uses the ``/v1/client/allocation/<id>/exec`` websocket, which frames stdin,
stdout and stderr as base64 JSON messages and finishes with an ``exited``
frame carrying the exit code.
"""

from __future__ import annotations

import base64
import json
import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.sync.client import connect as ws_connect

from outpost.context import ActionContext
from outpost.errors import RemoteExecutionError, TransportError
from outpost.transport.base import Runnable, Transport, render
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)

TOKEN_HEADER = "X-Nomad-Token"
_STDIN_CHUNK = 32 * 1024
_RECV_TIMEOUT = 1.0


@dataclass(slots=True)
class NomadOptions:
    host: str
    allocation_id: str
    task_name: str
    secret_id: Optional[str] = None
    timeout: float = 30.0


class NomadClient:
    """Small HTTP client for the parts of the Nomad API the transport needs."""

    def __init__(
        self,
        host: str,
        *,
        secret_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.host = host.rstrip("/")
        self.secret_id = secret_id
        headers = {TOKEN_HEADER: secret_id} if secret_id else {}
        self._http = httpx.Client(
            base_url=self.host, headers=headers, timeout=timeout, transport=transport
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {TOKEN_HEADER: self.secret_id} if self.secret_id else {}

    def _get(self, path: str, **params: Any) -> Any:
        try:
            response = self._http.get(path, params=params or None)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Nomad API {path} returned {exc.response.status_code}: "
                f"{exc.response.text.strip()}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Nomad API {path} unreachable: {exc}") from exc
        return response.json()

    def allocation(self, allocation_id: str) -> Dict[str, Any]:
        """Resolve a full or prefix allocation id to its allocation document."""
        matches = self._get("/v1/allocations", prefix=allocation_id) or []
        if len(matches) != 1:
            raise TransportError(
                f"expected exactly one allocation for prefix {allocation_id!r}, "
                f"found {len(matches)}"
            )
        return self._get(f"/v1/allocation/{matches[0]['ID']}")

    def exec_url(self, allocation_id: str, task: str, command: Sequence[str]) -> str:
        parts = urlsplit(self.host)
        scheme = "wss" if parts.scheme == "https" else "ws"
        query = urlencode(
            {"task": task, "tty": "false", "command": json.dumps(list(command))}
        )
        path = f"{parts.path.rstrip('/')}/v1/client/allocation/{allocation_id}/exec"
        return urlunsplit((scheme, parts.netloc, path, query, ""))

    def close(self) -> None:
        self._http.close()


class NomadTransport(Transport):
    kind = "nomad"

    def __init__(
        self,
        client: NomadClient,
        allocation_id: str,
        task_name: str,
        *,
        connector: Callable[..., Any] = ws_connect,
    ) -> None:
        self.client = client
        self.allocation_id = allocation_id
        self.task_name = task_name
        self._connector = connector

    @classmethod
    def connect(
        cls,
        ctx: ActionContext,
        options: NomadOptions,
        *,
        http_transport: Optional[httpx.BaseTransport] = None,
        connector: Callable[..., Any] = ws_connect,
    ) -> "NomadTransport":
        ctx.check()
        client = NomadClient(
            options.host,
            secret_id=options.secret_id,
            timeout=ctx.timeout_for(options.timeout),
            transport=http_transport,
        )
        try:
            alloc = client.allocation(options.allocation_id)
        except BaseException:
            client.close()
            raise
        tasks = (alloc.get("TaskStates") or {}).keys()
        if tasks and options.task_name not in tasks:
            client.close()
            raise TransportError(
                f"task {options.task_name!r} not found in allocation {alloc.get('ID')}"
            )
        return cls(client, alloc["ID"], options.task_name, connector=connector)

    def _target(self) -> str:
        return f"{self.allocation_id[:8]}/{self.task_name}"

    def _exec(
        self, ctx: ActionContext, argv: List[str], stdin: Optional[bytes] = None
    ) -> Tuple[int, str, str]:
        ctx.check()
        url = self.client.exec_url(self.allocation_id, self.task_name, argv)
        stdout: List[bytes] = []
        stderr: List[bytes] = []
        exit_code: Optional[int] = None
        try:
            with self._connector(
                url,
                additional_headers=self.client.headers,
                open_timeout=ctx.timeout_for(30.0),
            ) as ws:
                if stdin is not None:
                    for offset in range(0, len(stdin), _STDIN_CHUNK):
                        ctx.check()
                        chunk = stdin[offset : offset + _STDIN_CHUNK]
                        ws.send(_stdin_frame(chunk))
                    ws.send(json.dumps({"stdin": {"close": True}}))
                while exit_code is None:
                    if ctx.cancelled():
                        ws.close()
                        ctx.check()
                    try:
                        raw = ws.recv(timeout=_RECV_TIMEOUT)
                    except TimeoutError:
                        continue
                    exit_code = _consume_frame(raw, stdout, stderr)
        except ConnectionClosed as exc:
            if exit_code is None:
                raise TransportError(
                    f"exec stream to {self._target()} closed before exit: {exc}"
                ) from exc
        except (InvalidHandshake, OSError) as exc:
            raise TransportError(f"unable to exec in {self._target()}: {exc}") from exc
        return (
            exit_code,
            b"".join(stdout).decode("utf-8", errors="replace"),
            b"".join(stderr).decode("utf-8", errors="replace"),
        )

    # -------------------------------------------------------------- commands
    def run(self, ctx: ActionContext, command: Runnable) -> Tuple[str, str]:
        cmd = render(command)
        LOGGER.debug("nomad exec %s: %s", self._target(), cmd)
        exit_code, out, err = self._exec(ctx, ["sh", "-c", cmd])
        if exit_code != 0:
            raise RemoteExecutionError(
                f"command failed in allocation {self._target()}: {cmd}",
                command=cmd,
                exit_code=exit_code,
                stdout=out,
                stderr=err,
            )
        return out, err

    # ----------------------------------------------------------------- files
    def copy(self, ctx: ActionContext, content: Content, destination: str) -> None:
        directory = posixpath.dirname(destination) or "."
        argv = ["tar", "-xmf", "-", "-C", directory]
        LOGGER.debug("nomad copy %s: %d bytes -> %s", self._target(), content.size, destination)
        exit_code, out, err = self._exec(ctx, argv, stdin=content.tar_archive(destination))
        if exit_code != 0:
            raise RemoteExecutionError(
                f"unable to copy {destination} into allocation {self._target()}",
                command=" ".join(argv),
                exit_code=exit_code,
                stdout=out,
                stderr=err,
            )

    def close(self) -> None:
        self.client.close()


def _stdin_frame(data: bytes) -> str:
    return json.dumps({"stdin": {"data": base64.b64encode(data).decode("ascii")}})


def _consume_frame(raw: Any, stdout: List[bytes], stderr: List[bytes]) -> Optional[int]:
    """Append any output carried by ``raw``; return the exit code once exited."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    frame = json.loads(raw) if raw else {}
    for key, sink in (("stdout", stdout), ("stderr", stderr)):
        data = (frame.get(key) or {}).get("data")
        if data:
            sink.append(base64.b64decode(data))
    if frame.get("exited"):
        result = frame.get("result") or {}
        return int(result.get("exit_code", 0))
    return None

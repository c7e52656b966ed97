"""
SSH transport built on paramiko.

Commands run over a fresh session channel each; files are written through
SFTP.  Reading the channel is done in small polls so cancellation of the
owning action closes the channel instead of blocking until the command ends.
"""

from __future__ import annotations

import io
import logging
import socket
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import paramiko

from outpost.context import ActionContext
from outpost.errors import ConfigurationError, RemoteExecutionError, TransportError
from outpost.transport.base import Runnable, Transport, render
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
_READ_CHUNK = 32 * 1024
_KEY_CLASSES = tuple(
    cls
    for cls in (
        getattr(paramiko, "Ed25519Key", None),
        getattr(paramiko, "ECDSAKey", None),
        getattr(paramiko, "RSAKey", None),
    )
    if cls is not None
)


@dataclass(slots=True)
class SSHOptions:
    host: str
    user: str
    port: int = 22
    private_key: Optional[str] = None
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = None
    connect_timeout: float = 10.0


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse an in-memory private key, trying each supported key type."""
    last_exc: Optional[Exception] = None
    for cls in _KEY_CLASSES:
        try:
            return cls.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise ConfigurationError(
                ("transport", "ssh", "passphrase"),
                "private key is encrypted but no passphrase was supplied",
            ) from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_exc = exc
    raise ConfigurationError(
        ("transport", "ssh", "private_key"),
        f"unable to parse private key: {last_exc}",
    )


class SSHTransport(Transport):
    kind = "ssh"

    def __init__(self, client: paramiko.SSHClient, options: SSHOptions) -> None:
        self._client = client
        self.options = options
        self._sftp: Optional[paramiko.SFTPClient] = None

    @classmethod
    def connect(cls, ctx: ActionContext, options: SSHOptions) -> "SSHTransport":
        ctx.check()
        pkey = None
        if options.private_key:
            pkey = load_private_key(options.private_key, options.passphrase)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        timeout = ctx.timeout_for(options.connect_timeout)
        LOGGER.debug(
            "Opening SSH connection to %s@%s:%s", options.user, options.host, options.port
        )
        try:
            client.connect(
                hostname=options.host,
                port=options.port,
                username=options.user,
                pkey=pkey,
                key_filename=options.private_key_path if pkey is None else None,
                passphrase=options.passphrase,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            # Retrying a rejected key cannot succeed; report it against the key.
            key_attribute = "private_key" if pkey is not None else "private_key_path"
            raise ConfigurationError(
                ("transport", "ssh", key_attribute),
                f"SSH authentication to {options.user}@{options.host} failed: {exc}",
            ) from exc
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            client.close()
            raise TransportError(
                f"unable to connect to {options.host}:{options.port}: {exc}"
            ) from exc
        try:
            ctx.check()
        except BaseException:
            client.close()
            raise
        return cls(client, options)

    # -------------------------------------------------------------- commands
    def run(self, ctx: ActionContext, command: Runnable) -> Tuple[str, str]:
        cmd = render(command)
        ctx.check()
        LOGGER.debug("ssh %s: %s", self.options.host, cmd)
        try:
            channel = self._client.get_transport().open_session()
        except (AttributeError, paramiko.SSHException, socket.error) as exc:
            raise TransportError(f"unable to open SSH session: {exc}") from exc

        stdout: List[bytes] = []
        stderr: List[bytes] = []
        try:
            channel.exec_command(cmd)
            while True:
                self._drain(channel, stdout, stderr)
                if channel.exit_status_ready():
                    break
                if ctx.cancelled():
                    channel.close()
                    ctx.check()
                time.sleep(_POLL_INTERVAL)
            self._drain(channel, stdout, stderr, final=True)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            raise TransportError(f"SSH channel to {self.options.host} failed: {exc}") from exc
        finally:
            channel.close()

        out = b"".join(stdout).decode("utf-8", errors="replace")
        err = b"".join(stderr).decode("utf-8", errors="replace")
        if exit_code != 0:
            raise RemoteExecutionError(
                f"command failed on {self.options.host}: {cmd}",
                command=cmd,
                exit_code=exit_code,
                stdout=out,
                stderr=err,
            )
        return out, err

    @staticmethod
    def _drain(channel, stdout: List[bytes], stderr: List[bytes], final: bool = False) -> None:
        while channel.recv_ready():
            stdout.append(channel.recv(_READ_CHUNK))
        while channel.recv_stderr_ready():
            stderr.append(channel.recv_stderr(_READ_CHUNK))
        if final:
            while True:
                chunk = channel.recv(_READ_CHUNK)
                if not chunk:
                    break
                stdout.append(chunk)
            while True:
                chunk = channel.recv_stderr(_READ_CHUNK)
                if not chunk:
                    break
                stderr.append(chunk)

    # ----------------------------------------------------------------- files
    def copy(self, ctx: ActionContext, content: Content, destination: str) -> None:
        ctx.check()
        LOGGER.debug("sftp %s: %d bytes -> %s", self.options.host, content.size, destination)
        try:
            if self._sftp is None:
                self._sftp = self._client.open_sftp()
            self._sftp.putfo(content.open(), destination, file_size=content.size)
        except (paramiko.SSHException, socket.timeout, EOFError) as exc:
            raise TransportError(f"SFTP to {self.options.host} failed: {exc}") from exc
        except OSError as exc:
            # SFTP status failures (permission denied, missing parent) surface as OSError.
            raise RemoteExecutionError(
                f"unable to write {destination} on {self.options.host}: {exc}",
                command=f"sftp put {destination}",
            ) from exc

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        self._client.close()

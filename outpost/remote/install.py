"""
Artifact install primitives: download, checksum verification and unzip.

Downloads normally run on the target with ``curl`` so the bytes never pass
through the controller.  The archive lands on a temp path, its sha256 is
checked with ``sha256sum`` there, and only a verified file is moved into
place.  When the target cannot reach the artifact server the download can be
fetched locally with httpx and copied over instead; the checksum is then
verified before the copy.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
import re
import shlex
from dataclasses import dataclass, replace
from typing import List, Optional

import httpx

from outpost.context import ActionContext
from outpost.errors import ConfigurationError, RemoteExecutionError, TransportError
from outpost.remote.files import DEFAULT_TMP_DIR, RemoteOperationRequest, copy_file, random_id
from outpost.remote.output import run_with_sudo_fallback
from outpost.retry import RetryPolicy, retry
from outpost.transport.base import Transport
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)

_SHA256 = re.compile(r"^[0-9a-fA-F]{64}$")
_CHUNK = 64 * 1024


def default_download_policy() -> RetryPolicy:
    return RetryPolicy.fibonacci(1.0, max_attempts=3).with_retry_on(
        TransportError, RemoteExecutionError
    )


def valid_sha256(value: Optional[str]) -> bool:
    return bool(value) and bool(_SHA256.match(value))


def _sudo(enabled: bool, command: str) -> str:
    return f"sudo {command}" if enabled else command


def _exists(ctx: ActionContext, transport: Transport, path: str) -> bool:
    try:
        transport.run(ctx, f"test -e {shlex.quote(path)}")
    except RemoteExecutionError:
        return False
    return True


@dataclass(slots=True)
class DownloadRequest:
    url: str
    destination: str
    mode: str = "0755"
    sha256: Optional[str] = None
    auth_user: Optional[str] = None
    auth_password: Optional[str] = None
    auth_token: Optional[str] = None
    sudo: bool = False
    replace: bool = False
    # Fetch on the controller with httpx and copy, instead of curl on the target.
    local: bool = False
    timeout: float = 300.0
    tmp_dir: str = DEFAULT_TMP_DIR
    retry_policy: Optional[RetryPolicy] = None

    def validate(self) -> None:
        if not self.url:
            raise ConfigurationError(("url",), "you must supply a download URL")
        if not self.destination:
            raise ConfigurationError(("destination",), "you must supply a download destination")
        if self.sha256 is not None and not valid_sha256(self.sha256):
            raise ConfigurationError(("sha256",), f"invalid sha256 sum {self.sha256!r}")

    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else {}

    def curl_command(self, output: str) -> str:
        parts = [
            "curl",
            "--fail",
            "--silent",
            "--show-error",
            "--location",
            "--max-time",
            str(max(int(self.timeout), 1)),
            "--output",
            shlex.quote(output),
        ]
        if self.auth_user and self.auth_password:
            parts += ["--user", shlex.quote(f"{self.auth_user}:{self.auth_password}")]
        for name, value in self.headers().items():
            parts += ["--header", shlex.quote(f"{name}: {value}")]
        parts.append(shlex.quote(self.url))
        return _sudo(self.sudo, " ".join(parts))


def _checksum_error(url: str, expected: str, received: str) -> ConfigurationError:
    return ConfigurationError(
        ("sha256",),
        f"download of {url} has an unexpected sha256 sum: expected {expected.lower()}, "
        f"received {received}",
    )


def remote_sha256(ctx: ActionContext, transport: Transport, path: str, *, sudo: bool = False) -> str:
    stdout, stderr = transport.run(ctx, _sudo(sudo, f"sha256sum {shlex.quote(path)}"))
    digest = stdout.split()[0] if stdout.split() else ""
    if not valid_sha256(digest):
        raise RemoteExecutionError(
            f"unable to read the sha256 sum of {path}",
            command=f"sha256sum {path}",
            stdout=stdout,
            stderr=stderr,
        )
    return digest.lower()


def fetch_artifact(
    request: DownloadRequest,
    *,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> Content:
    """Download ``request.url`` on this machine and verify its checksum."""
    auth = None
    if request.auth_user and request.auth_password:
        auth = httpx.BasicAuth(request.auth_user, request.auth_password)
    digest = hashlib.sha256()
    chunks: List[bytes] = []
    try:
        with httpx.Client(
            timeout=request.timeout, follow_redirects=True, transport=http_transport
        ) as client:
            with client.stream("GET", request.url, headers=request.headers(), auth=auth) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes(_CHUNK):
                    digest.update(chunk)
                    chunks.append(chunk)
    except httpx.HTTPStatusError as exc:
        raise TransportError(
            f"download of {request.url} failed: {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        raise TransportError(f"download of {request.url} failed: {exc}") from exc

    received = digest.hexdigest()
    if request.sha256 and received != request.sha256.lower():
        raise _checksum_error(request.url, request.sha256, received)
    return Content(b"".join(chunks))


def download(
    ctx: ActionContext,
    transport: Transport,
    request: DownloadRequest,
    *,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> bool:
    """Place the artifact at ``request.destination``.

    Returns ``False`` when the destination already exists and ``replace`` is
    not set.  A checksum mismatch is a configuration error and is never
    retried; failed transfers are.
    """

    request.validate()
    policy = request.retry_policy or default_download_policy()
    dest = shlex.quote(request.destination)

    if not request.replace and retry(
        ctx,
        lambda: _exists(ctx, transport, request.destination),
        policy,
        description=f"check {request.destination}",
    ):
        LOGGER.info("%s already exists, not downloading %s", request.destination, request.url)
        return False

    if request.local:
        content = retry(
            ctx,
            lambda: fetch_artifact(request, http_transport=http_transport),
            policy,
            description=f"fetch {request.url}",
        )
        copy_file(
            ctx,
            transport,
            RemoteOperationRequest(
                destination=request.destination,
                content=content,
                mode=request.mode,
                tmp_dir=request.tmp_dir,
                retry_policy=policy,
            ),
        )
        return True

    tmp_path = posixpath.join(
        request.tmp_dir, f"{posixpath.basename(request.destination)}-{random_id()}"
    )
    tmp = shlex.quote(tmp_path)
    parent = shlex.quote(posixpath.dirname(request.destination) or "/")

    def _operations() -> None:
        transport.run(ctx, request.curl_command(tmp_path))
        if request.sha256:
            received = remote_sha256(ctx, transport, tmp_path, sudo=request.sudo)
            if received != request.sha256.lower():
                transport.run(ctx, _sudo(request.sudo, f"rm -f {tmp}"))
                raise _checksum_error(request.url, request.sha256, received)
        if request.mode:
            run_with_sudo_fallback(
                ctx, transport, f"chmod {shlex.quote(request.mode)} {tmp}", "changing download permissions"
            )
        run_with_sudo_fallback(ctx, transport, f"mkdir -p {parent}", "creating download directory")
        run_with_sudo_fallback(ctx, transport, f"mv {tmp} {dest}", "moving download into place")

    LOGGER.info("Downloading %s to %s", request.url, request.destination)
    retry(ctx, _operations, policy, description=f"download {request.url}")
    return True


@dataclass(slots=True)
class UnzipRequest:
    source: str
    destination: str
    mode: str = "0755"
    destination_mode: str = "0755"
    create_destination: bool = True
    replace: bool = False
    sudo: bool = False

    def validate(self) -> None:
        if not self.source:
            raise ConfigurationError(("source",), "you must supply an archive to unzip")
        if not self.destination:
            raise ConfigurationError(("destination",), "you must supply an unzip destination")


def unzip(ctx: ActionContext, transport: Transport, request: UnzipRequest) -> List[str]:
    """Expand an archive already on the target; returns the extracted file paths."""
    request.validate()
    src = shlex.quote(request.source)
    dest = shlex.quote(request.destination)

    if request.create_destination:
        run_with_sudo_fallback(ctx, transport, f"mkdir -p {dest}", "creating unzip destination")
        if request.destination_mode:
            run_with_sudo_fallback(
                ctx,
                transport,
                f"chmod {shlex.quote(request.destination_mode)} {dest}",
                "changing unzip destination permissions",
            )
    elif not _exists(ctx, transport, request.destination):
        raise ConfigurationError(
            ("destination",), f"unzip destination {request.destination} does not exist"
        )

    overwrite = "-o" if request.replace else "-n"
    run_with_sudo_fallback(
        ctx, transport, f"unzip {overwrite} -q {src} -d {dest}", f"unzipping {request.source}"
    )

    stdout, _ = transport.run(ctx, _sudo(request.sudo, f"unzip -Z1 {src}"))
    files = [
        posixpath.join(request.destination, name)
        for name in (line.strip() for line in stdout.splitlines())
        if name and not name.endswith("/")
    ]
    if files and request.mode:
        targets = " ".join(shlex.quote(path) for path in files)
        run_with_sudo_fallback(
            ctx,
            transport,
            f"chmod {shlex.quote(request.mode)} {targets}",
            "changing unzipped file permissions",
        )
    LOGGER.debug("Unzipped %d files into %s", len(files), request.destination)
    return files


@dataclass(slots=True)
class BundleRequest:
    """A zip bundle, either local ``content`` or a ``download``, to expand on the target."""

    destination: str
    content: Optional[Content] = None
    download: Optional[DownloadRequest] = None
    mode: str = "0755"
    sudo: bool = False
    tmp_dir: str = DEFAULT_TMP_DIR
    retry_policy: Optional[RetryPolicy] = None


def install_bundle(
    ctx: ActionContext,
    transport: Transport,
    request: BundleRequest,
    *,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> List[str]:
    if (request.content is None) == (request.download is None):
        raise ConfigurationError((), "a bundle needs exactly one of local content or a download")

    archive = posixpath.join(request.tmp_dir, f"bundle-{random_id()}.zip")
    if request.content is not None:
        copy_file(
            ctx,
            transport,
            RemoteOperationRequest(
                destination=archive,
                content=request.content,
                mode="0644",
                tmp_dir=request.tmp_dir,
                retry_policy=request.retry_policy,
            ),
        )
    else:
        download(
            ctx,
            transport,
            replace(
                request.download,
                destination=archive,
                mode="0644",
                replace=True,
                sudo=request.sudo,
                tmp_dir=request.tmp_dir,
            ),
            http_transport=http_transport,
        )

    try:
        return unzip(
            ctx,
            transport,
            UnzipRequest(
                source=archive,
                destination=request.destination,
                mode=request.mode,
                replace=True,
                sudo=request.sudo,
            ),
        )
    finally:
        retry(
            ctx,
            lambda: transport.run(ctx, _sudo(request.sudo, f"rm -f {shlex.quote(archive)}")),
            request.retry_policy,
            description=f"remove {archive}",
        )


__all__ = [
    "BundleRequest",
    "DownloadRequest",
    "UnzipRequest",
    "default_download_policy",
    "download",
    "fetch_artifact",
    "install_bundle",
    "remote_sha256",
    "unzip",
    "valid_sha256",
]

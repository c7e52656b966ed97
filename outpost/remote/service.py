"""
Start (or restart) a systemd-managed service from scratch.

The steps run strictly in order, each one relying on the previous one:
user, directories, files, unit file, ``daemon-reload``, restart, wait for
the desired status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from outpost.context import ActionContext
from outpost.errors import ConfigurationError, RemoteExecutionError, TransportError
from outpost.remote.files import RemoteOperationRequest, copy_file, create_directory
from outpost.remote.systemd import (
    ENABLED_AND_RUNNING,
    ServiceUnit,
    StatusCode,
    SystemdClient,
    UnitProperties,
    unit_name,
    unit_path,
)
from outpost.remote.user import User, ensure_user
from outpost.retry import RetryPolicy, retry
from outpost.transport.base import Transport

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceStartRequest:
    name: str
    unit: ServiceUnit
    user: Optional[User] = None
    # (path, owner) pairs
    directories: Sequence[Tuple[str, Optional[str]]] = ()
    files: Sequence[RemoteOperationRequest] = ()
    unit_path: Optional[str] = None
    unit_mode: str = "0644"
    unit_owner: Optional[str] = None
    desired: Tuple[StatusCode, ...] = (StatusCode.ACTIVE,)
    timeout: float = 60.0
    interval: float = 2.0
    require_properties: Optional[UnitProperties] = None
    retry_policy: Optional[RetryPolicy] = None

    def resolved_unit_path(self) -> str:
        return self.unit_path or unit_path(self.name)


@dataclass(slots=True)
class ServiceStartResult:
    status: StatusCode
    properties: UnitProperties = field(default_factory=UnitProperties)
    steps: List[str] = field(default_factory=list)


def start_service(
    ctx: ActionContext, transport: Transport, request: ServiceStartRequest
) -> ServiceStartResult:
    if not request.name:
        raise ConfigurationError(("unit_name",), "you must provide a service name")

    result = ServiceStartResult(status=StatusCode.UNKNOWN)
    sysd = SystemdClient(transport, retry_policy=request.retry_policy)

    if request.user is not None:
        user = request.user
        retry(
            ctx,
            lambda: ensure_user(ctx, transport, user),
            request.retry_policy,
            description=f"ensure user {user.name}",
        )
        result.steps.append("user")

    for path, owner in request.directories:
        ctx.check()
        create_directory(ctx, transport, path, owner, request.retry_policy)
    if request.directories:
        result.steps.append("directories")

    for file_request in request.files:
        ctx.check()
        copy_file(ctx, transport, file_request)
    if request.files:
        result.steps.append("files")

    sysd.create_unit_file(
        ctx,
        request.unit,
        request.resolved_unit_path(),
        mode=request.unit_mode,
        owner=request.unit_owner,
    )
    result.steps.append("unit")

    sysd.daemon_reload(ctx)
    sysd.restart_service(ctx, request.name)
    result.steps.append("restart")

    result.status = sysd.wait_for_status(
        ctx,
        request.name,
        request.desired,
        timeout=request.timeout,
        interval=request.interval,
    )
    result.steps.append("status")

    if request.require_properties:
        result.properties = wait_for_properties(
            ctx, sysd, request.name, request.require_properties, request.retry_policy
        )
        result.steps.append("properties")

    LOGGER.info("Service %s is %s", unit_name(request.name), result.status.name.lower())
    return result


def wait_for_properties(
    ctx: ActionContext,
    sysd: SystemdClient,
    name: str,
    wanted: UnitProperties = ENABLED_AND_RUNNING,
    policy: Optional[RetryPolicy] = None,
) -> UnitProperties:
    """Retry ``systemctl show`` until the unit reports every wanted property."""
    policy = (policy or RetryPolicy.constant(2.0, max_attempts=10)).with_retry_on(
        TransportError, RemoteExecutionError
    )

    def _check() -> UnitProperties:
        props = sysd.show_properties(ctx, name)
        if not props.has_properties(wanted):
            raise RemoteExecutionError(
                f"{unit_name(name)} does not have the expected properties",
                stdout=str(props.find(*[k for k in wanted if k in props])),
            )
        return props

    return retry(ctx, _check, policy, description=f"check {unit_name(name)} properties")


__all__ = ["ServiceStartRequest", "ServiceStartResult", "start_service", "wait_for_properties"]

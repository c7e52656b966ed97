"""
Facts about the target host: architecture, distro, hostname, pid1 and so on.

Each fact is retried on its own.  Facts that have a fallback (distro via
``/etc/os-release`` then ``lsb_release``) try every strategy inside one
attempt before the attempt counts as failed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from outpost.context import ActionContext
from outpost.errors import OutpostError, RemoteExecutionError, TransportError
from outpost.retry import RetryPolicy, retry
from outpost.transport.base import Transport

LOGGER = logging.getLogger(__name__)

_ARCHITECTURES = {"x86_64": "amd64", "aarch64": "arm64"}

# Containers and scheduler tasks are managed through their own APIs.
_API_PROCESS_MANAGERS = {"kubernetes": "kubernetes", "nomad": "nomad"}


def default_fact_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=2.0).with_retry_on(
        TransportError, RemoteExecutionError
    )


@dataclass(slots=True)
class HostInfo:
    arch: Optional[str] = None
    distro: Optional[str] = None
    distro_version: Optional[str] = None
    hostname: Optional[str] = None
    pid1: Optional[str] = None
    platform: Optional[str] = None
    platform_version: Optional[str] = None
    home_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


def format_arch(arch: str) -> str:
    return _ARCHITECTURES.get(arch, arch)


def find_in_os_release(content: str, key: str) -> str:
    if not content.strip():
        raise ValueError(f"cannot find {key} in blank /etc/os-release")
    for line in content.splitlines():
        name, sep, value = line.partition("=")
        if sep and name.strip() == key:
            return value.strip().strip('"')
    raise ValueError(f"cannot find {key} in /etc/os-release")


class TargetFacts:
    """Look up host facts over one transport."""

    def __init__(self, transport: Transport, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.transport = transport
        self.retry_policy = retry_policy or default_fact_policy()

    def _run(self, ctx: ActionContext, command: str, what: str) -> str:
        stdout, stderr = self.transport.run(ctx, command)
        value = stdout.strip()
        if not value:
            raise RemoteExecutionError(
                f"failed to determine target {what}", command=command, stderr=stderr
            )
        return value

    def _gather(self, ctx: ActionContext, what: str, func: Callable[[], str]) -> str:
        return retry(ctx, func, self.retry_policy, description=f"determine target {what}")

    def _first(self, ctx: ActionContext, what: str, attempts: List[Callable[[], str]]) -> str:
        failures: List[str] = []
        for attempt in attempts:
            try:
                return attempt()
            except (RemoteExecutionError, ValueError) as exc:
                failures.append(str(exc))
        raise RemoteExecutionError(
            f"failed to determine target {what}: " + "; ".join(failures)
        )

    # ----------------------------------------------------------------- facts
    def architecture(self, ctx: ActionContext) -> str:
        return format_arch(
            self._gather(ctx, "architecture", lambda: self._run(ctx, "uname -m", "architecture"))
        )

    def _os_release(self, ctx: ActionContext, key: str) -> str:
        return find_in_os_release(self._run(ctx, "cat /etc/os-release", "os-release"), key)

    def distro(self, ctx: ActionContext) -> str:
        return self._gather(
            ctx,
            "distro",
            lambda: self._first(
                ctx,
                "distro",
                [
                    lambda: self._os_release(ctx, "ID"),
                    lambda: self._run(ctx, "lsb_release -si", "distro").lower(),
                ],
            ),
        )

    def distro_version(self, ctx: ActionContext) -> str:
        return self._gather(
            ctx,
            "distro version",
            lambda: self._first(
                ctx,
                "distro version",
                [
                    lambda: self._os_release(ctx, "VERSION_ID"),
                    lambda: self._run(ctx, "lsb_release -sr", "distro version").lower(),
                ],
            ),
        )

    def hostname(self, ctx: ActionContext) -> str:
        return self._gather(ctx, "hostname", lambda: self._run(ctx, "uname -n", "hostname"))

    def platform(self, ctx: ActionContext) -> str:
        return self._gather(
            ctx, "platform", lambda: self._run(ctx, "uname -s", "platform").lower()
        )

    def platform_version(self, ctx: ActionContext) -> str:
        return self._gather(
            ctx, "platform version", lambda: self._run(ctx, "uname -r", "platform version")
        )

    def home_dir(self, ctx: ActionContext) -> str:
        return self._gather(
            ctx,
            "home directory",
            lambda: self._first(
                ctx,
                "home directory",
                [
                    lambda: self._run(ctx, "echo $HOME", "home directory"),
                    lambda: self._run(ctx, "echo ~", "home directory"),
                ],
            ),
        )

    def process_manager(self, ctx: ActionContext) -> str:
        kind = getattr(self.transport, "kind", "")
        if kind in _API_PROCESS_MANAGERS:
            return _API_PROCESS_MANAGERS[kind]
        return self._gather(
            ctx,
            "process manager",
            lambda: self._run(ctx, "ps -p 1 -c -o command=", "process manager"),
        )

    def host_info(self, ctx: ActionContext) -> HostInfo:
        """Collect every fact; a failed lookup leaves its field ``None``.

        The first failure is re-raised after all lookups ran unless every
        lookup succeeded.  Not all platforms support all of them, so callers
        may prefer :meth:`host_info_partial`.
        """

        info, errors = self.host_info_partial(ctx)
        if errors:
            raise errors[0]
        return info

    def host_info_partial(self, ctx: ActionContext):
        info = HostInfo()
        errors: List[OutpostError] = []
        for field_name, lookup in (
            ("arch", self.architecture),
            ("distro", self.distro),
            ("distro_version", self.distro_version),
            ("hostname", self.hostname),
            ("pid1", self.process_manager),
            ("platform", self.platform),
            ("platform_version", self.platform_version),
            ("home_dir", self.home_dir),
        ):
            try:
                setattr(info, field_name, lookup(ctx))
            except (RemoteExecutionError, TransportError) as exc:
                LOGGER.warning("Unable to determine %s: %s", field_name, exc)
                errors.append(exc)
        return info, errors


__all__ = ["HostInfo", "TargetFacts", "default_fact_policy", "find_in_os_release", "format_arch"]

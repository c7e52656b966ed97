"""
systemd helpers: unit files, ``systemctl`` commands, status polling, logs.

Every ``systemctl`` invocation goes through ``sudo`` and service names get a
``.service`` suffix when they lack one.  Service status is taken from the
exit code of ``systemctl is-active``.
"""

from __future__ import annotations

import enum
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from outpost.context import ActionContext
from outpost.errors import (
    ActionCancelled,
    ConfigurationError,
    RemoteExecutionError,
    StatusTimeoutError,
    TransportError,
)
from outpost.remote.files import RemoteOperationRequest, copy_file
from outpost.retry import RetryPolicy, retry
from outpost.transport.base import Transport
from outpost.transport.command import Command
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)

DEFAULT_UNIT_DIR = "/etc/systemd/system"


class StatusCode(enum.IntEnum):
    """``systemctl is-active`` exit code.

    Codes without a member (for example 1 or 2) are kept as pseudo members
    named ``EXIT_<code>`` so the raw value is never lost.
    """

    ACTIVE = 0
    # systemd also reports "activating" as 3.
    INACTIVE = 3
    NOT_FOUND = 4
    UNKNOWN = 9

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            return None
        member = int.__new__(cls, value)
        member._name_ = f"EXIT_{value}"
        member._value_ = value
        return member


class SubCommand(enum.Enum):
    STATUS = "status"
    START = "start"
    ENABLE = "enable"
    STOP = "stop"
    RELOAD = "reload"
    RESTART = "restart"
    KILL = "kill"
    DAEMON_RELOAD = "daemon-reload"
    IS_ACTIVE = "is-active"
    SHOW = "show"
    LIST_UNITS = "list-units"


# Sub commands that operate on a named unit.
_NEEDS_UNIT = {
    SubCommand.START,
    SubCommand.ENABLE,
    SubCommand.STOP,
    SubCommand.RELOAD,
    SubCommand.RESTART,
    SubCommand.KILL,
    SubCommand.IS_ACTIVE,
    SubCommand.SHOW,
}


class ServiceUnit(OrderedDict):
    """Ordered ``section -> {key: value}`` mapping of a unit file."""

    def to_ini(self) -> str:
        blocks = []
        for section, values in self.items():
            lines = [f"[{section}]"]
            for key, value in values.items():
                lines.append(f"{key}={value}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks) + "\n" if blocks else ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, str]]) -> "ServiceUnit":
        unit = cls()
        for section, values in data.items():
            unit[section] = OrderedDict((str(k), str(v)) for k, v in values.items())
        return unit


class UnitProperties(dict):
    def has_properties(self, wanted: Mapping[str, str]) -> bool:
        return all(self.get(key) == value for key, value in wanted.items())

    def find(self, *names: str) -> "UnitProperties":
        missing = [name for name in names if name not in self]
        if missing:
            raise KeyError(f"no property found: {', '.join(missing)}")
        return UnitProperties({name: self[name] for name in names})

    def __str__(self) -> str:
        return "".join(f"{key}={value}\n" for key, value in self.items())


ENABLED_AND_RUNNING = UnitProperties(
    {
        "LoadState": "loaded",
        "ActiveState": "active",
        "SubState": "running",
        "UnitFileState": "enabled",
    }
)


@dataclass(slots=True)
class ServiceInfo:
    unit: str
    load: str
    active: str
    sub: str
    description: str


_SERVICE_INFO_RE = re.compile(
    r"^(?P<unit>\S+)\.service\s+(?P<load>\S+)\s+(?P<active>\S+)\s+(?P<sub>\S+)\s+(?P<description>\S.*)$"
)


def parse_service_infos(output: str) -> List[ServiceInfo]:
    services: List[ServiceInfo] = []
    for line in output.splitlines():
        match = _SERVICE_INFO_RE.match(line.strip())
        if match:
            services.append(ServiceInfo(**match.groupdict()))
    return services


def decode_properties(show: str) -> UnitProperties:
    props = UnitProperties()
    for line in show.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        props[key] = value
    return props


def unit_name(name: str) -> str:
    return name if name.endswith(".service") else f"{name}.service"


@dataclass(slots=True)
class SystemctlCommand:
    sub_command: SubCommand
    unit: Optional[str] = None
    user: bool = False
    options: str = ""
    pattern: str = ""
    env: Dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        parts = ["sudo systemctl"]
        if self.user:
            parts.append("--user")
        if self.options:
            parts.append(self.options)
        parts.append(self.sub_command.value)
        if self.sub_command in _NEEDS_UNIT:
            if not self.unit:
                raise ConfigurationError(
                    ("unit",), f"systemctl {self.sub_command.value} requires a unit name"
                )
            parts.append(unit_name(self.unit))
        elif self.unit and self.sub_command is not SubCommand.DAEMON_RELOAD:
            parts.append(unit_name(self.unit))
        if self.pattern:
            parts.append(self.pattern)
        return " ".join(parts)

    def command(self) -> Command:
        return Command(self.render(), self.env)


@dataclass(slots=True)
class SystemctlResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class SystemdClient:
    """systemd operations against one target."""

    def __init__(self, transport: Transport, *, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.transport = transport
        self.retry_policy = retry_policy

    # -------------------------------------------------------------- commands
    def run_systemctl(
        self, ctx: ActionContext, request: SystemctlCommand, *, check: bool = True
    ) -> SystemctlResult:
        """Run one ``systemctl`` command, retrying transport failures.

        With ``check`` false a non-zero exit is returned as a result instead
        of raised; ``exit_code`` is -1 when the transport reported none.
        """

        command = request.command()
        try:
            stdout, stderr = retry(
                ctx,
                lambda: self.transport.run(ctx, command),
                self.retry_policy,
                description=request.render(),
            )
        except RemoteExecutionError as exc:
            if check:
                raise
            exit_code = exc.exit_code if exc.exit_code is not None else -1
            return SystemctlResult(exc.stdout, exc.stderr, exit_code)
        return SystemctlResult(stdout, stderr, 0)

    def _simple(self, ctx: ActionContext, sub_command: SubCommand, unit: str, **kwargs) -> None:
        LOGGER.info("systemctl %s %s", sub_command.value, unit_name(unit))
        self.run_systemctl(ctx, SystemctlCommand(sub_command, unit, **kwargs))

    def enable_service(self, ctx: ActionContext, unit: str) -> None:
        self._simple(ctx, SubCommand.ENABLE, unit)

    def start_service(self, ctx: ActionContext, unit: str) -> None:
        self._simple(ctx, SubCommand.START, unit)

    def stop_service(self, ctx: ActionContext, unit: str) -> None:
        self._simple(ctx, SubCommand.STOP, unit)

    def reload_service(self, ctx: ActionContext, unit: str) -> None:
        self._simple(ctx, SubCommand.RELOAD, unit)

    def kill_service(self, ctx: ActionContext, unit: str) -> None:
        self._simple(ctx, SubCommand.KILL, unit)

    def daemon_reload(self, ctx: ActionContext) -> None:
        LOGGER.info("systemctl daemon-reload")
        self.run_systemctl(ctx, SystemctlCommand(SubCommand.DAEMON_RELOAD))

    def restart_service(self, ctx: ActionContext, unit: str) -> None:
        """Stop then start an active service; enable then start otherwise."""
        if self.is_active(ctx, unit):
            self.stop_service(ctx, unit)
        else:
            self.enable_service(ctx, unit)
        self.start_service(ctx, unit)

    # ---------------------------------------------------------------- status
    def service_status(self, ctx: ActionContext, unit: str) -> StatusCode:
        """Return the ``is-active`` status; a broken channel reads as UNKNOWN."""
        try:
            result = self.run_systemctl(
                ctx, SystemctlCommand(SubCommand.IS_ACTIVE, unit), check=False
            )
        except TransportError as exc:
            LOGGER.warning("Unable to read status of %s: %s", unit_name(unit), exc)
            return StatusCode.UNKNOWN
        if result.exit_code < 0:
            return StatusCode.UNKNOWN
        return StatusCode(result.exit_code)

    def is_active(self, ctx: ActionContext, unit: str) -> bool:
        return self.service_status(ctx, unit) is StatusCode.ACTIVE

    def wait_for_status(
        self,
        ctx: ActionContext,
        unit: str,
        desired: Iterable[StatusCode] = (StatusCode.ACTIVE,),
        *,
        timeout: float = 60.0,
        interval: float = 2.0,
        raise_on_timeout: bool = True,
    ) -> StatusCode:
        """Poll until ``unit`` reaches one of ``desired`` or ``timeout`` passes.

        Every status call runs under a context bounded by ``timeout``, so a
        hung ``is-active`` cannot hold the caller past it.  On timeout a
        :class:`StatusTimeoutError` carrying the last observed status is
        raised, or that status is returned when ``raise_on_timeout`` is
        false.  Cancelling ``ctx`` itself still raises
        :class:`ActionCancelled`.
        """

        wanted: Tuple[StatusCode, ...] = tuple(desired)
        poll_ctx = ctx.child(timeout)
        last = StatusCode.UNKNOWN
        try:
            while True:
                last = self.service_status(poll_ctx, unit)
                if last in wanted:
                    return last
                poll_ctx.sleep(interval)
        except ActionCancelled:
            ctx.check()
        LOGGER.warning(
            "%s did not reach %s within %ss, last status %s",
            unit_name(unit),
            [s.name for s in wanted],
            timeout,
            last.name,
        )
        if raise_on_timeout:
            raise StatusTimeoutError(unit_name(unit), last, timeout, wanted)
        return last

    def show_properties(self, ctx: ActionContext, unit: str) -> UnitProperties:
        result = self.run_systemctl(ctx, SystemctlCommand(SubCommand.SHOW, unit))
        if not result.stdout.strip():
            raise RemoteExecutionError(
                f"showing systemd properties for {unit_name(unit)}: no output",
                command=SystemctlCommand(SubCommand.SHOW, unit).render(),
                stderr=result.stderr,
            )
        return decode_properties(result.stdout)

    def list_services(self, ctx: ActionContext) -> List[ServiceInfo]:
        result = self.run_systemctl(
            ctx,
            SystemctlCommand(
                SubCommand.LIST_UNITS,
                options="--full --all --plain --no-legend",
                pattern="--type=service",
            ),
        )
        return parse_service_infos(result.stdout)

    def get_logs(self, ctx: ActionContext, unit: str) -> str:
        command = f"journalctl -x -u {unit_name(unit)}"
        stdout, stderr = retry(
            ctx, lambda: self.transport.run(ctx, command), self.retry_policy, description=command
        )
        if stderr:
            LOGGER.error("stderr retrieving systemd logs for %s: %s", unit, stderr.strip())
        if not stdout:
            LOGGER.debug("no systemd logs for %s", unit)
        return stdout

    # ----------------------------------------------------------------- units
    def create_unit_file(
        self,
        ctx: ActionContext,
        unit: ServiceUnit,
        path: str,
        *,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None:
        if not path:
            raise ConfigurationError(("unit_path",), "you must provide a unit destination path")
        copy_file(
            ctx,
            self.transport,
            RemoteOperationRequest(
                destination=path,
                content=Content(unit.to_ini()),
                mode=mode,
                owner=owner,
                retry_policy=self.retry_policy,
            ),
        )


def unit_path(name: str, directory: str = DEFAULT_UNIT_DIR) -> str:
    return f"{directory.rstrip('/')}/{unit_name(name)}"


__all__ = [
    "DEFAULT_UNIT_DIR",
    "ENABLED_AND_RUNNING",
    "ServiceInfo",
    "ServiceUnit",
    "StatusCode",
    "SubCommand",
    "SystemctlCommand",
    "SystemdClient",
    "UnitProperties",
    "decode_properties",
    "parse_service_infos",
    "unit_name",
    "unit_path",
]

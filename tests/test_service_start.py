from __future__ import annotations

import pytest

from outpost.errors import StatusTimeoutError, TransportError
from outpost.remote.files import RemoteOperationRequest
from outpost.remote.service import ServiceStartRequest, start_service
from outpost.remote.systemd import ENABLED_AND_RUNNING, ServiceUnit, StatusCode
from outpost.remote.user import User
from outpost.retry import RetryPolicy
from outpost.transport.content import Content
from tests.fakes import FakeSystemd, FakeTransport, flaky

UNIT = ServiceUnit.from_mapping(
    {
        "Unit": {"Description": "demo"},
        "Service": {"User": "demo", "ExecStart": "/opt/demo/bin/demo"},
        "Install": {"WantedBy": "multi-user.target"},
    }
)


def _first(fake: FakeTransport, fragment: str) -> int:
    for index, cmd in enumerate(fake.commands):
        if fragment in cmd:
            return index
    raise AssertionError(f"{fragment!r} never ran: {fake.commands}")


def _request(**overrides) -> ServiceStartRequest:
    fields = dict(
        name="demo",
        unit=UNIT,
        user=User(name="demo", shell="/bin/false"),
        directories=[("/var/lib/demo", "demo")],
        files=[
            RemoteOperationRequest(destination="/etc/demo/demo.conf", content=Content("port=8080\n"), mode="0644")
        ],
        timeout=1.0,
        interval=0.01,
        retry_policy=RetryPolicy(base_delay=0.0),
    )
    fields.update(overrides)
    return ServiceStartRequest(**fields)


def test_steps_run_in_order(ctx):
    systemd = FakeSystemd()
    fake = (
        FakeTransport()
        .on("getent", "demo:x:990:990::/home/demo:/bin/false\n")
        .on("systemctl", handler=systemd)
    )

    result = start_service(ctx, fake, _request())

    assert result.status is StatusCode.ACTIVE
    assert result.steps == ["user", "directories", "files", "unit", "restart", "status"]
    order = [
        _first(fake, "getent passwd demo"),
        _first(fake, "mkdir -p /var/lib/demo"),
        _first(fake, "/etc/demo/demo.conf"),
        _first(fake, "/etc/systemd/system/demo.service"),
        _first(fake, "daemon-reload"),
        _first(fake, "enable demo.service"),
        _first(fake, "start demo.service"),
    ]
    assert order == sorted(order)
    assert fake.files["/etc/demo/demo.conf"] == b"port=8080\n"
    assert fake.files["/etc/systemd/system/demo.service"].startswith(b"[Unit]\nDescription=demo\n")


def test_second_start_restarts_running_service(ctx):
    systemd = FakeSystemd()
    fake = FakeTransport().on("systemctl", handler=systemd)
    request = _request(user=None, directories=(), files=())

    start_service(ctx, fake, request)
    before = len(fake.commands)
    result = start_service(ctx, fake, request)

    assert result.status is StatusCode.ACTIVE
    assert result.steps == ["unit", "restart", "status"]
    assert "sudo systemctl stop demo.service" in fake.commands[before:]


def test_required_properties_are_checked(ctx):
    fake = FakeTransport().on("systemctl", handler=FakeSystemd())
    result = start_service(
        ctx, fake, _request(user=None, directories=(), files=(), require_properties=ENABLED_AND_RUNNING)
    )
    assert result.steps[-1] == "properties"
    assert result.properties["MainPID"] == "1234"


def test_service_that_never_starts_reports_last_status(ctx):
    fake = FakeTransport().on("is-active", exit_code=3)
    with pytest.raises(StatusTimeoutError) as excinfo:
        start_service(ctx, fake, _request(user=None, directories=(), files=(), timeout=0.05))
    assert excinfo.value.last_status is StatusCode.INACTIVE
    assert excinfo.value.unit == "demo.service"


def test_dropped_channel_during_lifecycle_is_retried(ctx):
    reload = flaky(1)
    lookup = flaky(1, ("demo:x:990:990::/home/demo:/bin/false\n", ""))
    fake = (
        FakeTransport()
        .on("getent", handler=lookup)
        .on("daemon-reload", handler=reload)
        .on("mkdir -p /var/lib/demo", handler=flaky(1))
        .on("systemctl", handler=FakeSystemd())
    )

    result = start_service(ctx, fake, _request())

    assert result.status is StatusCode.ACTIVE
    assert len(reload.calls) == 2
    assert len(lookup.calls) == 2
    assert len(fake.ran("mkdir -p /var/lib/demo")) == 2


def test_status_poll_survives_dropped_channel(ctx):
    systemd = FakeSystemd()
    drops = {"left": 1}

    def is_active(cmd):
        if " is-active " in cmd and "demo.service" in systemd.active and drops["left"]:
            drops["left"] -= 1
            raise TransportError("connection reset by peer")
        return systemd(cmd)

    fake = FakeTransport().on("systemctl", handler=is_active)
    result = start_service(ctx, fake, _request(user=None, directories=(), files=()))

    assert result.status is StatusCode.ACTIVE
    assert drops["left"] == 0

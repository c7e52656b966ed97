from __future__ import annotations

import time

import pytest

from outpost.errors import ActionCancelled, ConfigurationError, RemoteExecutionError, TransportError
from outpost.remote.files import RemoteOperationRequest, copy_file, create_directory, delete_file, random_id
from outpost.remote.output import run_with_sudo_fallback
from outpost.remote.script import RunScriptRequest, run_script, script_destination
from outpost.remote.user import User, decode_passwd_line, ensure_user, find_user
from outpost.retry import RetryPolicy
from outpost.transport.content import Content
from tests.fakes import FakeTransport, flaky

APP_PASSWD = "app:x:999:998::/var/lib/app:/bin/false\n"


def test_random_id_length():
    assert len(random_id()) == 10
    assert len(random_id(7)) == 7
    assert random_id() != random_id()


def test_copy_file_stages_then_moves(ctx):
    fake = FakeTransport()
    request = RemoteOperationRequest(
        destination="/etc/app/app.conf",
        content=Content("listen 80\n"),
        mode="0640",
        owner="app",
    )

    copy_file(ctx, fake, request)

    assert fake.copies[0].startswith("/tmp/app.conf-")
    assert fake.files == {"/etc/app/app.conf": b"listen 80\n"}
    assert fake.ran("chmod 0640")
    assert fake.ran("chown app")
    assert fake.ran("mkdir -p /etc/app")
    # chmod and chown happen before the file is moved into place
    assert fake.commands.index(fake.ran("chmod")[0]) < fake.commands.index(fake.ran("mv ")[0])


def test_copy_file_requires_destination_and_content(ctx):
    with pytest.raises(ConfigurationError, match="destination"):
        copy_file(ctx, FakeTransport(), RemoteOperationRequest(destination="", content=Content("x")))
    with pytest.raises(ConfigurationError, match="content"):
        copy_file(ctx, FakeTransport(), RemoteOperationRequest(destination="/x"))


def test_sudo_fallback_retries_once_with_sudo(ctx):
    fake = FakeTransport().on("chmod", exit_code=1, times=1)
    run_with_sudo_fallback(ctx, fake, "chmod 0600 /tmp/x", "changing file permissions")
    assert fake.commands == ["chmod 0600 /tmp/x", "sudo chmod 0600 /tmp/x"]


def test_sudo_fallback_keeps_both_outputs(ctx):
    fake = FakeTransport().on("chown", "", "permission denied", exit_code=1)
    with pytest.raises(RemoteExecutionError) as excinfo:
        run_with_sudo_fallback(ctx, fake, "chown app /tmp/x", "changing file ownership")
    assert excinfo.value.stderr == "permission denied\npermission denied"
    assert excinfo.value.command == "sudo chown app /tmp/x"


def test_delete_file_and_create_directory(ctx):
    fake = FakeTransport()
    delete_file(ctx, fake, "/opt/app/old")
    create_directory(ctx, fake, "/var/lib/app", owner="app")
    assert fake.commands == [
        "rm -r /opt/app/old || sudo rm -r /opt/app/old",
        "mkdir -p /var/lib/app || sudo mkdir -p /var/lib/app",
        "chown -R app /var/lib/app || sudo chown -R app /var/lib/app",
    ]
    with pytest.raises(ConfigurationError):
        create_directory(ctx, fake, "")


def test_delete_file_retries_transport_failures(ctx):
    calls = []

    def flaky(cmd):
        calls.append(cmd)
        if len(calls) == 1:
            raise TransportError("channel closed")
        return "", ""

    fake = FakeTransport().on("rm -r", handler=flaky)
    delete_file(ctx, fake, "/opt/app/old", RetryPolicy(base_delay=0.0))
    assert len(calls) == 2


def test_decode_passwd_line():
    user = decode_passwd_line(APP_PASSWD)
    assert user == User(name="app", home_dir="/var/lib/app", shell="/bin/false", uid="999", gid="998")
    with pytest.raises(ValueError):
        decode_passwd_line("app:x:999")


def test_find_user_falls_back_to_passwd_file(ctx):
    fake = (
        FakeTransport()
        .on("getent", exit_code=2)
        .on("cat /etc/passwd", "application:x:1000:1000::/home/application:/bin/sh\n" + APP_PASSWD)
    )
    user = find_user(ctx, fake, "app")
    assert user.uid == "999"
    assert user.home_dir == "/var/lib/app"


def test_find_user_falls_back_to_id(ctx):
    fake = FakeTransport().on("getent", exit_code=2).on("id -u", "1001\n").on("id -g", "1002\n")
    assert find_user(ctx, fake, "deploy") == User(name="deploy", uid="1001", gid="1002")


def test_find_user_missing(ctx):
    fake = FakeTransport().on("getent", exit_code=2).on("id -", exit_code=1)
    assert find_user(ctx, fake, "ghost") is None


def test_ensure_user_creates_missing_user(ctx):
    fake = (
        FakeTransport()
        .on("getent", exit_code=2, times=1)
        .on("id -", exit_code=1, times=2)
        .on("getent", APP_PASSWD)
    )
    user = ensure_user(ctx, fake, User(name="app", home_dir="/var/lib/app", shell="/bin/false"))

    assert user.uid == "999"
    assert fake.ran("sudo useradd -m --system --home /var/lib/app --shell /bin/false -U app")


def test_ensure_user_only_updates_differences(ctx):
    fake = FakeTransport().on("getent", APP_PASSWD)
    ensure_user(ctx, fake, User(name="app", shell="/bin/bash", home_dir="/var/lib/app"))
    assert fake.ran("usermod") == ["sudo usermod -s /bin/bash app"]


def test_ensure_user_no_changes(ctx):
    fake = FakeTransport().on("getent", APP_PASSWD)
    ensure_user(ctx, fake, User(name="app", uid="999"))
    assert not fake.ran("usermod")
    assert not fake.ran("useradd")


def test_ensure_user_requires_name(ctx):
    with pytest.raises(ConfigurationError):
        ensure_user(ctx, FakeTransport(), User())


def test_script_destination_uses_digest():
    content = Content("echo hi\n")
    assert script_destination(content, "abc") == f"/tmp/abc-{content.sha256()}.sh"
    assert script_destination(content, tmp_dir="/var/tmp") == f"/var/tmp/{content.sha256()}.sh"


def test_run_script_uploads_runs_and_cleans_up(ctx):
    fake = FakeTransport().on("FOO=bar /tmp/setup.sh", "done\n")
    response = run_script(
        ctx,
        fake,
        RunScriptRequest(content=Content("#!/bin/sh\necho done\n"), destination="/tmp/setup.sh", env={"FOO": "bar"}),
    )

    assert response.stdout == "done\n"
    assert fake.files["/tmp/setup.sh"].startswith(b"#!/bin/sh")
    assert fake.ran("chmod 0777")
    assert fake.commands[-1] == "rm -f /tmp/setup.sh"


def test_run_script_with_sudo_passes_env_to_sudo(ctx):
    fake = FakeTransport()
    run_script(
        ctx,
        fake,
        RunScriptRequest(
            content=Content("id\n"), destination="/tmp/s.sh", env={"B": "2", "A": "1"}, sudo=True, no_cleanup=True
        ),
    )
    assert fake.commands[-1] == "sudo A=1 B=2 /tmp/s.sh"


def test_run_script_failure_carries_output(ctx):
    fake = FakeTransport().on("FOO=bar /tmp/setup.sh", "partial\n", "boom\n", exit_code=3)
    with pytest.raises(RemoteExecutionError) as excinfo:
        run_script(
            ctx,
            fake,
            RunScriptRequest(content=Content("exit 3\n"), destination="/tmp/setup.sh", env={"FOO": "bar"}),
        )
    err = excinfo.value
    assert err.exit_code == 3
    assert err.stdout == "partial\n"
    assert "boom" in str(err)
    assert not fake.ran("rm -f")


def test_create_directory_retries_transport_failures(ctx):
    handler = flaky(1)
    fake = FakeTransport().on("mkdir -p", handler=handler)
    create_directory(ctx, fake, "/var/lib/app", retry_policy=RetryPolicy(base_delay=0.0))
    assert len(handler.calls) == 2


def test_run_script_timeout_bounds_execution(ctx):
    fake = FakeTransport().on("MODE=hang", delay=5.0)

    start = time.monotonic()
    with pytest.raises(RemoteExecutionError, match="timed out after 0.2s") as excinfo:
        run_script(
            ctx,
            fake,
            RunScriptRequest(
                content=Content("sleep 600\n"), destination="/tmp/hang.sh", env={"MODE": "hang"}, timeout=0.2
            ),
        )

    assert time.monotonic() - start < 1.5
    assert excinfo.value.command == "MODE=hang /tmp/hang.sh"
    assert not fake.ran("rm -f")


def test_run_script_cancelled_by_caller(ctx):
    ctx.cancel()
    with pytest.raises(ActionCancelled):
        run_script(ctx, FakeTransport(), RunScriptRequest(content=Content("id\n"), timeout=5.0))

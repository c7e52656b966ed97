from __future__ import annotations

import pytest

from outpost.errors import RemoteExecutionError, TransportError
from outpost.remote.target import HostInfo, TargetFacts, find_in_os_release, format_arch
from outpost.retry import RetryPolicy
from tests.fakes import OS_RELEASE, FakeTransport, linux_host

FAST = RetryPolicy(max_attempts=3, base_delay=0.0).with_retry_on(TransportError, RemoteExecutionError)


def test_format_arch():
    assert format_arch("x86_64") == "amd64"
    assert format_arch("aarch64") == "arm64"
    assert format_arch("riscv64") == "riscv64"


def test_find_in_os_release():
    assert find_in_os_release(OS_RELEASE, "VERSION_ID") == "22.04"
    with pytest.raises(ValueError):
        find_in_os_release(OS_RELEASE, "VERSION_CODENAME")
    with pytest.raises(ValueError):
        find_in_os_release("", "ID")


def test_host_info(ctx):
    info = TargetFacts(linux_host(), FAST).host_info(ctx)
    assert info == HostInfo(
        arch="amd64",
        distro="ubuntu",
        distro_version="22.04",
        hostname="web-1",
        pid1="systemd",
        platform="linux",
        platform_version="5.15.0-91-generic",
        home_dir="/home/ubuntu",
    )


def test_distro_falls_back_to_lsb_release(ctx):
    fake = FakeTransport().on("cat /etc/os-release", exit_code=1).on("lsb_release -si", "Debian\n")
    assert TargetFacts(fake, FAST).distro(ctx) == "debian"


def test_home_dir_falls_back_to_tilde(ctx):
    fake = FakeTransport().on("echo ~", "/root\n")
    assert TargetFacts(fake, FAST).home_dir(ctx) == "/root"


def test_fact_lookup_retries_until_success(ctx):
    fake = FakeTransport().on("uname -n", exit_code=1, times=2).on("uname -n", "web-2\n")
    assert TargetFacts(fake, FAST).hostname(ctx) == "web-2"
    assert len(fake.ran("uname -n")) == 3


def test_process_manager_for_api_transports(ctx):
    fake = FakeTransport(kind="kubernetes")
    assert TargetFacts(fake, FAST).process_manager(ctx) == "kubernetes"
    assert fake.commands == []


def test_partial_host_info_collects_errors(ctx):
    fake = linux_host()
    fake.rules = [rule for rule in fake.rules if rule.pattern != "uname -r"]
    facts = TargetFacts(fake, FAST)

    info, errors = facts.host_info_partial(ctx)
    assert info.platform_version is None
    assert info.hostname == "web-1"
    assert len(errors) == 1

    with pytest.raises(RemoteExecutionError, match="platform version"):
        facts.host_info(ctx)

from __future__ import annotations

import base64

import paramiko
import pytest
import yaml

from outpost.errors import ConfigurationError, RemoteExecutionError, TransportError
from outpost.transport import k8s as k8s_transport
from outpost.transport import ssh as ssh_transport
from outpost.transport.command import Command
from outpost.transport.content import Content
from outpost.transport.k8s import KubernetesOptions, KubernetesTransport, decode_kubeconfig
from outpost.transport.ssh import SSHOptions, SSHTransport, load_private_key

# ----------------------------------------------------------------------- ssh


class FakeChannel:
    def __init__(self, stdout=b"", stderr=b"", exit_code=0):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_code = exit_code
        self.command = None
        self.closed = False

    def exec_command(self, cmd):
        self.command = cmd

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        return self._stdout.pop(0) if self._stdout else b""

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        return self._stderr.pop(0) if self._stderr else b""

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


class FakeSFTP:
    def __init__(self, error=None):
        self.files = {}
        self.error = error

    def putfo(self, fileobj, destination, file_size=0):
        if self.error is not None:
            raise self.error
        self.files[destination] = fileobj.read()

    def close(self):
        pass


class FakeSSHClient:
    connect_error = None
    channels = []
    sftp = None

    def __init__(self):
        self.connected_with = None
        self.closed = False

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_with = kwargs

    def get_transport(self):
        client = self

        class _Transport:
            def open_session(self):
                return client.channels.pop(0)

        return _Transport()

    def open_sftp(self):
        return self.sftp

    def close(self):
        self.closed = True


@pytest.fixture()
def ssh_client(monkeypatch):
    FakeSSHClient.connect_error = None
    FakeSSHClient.channels = []
    FakeSSHClient.sftp = FakeSFTP()
    monkeypatch.setattr(paramiko, "SSHClient", FakeSSHClient)
    return FakeSSHClient


def _ssh(ctx, **overrides):
    options = SSHOptions(host="10.0.0.5", user="ubuntu", private_key_path="/keys/id_ed25519", **overrides)
    return SSHTransport.connect(ctx, options)


def test_ssh_connect_uses_key_path(ctx, ssh_client):
    transport = _ssh(ctx, port=2222, connect_timeout=4.0)
    kwargs = transport._client.connected_with
    assert kwargs["hostname"] == "10.0.0.5"
    assert kwargs["port"] == 2222
    assert kwargs["key_filename"] == "/keys/id_ed25519"
    assert kwargs["pkey"] is None
    assert kwargs["timeout"] == 4.0
    assert kwargs["look_for_keys"] is False


def test_ssh_rejected_key_is_a_configuration_error(ctx, ssh_client):
    ssh_client.connect_error = paramiko.AuthenticationException("denied")
    with pytest.raises(ConfigurationError, match="authentication") as excinfo:
        _ssh(ctx)
    assert excinfo.value.path == "transport.ssh.private_key_path"
    assert not isinstance(excinfo.value, TransportError)


def test_ssh_rejected_inline_key_points_at_private_key(ctx, ssh_client, monkeypatch):
    monkeypatch.setattr(ssh_transport, "load_private_key", lambda text, passphrase=None: object())
    ssh_client.connect_error = paramiko.BadAuthenticationType("denied", ["password"])
    options = SSHOptions(host="10.0.0.5", user="ubuntu", private_key="PEM")
    with pytest.raises(ConfigurationError) as excinfo:
        SSHTransport.connect(ctx, options)
    assert excinfo.value.path == "transport.ssh.private_key"


def test_ssh_connect_errors_are_transport_errors(ctx, ssh_client):
    ssh_client.connect_error = OSError("connection refused")
    with pytest.raises(TransportError, match="unable to connect"):
        _ssh(ctx)


def test_ssh_run(ctx, ssh_client):
    channel = FakeChannel(b"hello\n", b"warn\n")
    ssh_client.channels = [channel]
    transport = _ssh(ctx)

    assert transport.run(ctx, Command("echo hello", {"FOO": "bar"})) == ("hello\n", "warn\n")
    assert channel.command == "FOO=bar echo hello"
    assert channel.closed


def test_ssh_run_non_zero_exit(ctx, ssh_client):
    ssh_client.channels = [FakeChannel(b"", b"missing\n", exit_code=127)]
    transport = _ssh(ctx)

    with pytest.raises(RemoteExecutionError) as excinfo:
        transport.run(ctx, "nosuchcmd")
    assert excinfo.value.exit_code == 127
    assert excinfo.value.stderr == "missing\n"


def test_ssh_copy(ctx, ssh_client):
    transport = _ssh(ctx)
    transport.copy(ctx, Content("data"), "/tmp/x")
    assert ssh_client.sftp.files == {"/tmp/x": b"data"}

    ssh_client.sftp.error = PermissionError("permission denied")
    with pytest.raises(RemoteExecutionError, match="unable to write /tmp/y"):
        transport.copy(ctx, Content("data"), "/tmp/y")
    transport.close()
    assert transport._client.closed


def test_invalid_private_key():
    with pytest.raises(ConfigurationError) as excinfo:
        load_private_key("not a key")
    assert excinfo.value.path == "transport.ssh.private_key"


# ---------------------------------------------------------------- kubernetes


def _kubeconfig() -> str:
    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "dev", "cluster": {"server": "https://127.0.0.1:6443"}}],
        "users": [{"name": "dev", "user": {"token": "abc"}}],
        "contexts": [{"name": "dev", "context": {"cluster": "dev", "user": "dev"}}],
        "current-context": "dev",
    }
    return base64.b64encode(yaml.safe_dump(config).encode()).decode()


class FakeExecStream:
    def __init__(self, stdout="", stderr="", returncode=0):
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self._open = True
        self.closed = False

    def is_open(self):
        return self._open

    def update(self, timeout=0):
        self._open = False

    def peek_stdout(self):
        return bool(self.stdout)

    def read_stdout(self):
        out, self.stdout = self.stdout, ""
        return out

    def peek_stderr(self):
        return bool(self.stderr)

    def read_stderr(self):
        err, self.stderr = self.stderr, ""
        return err

    def close(self):
        self.closed = True


class FakeCore:
    def connect_get_namespaced_pod_exec(self, *args, **kwargs):
        raise AssertionError("called through stream()")


@pytest.fixture()
def exec_calls(monkeypatch):
    calls = []

    def fake_stream(func, pod, namespace, **kwargs):
        calls.append((pod, namespace, kwargs))
        return FakeExecStream(stdout=f"ran {kwargs['command'][-1]}")

    monkeypatch.setattr(k8s_transport, "stream", fake_stream)
    return calls


def _pod(**overrides) -> KubernetesTransport:
    options = KubernetesOptions(kubeconfig_base64=_kubeconfig(), context_name="dev", pod="web-0", **overrides)
    return KubernetesTransport(FakeCore(), options)


def test_decode_kubeconfig():
    assert decode_kubeconfig(_kubeconfig())["current-context"] == "dev"
    with pytest.raises(ConfigurationError) as excinfo:
        decode_kubeconfig("%%%not base64")
    assert excinfo.value.path == "transport.kubernetes.kubeconfig_base64"
    with pytest.raises(ConfigurationError, match="mapping"):
        decode_kubeconfig(base64.b64encode(b"just a string").decode())


def test_kubernetes_connect_rejects_unknown_context(ctx):
    options = KubernetesOptions(kubeconfig_base64=_kubeconfig(), context_name="prod", pod="web-0")
    with pytest.raises(ConfigurationError) as excinfo:
        KubernetesTransport.connect(ctx, options)
    assert excinfo.value.path == "transport.kubernetes.context_name"


def test_kubernetes_run(ctx, exec_calls):
    transport = _pod(namespace="apps", container="app")
    stdout, stderr = transport.run(ctx, "id -u")

    assert stdout == "ran id -u"
    assert stderr == ""
    pod, namespace, kwargs = exec_calls[0]
    assert (pod, namespace) == ("web-0", "apps")
    assert kwargs["command"] == ["sh", "-c", "id -u"]
    assert kwargs["container"] == "app"


def test_kubernetes_run_failure(ctx, monkeypatch):
    monkeypatch.setattr(
        k8s_transport, "stream", lambda *a, **k: FakeExecStream(stderr="denied\n", returncode=1)
    )
    with pytest.raises(RemoteExecutionError) as excinfo:
        _pod().run(ctx, "cat /root/secret")
    assert excinfo.value.stderr == "denied\n"
    assert "default/web-0" in str(excinfo.value)


def test_kubernetes_copy_streams_base64(ctx, exec_calls):
    _pod().copy(ctx, Content("port=8080\n"), "/etc/app/app.conf")

    commands = [kwargs["command"][-1] for _, _, kwargs in exec_calls]
    assert commands[0].startswith(": > /etc/app/.app.conf.")
    chunk = commands[1].split("'")[3]
    assert base64.b64decode(chunk) == b"port=8080\n"
    assert commands[2].startswith("base64 -d /etc/app/.app.conf.")
    assert "> /etc/app/app.conf && rm -f" in commands[2]

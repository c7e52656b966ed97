from __future__ import annotations

import base64
import io
import json
import tarfile
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from outpost.errors import RemoteExecutionError, TransportError
from outpost.transport.content import Content
from outpost.transport.nomad import NomadClient, NomadOptions, NomadTransport

ALLOC_ID = "5b1c9e2a-0d3f-4c55-9a2e-6f1e2a7b8c90"


def _frame(**streams) -> str:
    frame = {}
    for name, text in streams.items():
        if name == "exit_code":
            frame.update({"exited": True, "result": {"exit_code": text}})
        else:
            frame[name] = {"data": base64.b64encode(text.encode()).decode()}
    return json.dumps(frame)


class FakeSocket:
    def __init__(self, frames, fail_after=None):
        self.frames = list(frames)
        self.sent = []
        self.fail_after = fail_after
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def send(self, message):
        self.sent.append(json.loads(message))

    def recv(self, timeout=None):
        if self.fail_after is not None and not self.frames:
            raise ConnectionClosedError(None, None)
        if not self.frames:
            raise TimeoutError
        return self.frames.pop(0)

    def close(self):
        self.closed = True


class FakeConnector:
    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.sockets.pop(0)


def _api(secret_seen=None, allocations=None):
    allocations = [{"ID": ALLOC_ID}] if allocations is None else allocations

    def handler(request: httpx.Request) -> httpx.Response:
        if secret_seen is not None:
            secret_seen.append(request.headers.get("X-Nomad-Token"))
        if request.url.path == "/v1/allocations":
            assert request.url.params["prefix"] == ALLOC_ID[:8]
            return httpx.Response(200, json=allocations)
        if request.url.path == f"/v1/allocation/{ALLOC_ID}":
            return httpx.Response(200, json={"ID": ALLOC_ID, "TaskStates": {"web": {}}})
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


def _connect(ctx, connector, **kwargs):
    options = NomadOptions(
        host="https://nomad.example:4646",
        allocation_id=ALLOC_ID[:8],
        task_name=kwargs.pop("task_name", "web"),
        secret_id="s3cr3t",
    )
    return NomadTransport.connect(ctx, options, http_transport=_api(**kwargs), connector=connector)


def test_exec_url():
    client = NomadClient("https://nomad.example:4646/")
    url = client.exec_url(ALLOC_ID, "web", ["sh", "-c", "id"])
    parts = urlsplit(url)
    assert parts.scheme == "wss"
    assert parts.path == f"/v1/client/allocation/{ALLOC_ID}/exec"
    query = parse_qs(parts.query)
    assert query["task"] == ["web"]
    assert json.loads(query["command"][0]) == ["sh", "-c", "id"]
    assert NomadClient("http://127.0.0.1:4646").exec_url("a", "t", ["id"]).startswith("ws://")


def test_connect_resolves_allocation_prefix(ctx):
    seen = []
    transport = _connect(ctx, FakeConnector(), secret_seen=seen)
    assert transport.allocation_id == ALLOC_ID
    assert seen == ["s3cr3t", "s3cr3t"]
    transport.close()


def test_connect_rejects_ambiguous_prefix(ctx):
    with pytest.raises(TransportError, match="exactly one allocation"):
        _connect(ctx, FakeConnector(), allocations=[{"ID": "a"}, {"ID": "b"}])


def test_connect_rejects_unknown_task(ctx):
    with pytest.raises(TransportError, match="task 'api' not found"):
        _connect(ctx, FakeConnector(), task_name="api")


def test_run_collects_output(ctx):
    socket = FakeSocket([_frame(stdout="hello "), _frame(stdout="world\n", stderr="warn\n"), _frame(exit_code=0)])
    connector = FakeConnector(socket)
    transport = _connect(ctx, connector)

    assert transport.run(ctx, "echo hello world") == ("hello world\n", "warn\n")
    url, kwargs = connector.calls[0]
    assert json.loads(parse_qs(urlsplit(url).query)["command"][0]) == ["sh", "-c", "echo hello world"]
    assert kwargs["additional_headers"] == {"X-Nomad-Token": "s3cr3t"}
    assert socket.sent == []


def test_run_raises_on_non_zero_exit(ctx):
    socket = FakeSocket([_frame(stderr="no such file\n"), _frame(exit_code=2)])
    transport = _connect(ctx, FakeConnector(socket))

    with pytest.raises(RemoteExecutionError) as excinfo:
        transport.run(ctx, "cat /missing")
    assert excinfo.value.exit_code == 2
    assert excinfo.value.stderr == "no such file\n"


def test_closed_stream_is_a_transport_error(ctx):
    socket = FakeSocket([_frame(stdout="partial")], fail_after=1)
    transport = _connect(ctx, FakeConnector(socket))

    with pytest.raises(TransportError, match="closed before exit"):
        transport.run(ctx, "sleep 100")


def test_copy_streams_tar_archive(ctx):
    socket = FakeSocket([_frame(exit_code=0)])
    connector = FakeConnector(socket)
    transport = _connect(ctx, connector)

    transport.copy(ctx, Content("port=8080\n"), "/etc/demo/demo.conf")

    url, _ = connector.calls[0]
    assert json.loads(parse_qs(urlsplit(url).query)["command"][0]) == ["tar", "-xmf", "-", "-C", "/etc/demo"]
    assert socket.sent[-1] == {"stdin": {"close": True}}
    payload = b"".join(base64.b64decode(frame["stdin"]["data"]) for frame in socket.sent[:-1])
    with tarfile.open(fileobj=io.BytesIO(payload)) as archive:
        member = archive.getmember("demo.conf")
        assert archive.extractfile(member).read() == b"port=8080\n"

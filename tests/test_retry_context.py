from __future__ import annotations

import threading
import time

import pytest

from outpost.context import ActionContext
from outpost.errors import (
    ActionCancelled,
    ConfigurationError,
    RemoteExecutionError,
    TransportError,
)
from outpost.retry import RetryPolicy, retry


def test_exponential_delay_is_capped():
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_constant_and_fibonacci_intervals():
    assert RetryPolicy.constant(0.5).delay(4) == 0.5
    fib = RetryPolicy.fibonacci(1.0, max_delay=100.0)
    assert [fib.delay(n) for n in range(1, 7)] == [1.0, 1.0, 2.0, 3.0, 5.0, 8.0]


def test_invalid_policy():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(interval="linear")


def test_retries_transport_errors_until_success():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransportError("connection reset")
        return "ok"

    policy = RetryPolicy(max_attempts=5, base_delay=0.0)
    assert retry(ActionContext(), flaky, policy) == "ok"
    assert len(calls) == 3


def test_configuration_errors_are_never_retried():
    calls = []

    def broken():
        calls.append(1)
        raise ConfigurationError(("transport", "ssh", "host"), "missing")

    policy = RetryPolicy(base_delay=0.0).with_retry_on(Exception)
    with pytest.raises(ConfigurationError):
        retry(ActionContext(), broken, policy)
    assert len(calls) == 1


def test_remote_errors_not_retried_by_default():
    calls = []

    def failing():
        calls.append(1)
        raise RemoteExecutionError("exit 1", exit_code=1)

    with pytest.raises(RemoteExecutionError):
        retry(ActionContext(), failing, RetryPolicy(base_delay=0.0))
    assert len(calls) == 1


def test_gives_up_after_max_attempts():
    calls = []

    def down():
        calls.append(1)
        raise TransportError("down")

    with pytest.raises(TransportError):
        retry(ActionContext(), down, RetryPolicy(max_attempts=3, base_delay=0.0))
    assert len(calls) == 3


def test_cancel_stops_retrying_promptly():
    ctx = ActionContext()
    calls = []

    def down():
        calls.append(1)
        raise TransportError("down")

    timer = threading.Timer(0.05, ctx.cancel)
    timer.start()
    start = time.monotonic()
    with pytest.raises(ActionCancelled):
        retry(ctx, down, RetryPolicy.constant(10.0, max_attempts=None))
    assert time.monotonic() - start < 5.0
    assert len(calls) == 1


def test_context_deadline_and_children():
    parent = ActionContext(timeout=60.0)
    child = parent.child(0.01)
    assert child.deadline <= parent.deadline
    time.sleep(0.02)
    with pytest.raises(ActionCancelled, match="deadline"):
        child.check()
    parent.check()

    other = parent.child()
    parent.cancel()
    assert other.cancelled()
    with pytest.raises(ActionCancelled, match="cancelled"):
        other.check()


def test_timeout_for_clamps_to_remaining():
    assert ActionContext().timeout_for(10.0) == 10.0
    assert ActionContext(timeout=1.0).timeout_for(10.0) <= 1.0

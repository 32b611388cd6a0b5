from __future__ import annotations

import signal

import allure
import pytest

from ralph_runner.loop.control import RunControl
from ralph_runner.loop.controllers import _signal_handlers

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Run Control"),
]


def test_stop_and_cancel_are_independent() -> None:
    control = RunControl()

    control.request_stop()

    assert control.stop_requested
    assert not control.cancelled

    control.cancel()

    assert control.cancelled


def test_cancel_runs_registered_callbacks_once() -> None:
    control = RunControl()
    calls: list[str] = []
    control.add_cancel_callback(lambda: calls.append("a"))
    control.add_cancel_callback(lambda: calls.append("b"))

    control.cancel()
    control.cancel()

    assert calls == ["a", "b"]


def test_unregistered_callback_is_not_called() -> None:
    control = RunControl()
    calls: list[str] = []
    remove = control.add_cancel_callback(lambda: calls.append("x"))

    remove()
    remove()
    control.cancel()

    assert calls == []


def test_callback_added_after_cancel_runs_immediately() -> None:
    control = RunControl()
    control.cancel()
    calls: list[str] = []

    control.add_cancel_callback(lambda: calls.append("late"))

    assert calls == ["late"]


def test_failing_callback_does_not_prevent_others() -> None:
    control = RunControl()
    calls: list[str] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    control.add_cancel_callback(_boom)
    control.add_cancel_callback(lambda: calls.append("ok"))

    control.cancel()

    assert calls == ["ok"]


@pytest.mark.skipif(not hasattr(signal, "SIGINT"), reason="signals unavailable")
def test_first_signal_stops_gracefully_second_cancels() -> None:
    control = RunControl()
    original = signal.getsignal(signal.SIGINT)

    with _signal_handlers(control):
        handler = signal.getsignal(signal.SIGINT)
        assert handler is not original

        handler(signal.SIGINT, None)
        assert control.stop_requested
        assert not control.cancelled

        handler(signal.SIGTERM, None)
        assert control.cancelled

    assert signal.getsignal(signal.SIGINT) is original


def test_cancel_while_registration_holds_the_lock_does_not_deadlock() -> None:
    control = RunControl()
    calls: list[str] = []
    control.add_cancel_callback(lambda: calls.append("abort"))

    # A signal handler runs on the thread that may be inside add_cancel_callback.
    with control._lock:
        control.cancel()

    assert control.cancelled
    assert calls == ["abort"]

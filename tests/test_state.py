import logging

import pytest

from timed_fsm import ConfigurationError, Event, State, Transition

from .machines import Speaker, SpeakerEvent


def test_missing_handler_returns_none():
    state = State()
    assert state.handle_event(Event(SpeakerEvent.POWER_ON), "off") is None


def test_missing_handler_logged_when_verbose(caplog):
    state = State(verbose=True)
    with caplog.at_level(logging.INFO, logger="timed_fsm.state"):
        state.handle_event(Event(SpeakerEvent.POWER_ON), "off")
    assert "No handler for event POWER_ON in state off" in caplog.text


def test_handler_result_is_returned():
    state = State()
    state.add_handler(SpeakerEvent.POWER_ON, lambda e: Transition(Speaker.ON))
    assert state.handle_event(Event(SpeakerEvent.POWER_ON)) == Transition(Speaker.ON)


def test_last_registration_wins():
    state = State()
    state.add_handler(SpeakerEvent.POWER_ON, lambda e: Transition(Speaker.ON))
    state.add_handler(SpeakerEvent.POWER_ON, lambda e: Transition(Speaker.FAULT))

    assert state.handle_event(Event(SpeakerEvent.POWER_ON)) == Transition(Speaker.FAULT)
    assert state.handled_events() == [SpeakerEvent.POWER_ON]


def test_handler_receives_event():
    received = []
    state = State()
    state.add_handler(SpeakerEvent.SET_VOLUME, received.append)

    event = Event(SpeakerEvent.SET_VOLUME, [42, "test"], {"ramp": True})
    state.handle_event(event)

    assert received == [event]
    assert received[0].args == (42, "test")
    assert received[0].kwargs["ramp"] is True


def _boom(event):
    raise RuntimeError("boom")


def test_handler_failure_propagates_by_default():
    state = State()
    state.add_handler(SpeakerEvent.POWER_ON, _boom)
    with pytest.raises(RuntimeError, match="boom"):
        state.handle_event(Event(SpeakerEvent.POWER_ON))


def test_handler_failure_swallowed_in_catch_mode():
    errors = []
    state = State()
    state.add_handler(SpeakerEvent.POWER_ON, _boom)

    result = state.handle_event(
        Event(SpeakerEvent.POWER_ON),
        catch_exceptions=True,
        on_error=lambda event, error: errors.append((event.type, str(error)))
    )

    assert result is None
    assert errors == [(SpeakerEvent.POWER_ON, "boom")]


def test_handler_returning_garbage_is_reported():
    state = State()
    state.add_handler(SpeakerEvent.POWER_ON, lambda e: Speaker.ON)
    with pytest.raises(TypeError, match="expected Transition or None"):
        state.handle_event(Event(SpeakerEvent.POWER_ON), catch_exceptions=True)


def test_hooks_run_in_registration_order():
    calls = []
    state = State()
    state.add_enter_hook(lambda s: calls.append(("enter-1", s)))
    state.add_enter_hook(lambda s: calls.append(("enter-2", s)))
    state.add_exit_hook(lambda s: calls.append(("exit-1", s)))

    state.run_enter_hooks(Speaker.ON)
    state.run_exit_hooks(Speaker.ON)

    assert calls == [("enter-1", Speaker.ON), ("enter-2", Speaker.ON), ("exit-1", Speaker.ON)]


def test_failing_hook_does_not_stop_others_in_catch_mode():
    calls = []
    state = State()
    state.add_enter_hook(_boom)
    state.add_enter_hook(calls.append)

    state.run_enter_hooks(Speaker.ON, catch_exceptions=True)
    assert calls == [Speaker.ON]

    with pytest.raises(RuntimeError):
        state.run_enter_hooks(Speaker.ON)


@pytest.mark.parametrize("timeout", [0, -1])
def test_non_positive_timeout_rejected(timeout):
    with pytest.raises(ConfigurationError):
        State(timeout=timeout)

import pytest

from timed_fsm import StateMachine

from .machines import HookLog, Speaker, SpeakerEvent, make_speaker_states


@pytest.fixture
def hook_log():
    return HookLog()


@pytest.fixture
def speaker_states():
    return make_speaker_states()


@pytest.fixture
def speaker(speaker_states):
    fsm = StateMachine(
        Speaker.OFF,
        speaker_states,
        timeout_event=SpeakerEvent.TIMEOUT,
        error_state=Speaker.FAULT,
        debug_mode=True,
        name="speaker"
    )
    yield fsm
    fsm.shutdown()

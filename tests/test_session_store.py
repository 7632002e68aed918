import pytest

from cctv_recorder.session_store import (
    InvalidTransitionError,
    RecordingSession,
    RecordingState,
    SessionStore,
)


def test_unknown_camera_is_idle():
    store = SessionStore()
    session = store.get("cam-1")
    assert session == RecordingSession(camera_id="cam-1")
    assert not session.is_recording
    assert store.snapshot() == {}


def test_full_lifecycle():
    store = SessionStore()
    store.update("cam-1", state=RecordingState.STARTING, is_starting=True)
    session = store.update(
        "cam-1", state=RecordingState.ACTIVE, ticket="rec-1", started_at=1000, is_starting=False
    )
    assert session.is_recording
    session = store.update("cam-1", state=RecordingState.STOPPING, is_stopping=True)
    assert session.ticket == "rec-1"
    idle = store.update("cam-1", state=RecordingState.IDLE)
    assert idle.state is RecordingState.IDLE
    assert idle.ticket is None
    assert store.snapshot() == {}


def test_state_accepts_string_values():
    store = SessionStore()
    session = store.update("cam-1", state="starting")
    assert session.state is RecordingState.STARTING


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ([], RecordingState.ACTIVE),
        ([], RecordingState.STOPPING),
        ([RecordingState.STARTING], RecordingState.STOPPING),
        ([RecordingState.STARTING, RecordingState.ACTIVE], RecordingState.IDLE),
    ],
)
def test_lifecycle_cannot_skip_states(path, target):
    store = SessionStore()
    for state in path:
        store.update("cam-1", state=state)
    with pytest.raises(InvalidTransitionError):
        store.update("cam-1", state=target)


def test_aborted_start_returns_to_idle():
    store = SessionStore()
    store.update("cam-1", state=RecordingState.STARTING)
    session = store.update("cam-1", state=RecordingState.IDLE, last_error="Camera not found")
    assert session.state is RecordingState.IDLE
    assert session.last_error == "Camera not found"
    assert store.get("cam-1").last_error == "Camera not found"


def test_reset_keeps_only_last_error():
    store = SessionStore()
    store.update("cam-1", state=RecordingState.STARTING, camera_name="Door")
    session = store.reset("cam-1", last_error="boom")
    assert session == RecordingSession(camera_id="cam-1", last_error="boom")
    store.reset("cam-1")
    assert "cam-1" not in store.snapshot()


def test_cameras_are_independent():
    store = SessionStore()
    store.update("cam-1", state=RecordingState.STARTING)
    store.update("cam-2", state=RecordingState.STARTING)
    store.update("cam-2", state=RecordingState.ACTIVE, ticket="rec-2")
    assert store.get("cam-1").state is RecordingState.STARTING
    assert store.get("cam-2").ticket == "rec-2"


def test_subscribers_observe_updates():
    store = SessionStore()
    seen: list[RecordingState] = []
    unsubscribe = store.subscribe(lambda session: seen.append(session.state))
    store.update("cam-1", state=RecordingState.STARTING)
    store.reset("cam-1")
    unsubscribe()
    store.update("cam-1", state=RecordingState.STARTING)
    assert seen == [RecordingState.STARTING, RecordingState.IDLE]


def test_to_dict_exposes_recording_flag():
    store = SessionStore()
    store.update("cam-1", state=RecordingState.STARTING)
    session = store.update("cam-1", state=RecordingState.ACTIVE, ticket="rec-1")
    payload = session.to_dict()
    assert payload["state"] == "active"
    assert payload["is_recording"] is True
    assert payload["ticket"] == "rec-1"

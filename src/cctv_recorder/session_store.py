"""Per-camera recording session state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class RecordingState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


_TRANSITIONS: dict[RecordingState, frozenset[RecordingState]] = {
    RecordingState.IDLE: frozenset({RecordingState.STARTING}),
    RecordingState.STARTING: frozenset({RecordingState.ACTIVE, RecordingState.IDLE}),
    RecordingState.ACTIVE: frozenset({RecordingState.STOPPING}),
    RecordingState.STOPPING: frozenset({RecordingState.IDLE}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a session update would skip a lifecycle state."""


@dataclass(frozen=True, slots=True)
class RecordingSession:
    """Immutable snapshot of one camera's recording session."""

    camera_id: str
    state: RecordingState = RecordingState.IDLE
    ticket: str | None = None
    started_at: int | None = None
    elapsed_seconds: int = 0
    last_error: str | None = None
    is_starting: bool = False
    is_stopping: bool = False
    camera_name: str | None = None
    close_pending: bool = False

    @property
    def is_recording(self) -> bool:
        return self.state in (RecordingState.ACTIVE, RecordingState.STOPPING)

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "state": self.state.value,
            "ticket": self.ticket,
            "started_at": self.started_at,
            "elapsed_seconds": self.elapsed_seconds,
            "last_error": self.last_error,
            "is_starting": self.is_starting,
            "is_stopping": self.is_stopping,
            "is_recording": self.is_recording,
            "camera_name": self.camera_name,
            "close_pending": self.close_pending,
        }


SessionListener = Callable[[RecordingSession], None]


class SessionStore:
    """Observable map of camera identifier to :class:`RecordingSession`.

    Cameras without an entry are idle. :meth:`update` enforces the lifecycle
    ``IDLE -> STARTING -> ACTIVE -> STOPPING -> IDLE`` (with ``STARTING -> IDLE``
    for aborted starts); :meth:`reset` always returns the camera to idle,
    keeping only the last error message when one is given.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, RecordingSession] = {}
        self._listeners: list[SessionListener] = []

    def get(self, camera_id: str) -> RecordingSession:
        session = self._sessions.get(camera_id)
        if session is None:
            return RecordingSession(camera_id=camera_id)
        return session

    def update(self, camera_id: str, **changes: object) -> RecordingSession:
        current = self.get(camera_id)
        target = changes.get("state", current.state)
        if not isinstance(target, RecordingState):
            target = RecordingState(target)
            changes["state"] = target
        if target != current.state and target not in _TRANSITIONS[current.state]:
            raise InvalidTransitionError(
                f"Camera {camera_id} cannot move from {current.state.value} to {target.value}"
            )
        updated = replace(current, **changes)
        if updated.state is RecordingState.IDLE:
            return self.reset(camera_id, last_error=updated.last_error)
        self._sessions[camera_id] = updated
        self._emit(updated)
        return updated

    def reset(self, camera_id: str, *, last_error: str | None = None) -> RecordingSession:
        idle = RecordingSession(camera_id=camera_id, last_error=last_error)
        if last_error is None:
            self._sessions.pop(camera_id, None)
        else:
            # idle entries are kept only to surface the last failure
            self._sessions[camera_id] = idle
        self._emit(idle)
        return idle

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def snapshot(self) -> dict[str, RecordingSession]:
        return dict(self._sessions)

    def _emit(self, session: RecordingSession) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Session listener failed for camera %s", session.camera_id)


__all__ = [
    "InvalidTransitionError",
    "RecordingSession",
    "RecordingState",
    "SessionListener",
    "SessionStore",
]

"""User-facing recording notifications with per-session de-duplication."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Iterable

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Distinct notification categories shown to operators."""

    CAMERA_OFFLINE = "camera_offline"
    AUTH_REQUIRED = "auth_required"
    START_FAILED = "start_failed"
    STOP_FAILED = "stop_failed"
    TICKET_ORPHANED = "ticket_orphaned"
    CAPTURE_BLOCKED = "capture_blocked"
    NO_FRAMES_CAPTURED = "no_frames_captured"
    CAPTURE_UNAVAILABLE = "capture_unavailable"
    UPLOAD_FAILED = "upload_failed"
    DOWNLOAD_FAILED = "download_failed"
    SAVE_DECISION_FAILED = "save_decision_failed"
    RECORDING_STARTED = "recording_started"
    RECORDING_SAVED = "recording_saved"


_INFO_KINDS = frozenset(
    {NotificationKind.RECORDING_STARTED, NotificationKind.RECORDING_SAVED}
)


@dataclass(slots=True)
class Notification:
    """A single message surfaced to the operator."""

    timestamp: float
    camera_id: str
    session: str
    kind: NotificationKind
    message: str
    severity: str = "error"
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "camera_id": self.camera_id,
            "session": self.session,
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


NotificationListener = Callable[[Notification], None]


class NotificationLog:
    """Append-only notification log, optionally persisted as JSON lines.

    A notification kind is emitted at most once per camera session; repeats
    return ``None`` so callers can report freely without flooding operators.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 200,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[Notification] = deque(maxlen=max_entries)
        self._seen: set[tuple[str, str, NotificationKind]] = set()
        self._listeners: list[NotificationListener] = []
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare notification log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def notify(
        self,
        camera_id: str,
        session: str,
        kind: NotificationKind,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> Notification | None:
        """Record a notification unless *kind* was already reported for *session*."""

        key = (camera_id, session, kind)
        severity = "info" if kind in _INFO_KINDS else "error"
        with self._lock:
            if key in self._seen:
                return None
            self._seen.add(key)
            entry = Notification(
                timestamp=time.time(),
                camera_id=camera_id,
                session=session,
                kind=kind,
                message=message,
                severity=severity,
                metadata=_clean_metadata(metadata),
            )
            self._entries.append(entry)
            self._append_persistent(entry)
            listeners = list(self._listeners)
        if severity == "error":
            logger.warning("[%s] %s", camera_id, message)
        else:
            logger.info("[%s] %s", camera_id, message)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Notification listener failed")
        return entry

    def forget_session(self, camera_id: str, session: str) -> None:
        with self._lock:
            self._seen = {
                key for key in self._seen if not (key[0] == camera_id and key[1] == session)
            }

    def tracked_sessions(self) -> set[tuple[str, str]]:
        """Return the camera sessions that still hold de-duplication state."""

        with self._lock:
            return {(camera_id, session) for camera_id, session, _kind in self._seen}

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    def tail(
        self,
        limit: int | None = None,
        *,
        camera_id: str | None = None,
    ) -> list[Notification]:
        with self._lock:
            entries: Iterable[Notification] = list(self._entries)
        if camera_id is not None:
            entries = [entry for entry in entries if entry.camera_id == camera_id]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            if len(entries) > limit_value:
                entries = entries[-limit_value:]
        return entries

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load notification log: %s", exc)
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = _deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    def _append_persistent(self, entry: Notification) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist notification: %s", exc)


def _deserialize(payload: object) -> Notification | None:
    if not isinstance(payload, dict):
        return None
    camera_id = payload.get("camera_id")
    message = payload.get("message")
    if not isinstance(camera_id, str) or not isinstance(message, str):
        return None
    try:
        kind = NotificationKind(payload.get("kind"))
    except ValueError:
        return None
    session = payload.get("session")
    timestamp = payload.get("timestamp")
    try:
        ts_value = float(timestamp) if timestamp is not None else time.time()
    except (TypeError, ValueError):
        ts_value = time.time()
    severity = payload.get("severity")
    metadata = payload.get("metadata")
    return Notification(
        timestamp=ts_value,
        camera_id=camera_id,
        session=session if isinstance(session, str) else "",
        kind=kind,
        message=message,
        severity=severity if isinstance(severity, str) else "error",
        metadata=metadata if isinstance(metadata, dict) else None,
    )


def _clean_metadata(
    metadata: dict[str, object | None] | None,
) -> dict[str, object | None] | None:
    if not metadata:
        return None
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    return cleaned or None


__all__ = ["Notification", "NotificationKind", "NotificationLog"]

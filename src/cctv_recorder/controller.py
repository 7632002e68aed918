"""Per-camera recording orchestration."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .canvas import Canvas
from .config import DEFAULT_CAPTURE_SETTINGS, CaptureSettings, StopPolicy
from .encoder import Artifact, Encoder, EncoderError
from .finalizer import ArtifactFinalizer, FinalizeOutcome, SaveDecisionRequest
from .ledger import (
    AuthRequiredError,
    CameraOfflineError,
    LedgerError,
    SessionSynchronizer,
    TicketOrphanedError,
)
from .notifications import NotificationKind, NotificationLog
from .sampler import CaptureBuffer, FrameSampler
from .session_store import RecordingSession, RecordingState, SessionStore
from .sources import FrameSource, UnsupportedSourceError
from .storage import generate_filename

logger = logging.getLogger(__name__)

ENCODER_START_TIMEOUT = 5.0


class StopRejectedError(RuntimeError):
    """Raised when a strict stop policy refuses to stop a recording."""


class CameraLiveness(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


def format_duration(seconds: int) -> str:
    """Return ``"{h}h {m}m {s}s"`` or ``"{m}m {s}s"`` for *seconds*."""

    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


def format_clock(seconds: int) -> str:
    """Return ``HH:MM:SS`` for an elapsed recording time."""

    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class _SourceRegistration:
    source: FrameSource
    camera_name: str | None = None
    fps: int | None = None


@dataclass(slots=True)
class _CameraRuntime:
    """Tasks and capture objects owned by one camera's recording."""

    camera_id: str
    buffer: CaptureBuffer | None = None
    sampler: FrameSampler | None = None
    encoder: Encoder | None = None
    tick_task: asyncio.Task[None] | None = None
    pending_outcome: FinalizeOutcome | None = None

    async def stop_tick(self) -> None:
        task = self.tick_task
        self.tick_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop_sampling(self) -> None:
        buffer = self.buffer
        if buffer is None or buffer.handle is None:
            return
        buffer.handle.cancel()
        await buffer.handle.wait_closed()


EncoderFactory = Callable[[Canvas, float], Encoder]


class RecordingController:
    """Coordinate recording sessions for any number of cameras.

    Each camera runs its own ``IDLE -> STARTING -> ACTIVE -> STOPPING -> IDLE``
    lifecycle in the shared :class:`SessionStore`. While a camera records with
    a registered frame source, a sampler paints the source into a private
    canvas and an encoder turns that canvas into a WebM artifact. Every ticket
    opened against the ledger is closed exactly once, by :meth:`stop` or by
    :meth:`aclose`.
    """

    def __init__(
        self,
        synchronizer: SessionSynchronizer,
        finalizer: ArtifactFinalizer,
        *,
        store: SessionStore | None = None,
        notifications: NotificationLog | None = None,
        capture: CaptureSettings = DEFAULT_CAPTURE_SETTINGS,
        stop_policy: StopPolicy = StopPolicy.WARN,
        clock: Callable[[], int] = _epoch_ms,
        encoder_factory: EncoderFactory | None = None,
    ) -> None:
        self._synchronizer = synchronizer
        self._finalizer = finalizer
        self._store = store or SessionStore()
        self._notifications = notifications or NotificationLog()
        self._capture = capture
        self._stop_policy = StopPolicy(stop_policy)
        self._clock = clock
        self._encoder_factory = encoder_factory or self._default_encoder
        self._sources: dict[str, _SourceRegistration] = {}
        self._runtimes: dict[str, _CameraRuntime] = {}
        self._attempts = itertools.count(1)
        self._closed = False

    # ------------------------------ properties -----------------------------
    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def notifications(self) -> NotificationLog:
        return self._notifications

    @property
    def finalizer(self) -> ArtifactFinalizer:
        return self._finalizer

    @property
    def stop_policy(self) -> StopPolicy:
        return self._stop_policy

    @stop_policy.setter
    def stop_policy(self, value: StopPolicy | str) -> None:
        self._stop_policy = StopPolicy(value)

    @property
    def closed(self) -> bool:
        return self._closed

    def session(self, camera_id: str) -> RecordingSession:
        return self._store.get(camera_id)

    def sessions(self) -> list[RecordingSession]:
        return list(self._store.snapshot().values())

    def capture_info(self, camera_id: str) -> dict[str, object] | None:
        runtime = self._runtimes.get(camera_id)
        if runtime is None or runtime.buffer is None:
            return None
        return runtime.buffer.to_dict()

    # ---------------------------- frame sources ----------------------------
    def register_frame_source(
        self,
        camera_id: str,
        source: FrameSource,
        *,
        camera_name: str | None = None,
        fps: int | None = None,
    ) -> None:
        if not source.capturable:
            raise UnsupportedSourceError(
                "Recording is not available for YouTube streams due to DRM restrictions"
            )
        self._sources[camera_id] = _SourceRegistration(source, camera_name, fps)
        logger.info("Registered %s frame source for camera %s", source.stream_type, camera_id)

    def unregister_frame_source(self, camera_id: str) -> FrameSource | None:
        registration = self._sources.pop(camera_id, None)
        if registration is None:
            return None
        logger.info("Unregistered frame source for camera %s", camera_id)
        return registration.source

    def frame_source(self, camera_id: str) -> FrameSource | None:
        registration = self._sources.get(camera_id)
        return registration.source if registration is not None else None

    # -------------------------------- start --------------------------------
    async def start(
        self,
        camera_id: str,
        *,
        stream_url: str,
        liveness: CameraLiveness | str = CameraLiveness.UNKNOWN,
        camera_name: str | None = None,
        fps: int | None = None,
    ) -> RecordingSession:
        """Begin recording *camera_id*.

        Returns the current session unchanged when the camera is already
        starting, recording or stopping. Raises :class:`CameraOfflineError`
        for offline cameras and re-raises ledger failures after returning the
        camera to idle.
        """

        if self._closed:
            raise RuntimeError("Recording controller is closed")
        current = self._store.get(camera_id)
        if current.state is not RecordingState.IDLE:
            logger.info(
                "Ignoring start for camera %s in state %s", camera_id, current.state.value
            )
            return current

        if CameraLiveness(liveness) is CameraLiveness.OFFLINE:
            message = "Cannot start recording: Camera is offline"
            self._notify_attempt(camera_id, NotificationKind.CAMERA_OFFLINE, message)
            raise CameraOfflineError(message)

        registration = self._sources.get(camera_id)
        name = camera_name or (registration.camera_name if registration else None)
        started_at = self._clock()
        self._store.update(
            camera_id,
            state=RecordingState.STARTING,
            is_starting=True,
            camera_name=name,
            last_error=None,
        )
        runtime = _CameraRuntime(camera_id)
        self._runtimes[camera_id] = runtime

        try:
            ticket = await self._synchronizer.open(camera_id, stream_url, started_at)
        except LedgerError as exc:
            self._discard_runtime(camera_id, runtime)
            if isinstance(exc, AuthRequiredError):
                kind = NotificationKind.AUTH_REQUIRED
            elif isinstance(exc, CameraOfflineError):
                kind = NotificationKind.CAMERA_OFFLINE
            else:
                kind = NotificationKind.START_FAILED
            self._notify_attempt(camera_id, kind, f"Failed to start recording: {exc}")
            if self._store.get(camera_id).state is RecordingState.STARTING:
                self._store.reset(camera_id, last_error=str(exc))
            raise
        except asyncio.CancelledError:
            self._discard_runtime(camera_id, runtime)
            if self._store.get(camera_id).state is RecordingState.STARTING:
                self._store.reset(camera_id)
            raise

        if self._closed or self._runtimes.get(camera_id) is not runtime:
            logger.warning(
                "Recording %s for camera %s opened after shutdown; closing it", ticket, camera_id
            )
            await self._close_quietly(ticket)
            return self._store.get(camera_id)

        self._store.update(
            camera_id,
            state=RecordingState.ACTIVE,
            ticket=ticket,
            started_at=started_at,
            elapsed_seconds=0,
            is_starting=False,
        )
        runtime.tick_task = asyncio.create_task(self._tick(camera_id, started_at))
        self._notify(camera_id, ticket, NotificationKind.RECORDING_STARTED, "Recording started")

        if registration is not None:
            await self._start_capture(
                runtime,
                registration,
                ticket,
                fps or registration.fps or self._capture.fps,
            )
        else:
            logger.info("Camera %s has no frame source; recording ticket only", camera_id)
        return self._store.get(camera_id)

    def _default_encoder(self, canvas: Canvas, fps: float) -> Encoder:
        return Encoder(
            canvas,
            fps=fps,
            bitrate=self._capture.bitrate,
            timeslice=self._capture.timeslice_seconds,
        )

    async def _start_capture(
        self,
        runtime: _CameraRuntime,
        registration: _SourceRegistration,
        ticket: str,
        fps: float,
    ) -> None:
        camera_id = runtime.camera_id
        canvas = Canvas(*self._capture.default_size)
        buffer = CaptureBuffer(canvas)
        encoder: Encoder | None = None
        try:
            encoder = self._encoder_factory(canvas, fps)
            await encoder.start()
            await encoder.wait_for_start(timeout=ENCODER_START_TIMEOUT)
        except (EncoderError, ValueError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Recording %s for camera %s continues without capture: %s", ticket, camera_id, exc
            )
            self._notify(
                camera_id,
                ticket,
                NotificationKind.CAPTURE_UNAVAILABLE,
                f"Video capture unavailable: {exc}",
            )
            if encoder is not None:
                await encoder.abort()
            return

        if self._runtimes.get(camera_id) is not runtime:
            await encoder.abort()
            return

        def _on_capture_error(exc: BaseException) -> None:
            if self._runtimes.get(camera_id) is runtime:
                self._store.update(camera_id, last_error=f"Frame capture failed: {exc}")

        sampler = FrameSampler(
            registration.source,
            buffer,
            on_error=_on_capture_error,
            default_size=self._capture.default_size,
        )
        runtime.buffer = buffer
        runtime.encoder = encoder
        runtime.sampler = sampler
        sampler.start(fps)
        logger.info("Capturing camera %s at %s fps", camera_id, fps)

    async def _tick(self, camera_id: str, started_at: int) -> None:
        interval = self._capture.tick_interval_seconds
        while True:
            await asyncio.sleep(interval)
            session = self._store.get(camera_id)
            if session.state is not RecordingState.ACTIVE or session.started_at != started_at:
                return
            elapsed = self._elapsed(session)
            if elapsed != session.elapsed_seconds:
                self._store.update(camera_id, elapsed_seconds=elapsed)

    def _elapsed(self, session: RecordingSession) -> int:
        if session.started_at is None:
            return session.elapsed_seconds
        computed = max(0, (self._clock() - session.started_at) // 1000)
        return max(session.elapsed_seconds, int(computed))

    # -------------------------------- stop ---------------------------------
    async def stop(
        self,
        camera_id: str,
        *,
        camera_status: str | None = None,
    ) -> FinalizeOutcome | None:
        """Stop recording *camera_id* and finalize its artifact.

        Returns ``None`` when a stop is already in progress. Raises
        :class:`TicketOrphanedError` when no ticket exists and re-raises the
        ledger error when the ticket could not be closed; the session then
        stays in ``STOPPING`` and a later call retries only the close.
        """

        session = self._store.get(camera_id)
        if session.is_stopping:
            logger.info("Stop already in progress for camera %s", camera_id)
            return None
        if session.ticket is None:
            message = "No recording ID found"
            self._notify_attempt(camera_id, NotificationKind.TICKET_ORPHANED, message)
            raise TicketOrphanedError(message)

        runtime = self._runtimes.get(camera_id)
        if runtime is None:
            runtime = _CameraRuntime(camera_id)
            self._runtimes[camera_id] = runtime

        if session.close_pending and runtime.pending_outcome is not None:
            self._store.update(camera_id, is_stopping=True)
            outcome = await self._finalizer.close(runtime.pending_outcome)
            return self._complete_stop(camera_id, runtime, outcome)

        if camera_status is not None and camera_status != "recording":
            if self._stop_policy is StopPolicy.STRICT:
                raise StopRejectedError(
                    f"Camera {camera_id} is {camera_status!r}, not recording"
                )
            logger.warning(
                "Stopping camera %s whose status is %r, not 'recording'", camera_id, camera_status
            )

        ticket = session.ticket
        self._store.update(camera_id, state=RecordingState.STOPPING, is_stopping=True)

        artifact, capture_error_seen = await self._stop_capture(runtime)
        await runtime.stop_tick()
        duration = format_duration(self._elapsed(self._store.get(camera_id)))

        if artifact is not None and not artifact.empty:
            filename = generate_filename(camera_id, session.camera_name, artifact.extension)
            request = SaveDecisionRequest(
                camera_id=camera_id,
                ticket=ticket,
                artifact=artifact,
                filename=filename,
                duration=duration,
                camera_name=session.camera_name,
            )
            outcome = await self._finalizer.finalize(request)
        else:
            if capture_error_seen:
                self._notify(
                    camera_id,
                    ticket,
                    NotificationKind.CAPTURE_BLOCKED,
                    "Recording failed: the stream blocked frame capture. "
                    "The camera must allow cross-origin access for recording.",
                )
            else:
                self._notify(
                    camera_id,
                    ticket,
                    NotificationKind.NO_FRAMES_CAPTURED,
                    "No video frames were captured. The stream may not be accessible.",
                )
            outcome = await self._finalizer.discard(camera_id, ticket, duration=duration)
        return self._complete_stop(camera_id, runtime, outcome)

    async def _stop_capture(self, runtime: _CameraRuntime) -> tuple[Artifact | None, bool]:
        encoder = runtime.encoder
        buffer = runtime.buffer
        artifact: Artifact | None = None
        if encoder is not None:
            encoder.request_flush()
            await asyncio.sleep(self._capture.flush_grace_seconds)
        await runtime.stop_sampling()
        if encoder is not None:
            try:
                artifact = await encoder.stop()
            except EncoderError as exc:
                logger.error("Encoder failed while stopping camera %s: %s", runtime.camera_id, exc)
            except Exception:
                logger.exception("Encoder crashed while stopping camera %s", runtime.camera_id)
        capture_error_seen = buffer.capture_error_seen if buffer is not None else False
        runtime.buffer = None
        runtime.sampler = None
        runtime.encoder = None
        return artifact, capture_error_seen

    def _complete_stop(
        self,
        camera_id: str,
        runtime: _CameraRuntime,
        outcome: FinalizeOutcome,
    ) -> FinalizeOutcome:
        if self._closed or self._runtimes.get(camera_id) is not runtime:
            logger.info("Discarding stop result for camera %s after shutdown", camera_id)
            self._notifications.forget_session(camera_id, outcome.ticket)
            return outcome
        if outcome.closed:
            self._runtimes.pop(camera_id, None)
            self._store.reset(camera_id)
            if outcome.location or outcome.local_path:
                self._notify(
                    camera_id,
                    outcome.ticket,
                    NotificationKind.RECORDING_SAVED,
                    f"Recording saved ({outcome.duration})",
                )
            logger.info("Recording %s for camera %s finished", outcome.ticket, camera_id)
            self._notifications.forget_session(camera_id, outcome.ticket)
            return outcome

        error = outcome.close_error
        if error is None:
            raise RuntimeError(f"Recording {outcome.ticket} was neither closed nor failed")
        if isinstance(error, TicketOrphanedError):
            self._runtimes.pop(camera_id, None)
            self._notify(
                camera_id,
                outcome.ticket,
                NotificationKind.TICKET_ORPHANED,
                f"Recording was no longer known to the server: {error}",
            )
            self._notifications.forget_session(camera_id, outcome.ticket)
            self._store.reset(camera_id, last_error=str(error))
            raise error
        runtime.pending_outcome = outcome
        self._store.update(
            camera_id,
            is_stopping=False,
            close_pending=True,
            last_error=str(error),
        )
        self._notify(
            camera_id,
            outcome.ticket,
            NotificationKind.STOP_FAILED,
            f"Failed to stop recording: {error}",
        )
        raise error

    # ------------------------------ teardown -------------------------------
    async def aclose(self) -> None:
        """Cancel every capture loop and timer and close all open tickets."""

        if self._closed:
            return
        self._closed = True
        runtimes = list(self._runtimes.values())
        self._runtimes.clear()
        pending = {
            runtime.pending_outcome.ticket: runtime.pending_outcome
            for runtime in runtimes
            if runtime.pending_outcome is not None
        }
        for runtime in runtimes:
            await runtime.stop_tick()
            await runtime.stop_sampling()
            if runtime.encoder is not None:
                await runtime.encoder.abort()
            runtime.buffer = None
            runtime.sampler = None
            runtime.encoder = None
        await self._finalizer.gate.aclose()
        for ticket, camera_id in self._synchronizer.open_tickets().items():
            logger.info("Closing recording %s for camera %s during shutdown", ticket, camera_id)
            outcome = pending.get(ticket)
            if outcome is not None:
                await self._close_quietly(ticket, outcome.location, size_mb=outcome.size_mb)
            else:
                await self._close_quietly(ticket)
            self._notifications.forget_session(camera_id, ticket)
        for camera_id in list(self._store.snapshot()):
            self._store.reset(camera_id)

    # ------------------------------- helpers -------------------------------
    def _discard_runtime(self, camera_id: str, runtime: _CameraRuntime) -> None:
        if self._runtimes.get(camera_id) is runtime:
            del self._runtimes[camera_id]

    async def _close_quietly(
        self,
        ticket: str,
        location: str | None = None,
        *,
        size_mb: float | None = None,
    ) -> None:
        try:
            await self._synchronizer.close(ticket, location, size_mb=size_mb)
        except LedgerError as exc:
            logger.warning("Failed to close recording %s: %s", ticket, exc)

    def _notify(self, camera_id: str, session: str, kind: NotificationKind, message: str) -> None:
        self._notifications.notify(camera_id, session, kind, message)

    def _notify_attempt(self, camera_id: str, kind: NotificationKind, message: str) -> None:
        attempt = f"attempt-{next(self._attempts)}"
        self._notifications.notify(camera_id, attempt, kind, message)
        self._notifications.forget_session(camera_id, attempt)


__all__ = [
    "CameraLiveness",
    "RecordingController",
    "StopRejectedError",
    "format_clock",
    "format_duration",
]

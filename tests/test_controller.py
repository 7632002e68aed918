import asyncio
import re
from pathlib import Path

import numpy as np
import pytest

from cctv_recorder.canvas import Canvas
from cctv_recorder.config import CaptureSettings, StopPolicy
from cctv_recorder.controller import (
    CameraLiveness,
    RecordingController,
    StopRejectedError,
    format_clock,
    format_duration,
)
from cctv_recorder.encoder import Artifact, EncoderError
from cctv_recorder.finalizer import (
    ArtifactFinalizer,
    PendingDecisions,
    SaveDecision,
    SaveDecisionGate,
    fixed_decision,
)
from cctv_recorder.ledger import (
    AuthRequiredError,
    CameraOfflineError,
    CloseResult,
    NetworkError,
    SessionSynchronizer,
    TicketOrphanedError,
)
from cctv_recorder.notifications import NotificationKind, NotificationLog
from cctv_recorder.session_store import RecordingState
from cctv_recorder.sources import CaptureBlockedError, FrameSource, UnsupportedSourceError, EmbedFrameSource
from cctv_recorder.storage import LocalSaver, StoredArtifact


def run_async(coro):
    return asyncio.run(coro)


CAPTURE = CaptureSettings(fps=50, tick_interval_seconds=0.01, flush_grace_seconds=0)


class _FakeLedger:
    def __init__(self) -> None:
        self.opened: list[tuple[str, str, int]] = []
        self.closed: list[tuple[str, str | None, float | None]] = []
        self.open_errors: list[Exception] = []
        self.close_errors: list[Exception] = []
        self.open_gate: asyncio.Event | None = None
        self.counter = 0

    async def open(self, camera_id, stream_locator, started_at):
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_errors:
            raise self.open_errors.pop(0)
        self.counter += 1
        self.opened.append((camera_id, stream_locator, started_at))
        return f"rec-{self.counter}"

    async def close(self, ticket, artifact_path, *, size_mb=None):
        if self.close_errors:
            raise self.close_errors.pop(0)
        self.closed.append((ticket, artifact_path, size_mb))
        return CloseResult(ticket=ticket, duration="0m 1s", artifact_url=artifact_path)


class _FakeStorage:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.puts: list[str] = []
        self.error = error

    async def put(self, path, data, content_type):
        if self.error is not None:
            raise self.error
        self.puts.append(path)
        return StoredArtifact(path=path, url=f"https://storage.example/{path}")


class _FakeEncoder:
    def __init__(
        self,
        canvas: Canvas,
        fps: float,
        *,
        fail_start: bool = False,
        stop_error: Exception | None = None,
    ) -> None:
        self.canvas = canvas
        self.fps = fps
        self.fail_start = fail_start
        self.stop_error = stop_error
        self.frames = 0
        self.flushes = 0
        self.stopped = False
        self.aborted = False
        self._remove = None

    async def start(self) -> None:
        self._remove = self.canvas.add_listener(self._on_frame)

    async def wait_for_start(self, timeout=None) -> None:
        if self.fail_start:
            raise EncoderError("No usable WebM video encoder available")

    def _on_frame(self, frame) -> None:
        self.frames += 1

    def request_flush(self) -> None:
        self.flushes += 1

    def _detach(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None

    async def stop(self):
        self._detach()
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error
        if self.frames == 0:
            return None
        return Artifact(
            data=b"w" * 1024 * self.frames,
            mime_type="video/webm;codecs=vp8",
            frame_count=self.frames,
        )

    async def abort(self) -> None:
        self._detach()
        self.aborted = True


class _StubSource(FrameSource):
    stream_type = "mjpeg"

    def __init__(self, *, ready: bool = True, error: Exception | None = None) -> None:
        self.is_ready = ready
        self.error = error

    @property
    def ready(self) -> bool:
        return self.is_ready

    @property
    def natural_width(self) -> int:
        return 32

    @property
    def natural_height(self) -> int:
        return 24

    def draw_into(self, canvas: Canvas) -> None:
        if self.error is not None:
            raise self.error
        canvas.draw_image(np.full((24, 32, 3), 60, dtype=np.uint8))


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000_000

    def __call__(self) -> int:
        return self.now


class _Harness:
    def __init__(
        self,
        *,
        resolver=None,
        stop_policy: StopPolicy = StopPolicy.WARN,
        fail_encoder: bool = False,
        encoder_stop_error: Exception | None = None,
        storage: _FakeStorage | None = None,
        saver: LocalSaver | None = None,
    ) -> None:
        self.ledger = _FakeLedger()
        self.storage = storage or _FakeStorage()
        self.notifications = NotificationLog()
        self.clock = _Clock()
        self.encoders: list[_FakeEncoder] = []
        self.synchronizer = SessionSynchronizer(self.ledger)
        self.gate = SaveDecisionGate(resolver or fixed_decision(SaveDecision()))
        self.finalizer = ArtifactFinalizer(
            self.synchronizer,
            self.gate,
            storage=self.storage,
            saver=saver,
            notifications=self.notifications,
        )

        def factory(canvas: Canvas, fps: float) -> _FakeEncoder:
            encoder = _FakeEncoder(
                canvas, fps, fail_start=fail_encoder, stop_error=encoder_stop_error
            )
            self.encoders.append(encoder)
            return encoder

        self.controller = RecordingController(
            self.synchronizer,
            self.finalizer,
            notifications=self.notifications,
            capture=CAPTURE,
            stop_policy=stop_policy,
            clock=self.clock,
            encoder_factory=factory,
        )

    def kinds(self, camera_id: str | None = None) -> list[NotificationKind]:
        return [entry.kind for entry in self.notifications.tail(camera_id=camera_id)]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def test_format_helpers():
    assert format_duration(65) == "1m 5s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(-3) == "0m 0s"
    assert format_clock(3725) == "01:02:05"


def test_recording_with_frames_is_uploaded_downloaded_and_closed(tmp_path: Path):
    async def _test() -> None:
        harness = _Harness(
            resolver=fixed_decision(SaveDecision(upload_to_remote=True, download_local=True)),
            saver=LocalSaver(tmp_path),
        )
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource(), camera_name="Front Door")

        session = await controller.start(
            "cam-1", stream_url="http://cam/video", liveness=CameraLiveness.ONLINE
        )
        assert session.state is RecordingState.ACTIVE
        assert session.ticket == "rec-1"
        assert session.started_at == harness.clock.now
        assert harness.ledger.opened == [("cam-1", "http://cam/video", harness.clock.now)]

        await _wait_for(lambda: harness.encoders[0].frames >= 3)
        info = controller.capture_info("cam-1")
        assert info["first_frame_seen"] is True
        assert (info["width"], info["height"]) == (32, 24)

        outcome = await controller.stop("cam-1", camera_status="recording")
        assert outcome is not None and outcome.closed
        encoder = harness.encoders[0]
        assert encoder.flushes == 1
        assert encoder.stopped

        assert len(harness.storage.puts) == 1
        path = harness.storage.puts[0]
        assert path.startswith("record/cam-1/rec-1_cam-1_Front_Door_")
        assert path.endswith(".webm")
        ticket, location, size_mb = harness.ledger.closed[0]
        assert (ticket, location) == ("rec-1", path)
        assert size_mb is not None
        assert len(harness.ledger.closed) == 1

        saved = list(tmp_path.iterdir())
        assert len(saved) == 1
        assert re.fullmatch(
            r"cam-1_Front_Door_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}\.webm", saved[0].name
        )
        assert outcome.local_path == str(saved[0])
        assert saved[0].read_bytes() == b"w" * 1024 * encoder.frames

        session = controller.session("cam-1")
        assert session.state is RecordingState.IDLE
        assert session.ticket is None
        assert controller.capture_info("cam-1") is None
        assert harness.kinds() == [
            NotificationKind.RECORDING_STARTED,
            NotificationKind.RECORDING_SAVED,
        ]
        assert harness.notifications.tracked_sessions() == set()

    run_async(_test())


def test_source_without_frames_closes_once_without_artifact():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource(ready=False))
        await controller.start("cam-1", stream_url="http://cam/video")
        await asyncio.sleep(0.05)
        outcome = await controller.stop("cam-1")
        assert outcome is not None and outcome.closed
        assert harness.ledger.closed == [("rec-1", None, None)]
        assert harness.storage.puts == []
        assert NotificationKind.NO_FRAMES_CAPTURED in harness.kinds()
        assert controller.session("cam-1").state is RecordingState.IDLE

    run_async(_test())


def test_blocked_capture_is_reported_once():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        source = _StubSource(error=CaptureBlockedError("tainted canvas"))
        controller.register_frame_source("cam-1", source)
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: controller.session("cam-1").last_error is not None)
        assert controller.session("cam-1").last_error == "Frame capture failed: tainted canvas"
        await asyncio.sleep(0.05)

        await controller.stop("cam-1")
        assert harness.ledger.closed == [("rec-1", None, None)]
        kinds = harness.kinds()
        assert kinds.count(NotificationKind.CAPTURE_BLOCKED) == 1
        assert NotificationKind.NO_FRAMES_CAPTURED not in kinds

    run_async(_test())


def test_recording_without_source_keeps_ticket_only():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        await controller.start("cam-1", stream_url="https://youtu.be/abc")
        assert harness.encoders == []
        assert controller.capture_info("cam-1") is None
        await controller.stop("cam-1")
        assert harness.ledger.closed == [("rec-1", None, None)]

    run_async(_test())


def test_non_capturable_sources_are_rejected():
    harness = _Harness()
    with pytest.raises(UnsupportedSourceError, match="DRM"):
        harness.controller.register_frame_source("cam-1", EmbedFrameSource("https://youtu.be/x"))
    assert harness.controller.frame_source("cam-1") is None


def test_encoder_unavailable_keeps_recording():
    async def _test() -> None:
        harness = _Harness(fail_encoder=True)
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        session = await controller.start("cam-1", stream_url="http://cam/video")
        assert session.state is RecordingState.ACTIVE
        assert harness.encoders[0].aborted
        assert NotificationKind.CAPTURE_UNAVAILABLE in harness.kinds()
        await controller.stop("cam-1")
        assert harness.ledger.closed == [("rec-1", None, None)]

    run_async(_test())


def test_offline_camera_cannot_start():
    async def _test() -> None:
        harness = _Harness()
        with pytest.raises(CameraOfflineError, match="Camera is offline"):
            await harness.controller.start(
                "cam-1", stream_url="http://cam/video", liveness="offline"
            )
        assert harness.ledger.opened == []
        assert harness.kinds() == [NotificationKind.CAMERA_OFFLINE]
        assert harness.controller.session("cam-1").state is RecordingState.IDLE

    run_async(_test())


def test_open_failure_returns_camera_to_idle():
    async def _test() -> None:
        harness = _Harness()
        harness.ledger.open_errors.append(AuthRequiredError("Not authenticated"))
        with pytest.raises(AuthRequiredError):
            await harness.controller.start("cam-1", stream_url="http://cam/video")
        session = harness.controller.session("cam-1")
        assert session.state is RecordingState.IDLE
        assert session.last_error == "Not authenticated"
        assert harness.kinds() == [NotificationKind.AUTH_REQUIRED]

        session = await harness.controller.start("cam-1", stream_url="http://cam/video")
        assert session.state is RecordingState.ACTIVE
        assert session.last_error is None

    run_async(_test())


def test_duplicate_start_is_ignored():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        harness.ledger.open_gate = asyncio.Event()
        first = asyncio.create_task(controller.start("cam-1", stream_url="http://cam/video"))
        await asyncio.sleep(0.01)
        pending = await controller.start("cam-1", stream_url="http://cam/video")
        assert pending.state is RecordingState.STARTING
        assert pending.is_starting

        harness.ledger.open_gate.set()
        session = await first
        again = await controller.start("cam-1", stream_url="http://cam/video")
        assert again.ticket == session.ticket
        assert len(harness.ledger.opened) == 1

    run_async(_test())


def test_stop_without_ticket_is_orphaned():
    async def _test() -> None:
        harness = _Harness()
        with pytest.raises(TicketOrphanedError, match="No recording ID found"):
            await harness.controller.stop("cam-1")
        assert harness.kinds() == [NotificationKind.TICKET_ORPHANED]
        assert harness.ledger.closed == []

    run_async(_test())


def test_duplicate_stop_while_decision_pending():
    async def _test() -> None:
        pending = PendingDecisions()
        harness = _Harness(resolver=pending)
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)

        stop_task = asyncio.create_task(controller.stop("cam-1"))
        await _wait_for(lambda: bool(pending.waiting()))
        session = controller.session("cam-1")
        assert session.state is RecordingState.STOPPING
        assert session.is_stopping
        assert await controller.stop("cam-1") is None

        request = pending.waiting()[0]
        assert request.camera_id == "cam-1"
        assert request.filename.endswith(".webm")
        pending.resolve(request.request_id, SaveDecision())
        outcome = await stop_task
        assert outcome.closed
        assert len(harness.ledger.closed) == 1

    run_async(_test())


def test_decisions_are_serialised_across_cameras():
    async def _test() -> None:
        pending = PendingDecisions()
        harness = _Harness(resolver=pending)
        controller = harness.controller
        for camera_id in ("cam-1", "cam-2"):
            controller.register_frame_source(camera_id, _StubSource())
            await controller.start(camera_id, stream_url=f"http://{camera_id}/video")
        await _wait_for(lambda: all(encoder.frames >= 1 for encoder in harness.encoders))

        first = asyncio.create_task(controller.stop("cam-1"))
        await _wait_for(lambda: bool(pending.waiting()))
        second = asyncio.create_task(controller.stop("cam-2"))
        await _wait_for(lambda: len(harness.gate.pending()) == 2)
        assert [request.camera_id for request in pending.waiting()] == ["cam-1"]

        pending.resolve(pending.waiting()[0].request_id, SaveDecision())
        await first
        await _wait_for(lambda: bool(pending.waiting()))
        assert [request.camera_id for request in pending.waiting()] == ["cam-2"]
        pending.cancel(pending.waiting()[0].request_id)
        await second

        assert len(harness.storage.puts) == 1
        closed = {ticket: location for ticket, location, _size in harness.ledger.closed}
        assert set(closed) == {"rec-1", "rec-2"}
        assert closed["rec-2"] is None

    run_async(_test())


def test_close_failure_can_be_retried():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)

        harness.ledger.close_errors.append(NetworkError("ledger unreachable"))
        with pytest.raises(NetworkError):
            await controller.stop("cam-1")
        session = controller.session("cam-1")
        assert session.state is RecordingState.STOPPING
        assert session.close_pending
        assert not session.is_stopping
        assert session.last_error == "ledger unreachable"
        assert NotificationKind.STOP_FAILED in harness.kinds()
        assert harness.ledger.closed == []

        outcome = await controller.stop("cam-1")
        assert outcome.closed
        assert len(harness.storage.puts) == 1
        assert harness.ledger.closed[0][1] == harness.storage.puts[0]
        assert controller.session("cam-1").state is RecordingState.IDLE

    run_async(_test())


def test_close_of_unknown_ticket_resets_session():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        await controller.start("cam-1", stream_url="http://cam/video")
        harness.ledger.close_errors.append(TicketOrphanedError("Recording not found"))
        with pytest.raises(TicketOrphanedError):
            await controller.stop("cam-1")
        session = controller.session("cam-1")
        assert session.state is RecordingState.IDLE
        assert session.last_error == "Recording not found"
        assert not harness.synchronizer.open_tickets()

    run_async(_test())


def test_strict_policy_rejects_stop_of_non_recording_camera():
    async def _test() -> None:
        harness = _Harness(stop_policy=StopPolicy.STRICT)
        controller = harness.controller
        await controller.start("cam-1", stream_url="http://cam/video")
        with pytest.raises(StopRejectedError):
            await controller.stop("cam-1", camera_status="online")
        assert controller.session("cam-1").state is RecordingState.ACTIVE

        controller.stop_policy = "warn"
        outcome = await controller.stop("cam-1", camera_status="online")
        assert outcome.closed

    run_async(_test())


def test_elapsed_time_never_decreases():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        await controller.start("cam-1", stream_url="http://cam/video")
        started = harness.clock.now
        harness.clock.now = started + 2_500
        await _wait_for(lambda: controller.session("cam-1").elapsed_seconds == 2)
        harness.clock.now = started + 500
        await asyncio.sleep(0.05)
        assert controller.session("cam-1").elapsed_seconds == 2
        harness.clock.now = started + 65_000
        outcome = await controller.stop("cam-1")
        assert outcome.duration == "1m 5s"

    run_async(_test())


def test_teardown_closes_every_open_ticket():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam-1/video")
        await controller.start("cam-2", stream_url="http://cam-2/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)

        await controller.aclose()
        assert sorted(ticket for ticket, _location, _size in harness.ledger.closed) == [
            "rec-1",
            "rec-2",
        ]
        assert harness.encoders[0].aborted
        assert controller.sessions() == []
        frames = harness.encoders[0].frames
        await asyncio.sleep(0.05)
        assert harness.encoders[0].frames == frames

        with pytest.raises(RuntimeError):
            await controller.start("cam-1", stream_url="http://cam-1/video")

    run_async(_test())


def test_teardown_during_pending_decision_closes_once():
    async def _test() -> None:
        pending = PendingDecisions()
        harness = _Harness(resolver=pending)
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)
        stop_task = asyncio.create_task(controller.stop("cam-1"))
        await _wait_for(lambda: bool(pending.waiting()))

        await controller.aclose()
        await stop_task
        assert [ticket for ticket, _location, _size in harness.ledger.closed] == ["rec-1"]
        assert harness.storage.puts == []

    run_async(_test())


def test_open_completing_after_teardown_is_closed():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        harness.ledger.open_gate = asyncio.Event()
        start_task = asyncio.create_task(controller.start("cam-1", stream_url="http://cam/video"))
        await asyncio.sleep(0.01)
        await controller.aclose()

        harness.ledger.open_gate.set()
        session = await start_task
        assert session.state is RecordingState.IDLE
        assert harness.ledger.closed == [("rec-1", None, None)]
        assert not harness.synchronizer.open_tickets()

    run_async(_test())


def test_cameras_record_independently():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        await controller.start("cam-1", stream_url="http://cam-1/video")
        await controller.start("cam-2", stream_url="http://cam-2/video")
        await controller.stop("cam-1")
        assert controller.session("cam-1").state is RecordingState.IDLE
        assert controller.session("cam-2").state is RecordingState.ACTIVE
        assert controller.session("cam-2").ticket == "rec-2"

    run_async(_test())


def test_failing_save_prompt_still_closes_ticket():
    async def _test() -> None:
        async def resolver(request):
            raise RuntimeError("dialog crashed")

        harness = _Harness(resolver=resolver)
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)

        outcome = await controller.stop("cam-1")
        assert outcome is not None and outcome.closed
        assert outcome.decision is None
        assert harness.ledger.closed == [("rec-1", None, None)]
        assert harness.storage.puts == []
        assert NotificationKind.SAVE_DECISION_FAILED in harness.kinds()
        assert controller.session("cam-1").state is RecordingState.IDLE

        session = await controller.start("cam-1", stream_url="http://cam/video")
        assert session.ticket == "rec-2"
        await controller.aclose()

    run_async(_test())


def test_unexpected_storage_error_still_closes_ticket():
    async def _test() -> None:
        harness = _Harness(storage=_FakeStorage(error=ConnectionResetError("socket died")))
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)

        outcome = await controller.stop("cam-1")
        assert outcome is not None and outcome.closed
        assert outcome.location is None
        assert outcome.upload_error == "socket died"
        assert harness.ledger.closed == [("rec-1", None, None)]
        assert NotificationKind.UPLOAD_FAILED in harness.kinds()
        session = controller.session("cam-1")
        assert session.state is RecordingState.IDLE
        assert not session.is_stopping

    run_async(_test())


def test_encoder_crash_on_stop_closes_without_artifact():
    async def _test() -> None:
        harness = _Harness(encoder_stop_error=RuntimeError("worker crashed"))
        controller = harness.controller
        controller.register_frame_source("cam-1", _StubSource())
        await controller.start("cam-1", stream_url="http://cam/video")
        await _wait_for(lambda: harness.encoders[0].frames >= 1)

        outcome = await controller.stop("cam-1")
        assert outcome is not None and outcome.closed
        assert harness.ledger.closed == [("rec-1", None, None)]
        assert harness.storage.puts == []
        assert NotificationKind.NO_FRAMES_CAPTURED in harness.kinds()
        assert controller.session("cam-1").state is RecordingState.IDLE

    run_async(_test())


def test_rejected_attempts_do_not_accumulate_tracking_state():
    async def _test() -> None:
        harness = _Harness()
        controller = harness.controller
        for _ in range(3):
            with pytest.raises(CameraOfflineError):
                await controller.start("cam-1", stream_url="http://cam/video", liveness="offline")
        with pytest.raises(TicketOrphanedError):
            await controller.stop("cam-1")
        assert harness.kinds().count(NotificationKind.CAMERA_OFFLINE) == 3
        assert harness.notifications.tracked_sessions() == set()

        await controller.start("cam-1", stream_url="http://cam/video")
        assert harness.notifications.tracked_sessions() == {("cam-1", "rec-1")}
        await controller.stop("cam-1")
        assert harness.notifications.tracked_sessions() == set()

    run_async(_test())

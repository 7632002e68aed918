"""Fixed-rate frame sampling from a live source into a canvas."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from .canvas import DEFAULT_CANVAS_SIZE, Canvas
from .sources import FrameSource

logger = logging.getLogger(__name__)


FirstFrameCallback = Callable[[int, int], None]
ErrorCallback = Callable[[BaseException], None]


@dataclass(slots=True)
class CaptureBuffer:
    """Canvas and counters owned by one recording session."""

    canvas: Canvas
    handle: "CaptureHandle | None" = None
    frame_count: int = 0
    first_frame_seen: bool = False
    capture_error_seen: bool = False
    capture_error: BaseException | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "width": self.canvas.width,
            "height": self.canvas.height,
            "frame_count": self.frame_count,
            "first_frame_seen": self.first_frame_seen,
            "capture_error_seen": self.capture_error_seen,
            "capture_error": str(self.capture_error) if self.capture_error else None,
        }


class CaptureHandle:
    """Cancellation handle returned by :meth:`FrameSampler.start`."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def running(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    async def wait_closed(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class FrameSampler:
    """Paint a frame source into a canvas at a fixed frame rate.

    Each tick resizes the canvas to the source's natural dimensions (falling
    back to ``default_size`` when the source does not report any) and draws
    the current frame. Ticks are skipped while the source is not ready. A
    failing draw is reported once through ``on_error`` and sampling continues,
    so a source that recovers still contributes frames.
    """

    def __init__(
        self,
        source: FrameSource,
        buffer: CaptureBuffer,
        *,
        on_first_frame: FirstFrameCallback | None = None,
        on_error: ErrorCallback | None = None,
        default_size: tuple[int, int] = DEFAULT_CANVAS_SIZE,
    ) -> None:
        self._source = source
        self._buffer = buffer
        self._on_first_frame = on_first_frame
        self._on_error = on_error
        self._default_size = default_size

    @property
    def buffer(self) -> CaptureBuffer:
        return self._buffer

    def start(self, fps: float) -> CaptureHandle:
        if fps <= 0:
            raise ValueError("Sampling fps must be positive")
        interval = 1.0 / float(fps)
        task = asyncio.create_task(self._run(interval))
        handle = CaptureHandle(task)
        self._buffer.handle = handle
        return handle

    async def _run(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            self.tick()
            next_tick += interval
            delay = next_tick - loop.time()
            if delay < 0:
                # fell behind, skip the missed ticks instead of bursting
                next_tick = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    def tick(self) -> bool:
        """Sample one frame. Returns ``True`` when a frame was painted."""

        source = self._source
        if not source.ready:
            return False
        canvas = self._buffer.canvas
        width = source.natural_width or self._default_size[0]
        height = source.natural_height or self._default_size[1]
        canvas.resize(width, height)
        painted_before = canvas.frames_painted
        try:
            source.draw_into(canvas)
        except Exception as exc:
            self._report_error(exc)
            return False
        if canvas.frames_painted == painted_before:
            return False
        self._buffer.frame_count += 1
        if not self._buffer.first_frame_seen:
            self._buffer.first_frame_seen = True
            logger.info("First frame captured at %dx%d", canvas.width, canvas.height)
            if self._on_first_frame is not None:
                self._on_first_frame(canvas.width, canvas.height)
        return True

    def _report_error(self, exc: BaseException) -> None:
        if self._buffer.capture_error_seen:
            return
        self._buffer.capture_error_seen = True
        self._buffer.capture_error = exc
        logger.warning("Frame capture failed: %s", exc)
        if self._on_error is not None:
            self._on_error(exc)


__all__ = [
    "CaptureBuffer",
    "CaptureHandle",
    "FrameSampler",
]

"""WebM encoding of painted canvas frames with PyAV."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Sequence

import av
import numpy as np

from .canvas import Canvas

logger = logging.getLogger(__name__)

DEFAULT_BITRATE = 2_500_000
DEFAULT_TIMESLICE = 1.0
WEBM_EXTENSION = "webm"

_TIME_BASE = Fraction(1, 1000)


class EncoderError(RuntimeError):
    """Raised when the encoder cannot produce WebM output."""


@dataclass(frozen=True, slots=True)
class CodecChoice:
    """A WebM video codec and the media type it produces."""

    name: str | None
    mime_type: str
    extension: str = WEBM_EXTENSION


VIDEO_CODEC_CANDIDATES: tuple[CodecChoice, ...] = (
    CodecChoice("libvpx-vp9", "video/webm;codecs=vp9"),
    CodecChoice("libvpx", "video/webm;codecs=vp8"),
)

# ``name=None`` lets the container pick its own default video codec.
CONTAINER_DEFAULT_CODEC = CodecChoice(None, "video/webm")


@dataclass(frozen=True, slots=True)
class Artifact:
    """Encoded recording held in memory until it is saved or uploaded."""

    data: bytes
    mime_type: str
    extension: str = WEBM_EXTENSION
    codec: str | None = None
    frame_count: int = 0

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def size_mb(self) -> float:
        return round(self.size / (1024 * 1024), 2)

    @property
    def empty(self) -> bool:
        return not self.data

    def to_dict(self) -> dict[str, object]:
        return {
            "mime_type": self.mime_type,
            "extension": self.extension,
            "codec": self.codec,
            "frame_count": self.frame_count,
            "size": self.size,
        }


def _probe_codec(name: str) -> bool:
    try:
        context = av.CodecContext.create(name, "w")
    except (av.FFmpegError, ValueError) as exc:
        logger.info("Video codec %s unavailable: %s", name, exc)
        return False
    return bool(getattr(context, "is_encoder", True))


def negotiate_codec(
    candidates: Sequence[CodecChoice] = VIDEO_CODEC_CANDIDATES,
    probe: Callable[[str], bool] = _probe_codec,
) -> CodecChoice:
    """Return the first supported candidate, or the container default."""

    attempted: list[str] = []
    for candidate in candidates:
        if candidate.name is None:
            return candidate
        attempted.append(candidate.name)
        if probe(candidate.name):
            return candidate
    logger.warning(
        "No preferred WebM codec available (attempted codecs: %s); using container default",
        ", ".join(attempted) or "none",
    )
    return CONTAINER_DEFAULT_CODEC


def _compose_codec_failure_message(
    last_error: Exception | str | None, codec: str | None
) -> str:
    if isinstance(last_error, Exception):
        detail = str(last_error).strip() or None
    elif isinstance(last_error, str):
        detail = last_error.strip() or None
    else:
        detail = None
    if detail is None:
        detail = "No usable WebM video encoder available"
    suffix = f" (codec: {codec})" if codec else ""
    return (
        f"{detail.rstrip('.')}{suffix}. No video file was created. "
        "Install FFmpeg with libvpx support so VP8 or VP9 encoding is available."
    )


def _encoding_options(codec: str, bitrate: int) -> dict[str, str]:
    options = {"bitrate": str(bitrate)}
    if codec == "libvpx":
        options["deadline"] = "realtime"
        options["cpu-used"] = "8"
    elif codec == "libvpx-vp9":
        options["deadline"] = "realtime"
        options["cpu-used"] = "5"
        options["row-mt"] = "1"
    return options


def _even(value: int) -> int:
    return max(2, int(value) - int(value) % 2)


class _ChunkSink:
    """Write-only byte sink given to the muxer.

    The sink deliberately exposes no ``seek`` so the WebM muxer writes a live,
    streamable file that can be cut into chunks at any point.
    """

    def __init__(self) -> None:
        self._pending = bytearray()
        self.total_bytes = 0

    def write(self, data: bytes) -> int:
        self._pending.extend(data)
        self.total_bytes += len(data)
        return len(data)

    def flush(self) -> None:
        return None

    def drain(self) -> bytes:
        data = bytes(self._pending)
        self._pending.clear()
        return data


ContainerFactory = Callable[[_ChunkSink], "av.container.OutputContainer"]


def _open_webm_container(sink: _ChunkSink) -> "av.container.OutputContainer":
    return av.open(sink, mode="w", format="webm")


class _Flush:
    __slots__ = ()


class _Stop:
    __slots__ = ()


_FLUSH = _Flush()
_STOP = _Stop()


class Encoder:
    """Encode frames painted on a canvas into an in-memory WebM artifact.

    Frames are queued by a canvas listener on the event loop and encoded in a
    worker thread. Muxed bytes are moved into :attr:`chunks` every
    ``timeslice`` seconds and whenever :meth:`request_flush` is called, so the
    chunk list always preserves emission order.
    """

    def __init__(
        self,
        canvas: Canvas,
        *,
        fps: float = 15,
        bitrate: int = DEFAULT_BITRATE,
        timeslice: float = DEFAULT_TIMESLICE,
        codec_candidates: Sequence[CodecChoice] = VIDEO_CODEC_CANDIDATES,
        codec_probe: Callable[[str], bool] = _probe_codec,
        container_factory: ContainerFactory | None = None,
        max_pending_frames: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if fps <= 0:
            raise ValueError("Encoder fps must be positive")
        if bitrate <= 0:
            raise ValueError("Encoder bitrate must be positive")
        if timeslice <= 0:
            raise ValueError("Encoder timeslice must be positive")
        self._canvas = canvas
        self._fps = Fraction(str(fps)).limit_denominator(1000)
        self._bitrate = int(bitrate)
        self._timeslice = float(timeslice)
        self._codec_candidates = tuple(codec_candidates)
        self._codec_probe = codec_probe
        self._container_factory = container_factory or _open_webm_container
        self._max_pending = max(1, int(max_pending_frames))
        self._clock = clock

        self._queue: asyncio.Queue[object] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._start_future: asyncio.Future[None] | None = None
        self._remove_listener: Callable[[], None] | None = None
        self._accepting = False
        self._started = False

        self._choice: CodecChoice | None = None
        self._codec_name: str | None = None
        self._sink: _ChunkSink | None = None
        self._container = None
        self._stream = None
        self._stream_size: tuple[int, int] | None = None
        self._first_timestamp: float | None = None
        self._last_pts = -1
        self._failure: EncoderError | None = None

        self.chunks: list[bytes] = []
        self.frame_count = 0
        self.dropped_frames = 0

    # ------------------------------ properties -----------------------------
    @property
    def started(self) -> bool:
        return self._started

    @property
    def mime_type(self) -> str | None:
        return self._choice.mime_type if self._choice is not None else None

    @property
    def codec(self) -> str | None:
        return self._codec_name

    @property
    def failure(self) -> EncoderError | None:
        return self._failure

    # ------------------------------ lifecycle ------------------------------
    async def start(self) -> None:
        """Subscribe to the canvas and open the container in the background."""

        if self._worker is not None:
            return
        loop = asyncio.get_running_loop()
        self._start_future = loop.create_future()
        self._queue = asyncio.Queue()
        self._accepting = True
        self._remove_listener = self._canvas.add_listener(self._on_frame)
        self._worker = asyncio.create_task(self._run())

    async def wait_for_start(self, timeout: float | None = None) -> None:
        """Resolve once the container is open, immediately if it already is."""

        if self._started:
            return
        future = self._start_future
        if future is None:
            raise EncoderError("Encoder has not been started")
        await asyncio.wait_for(asyncio.shield(future), timeout)

    def request_flush(self) -> None:
        """Ask the worker to emit every pending byte as a chunk."""

        if self._queue is not None and self._accepting:
            self._queue.put_nowait(_FLUSH)

    async def stop(self) -> Artifact | None:
        """Finish encoding and return the artifact, or ``None`` when empty."""

        if self._worker is None:
            return None
        self._detach()
        assert self._queue is not None
        self._queue.put_nowait(_STOP)
        worker = self._worker
        try:
            await worker
        finally:
            self._worker = None
        if self.frame_count == 0:
            logger.info("Encoder stopped without any encoded frames")
            return None
        data = b"".join(self.chunks)
        if not data:
            return None
        choice = self._choice or CONTAINER_DEFAULT_CODEC
        return Artifact(
            data=data,
            mime_type=choice.mime_type,
            extension=choice.extension,
            codec=self._codec_name,
            frame_count=self.frame_count,
        )

    async def abort(self) -> None:
        """Stop encoding and discard everything that was produced."""

        if self._worker is None:
            self.chunks.clear()
            return
        self._detach()
        assert self._queue is not None
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_STOP)
        worker = self._worker
        try:
            await worker
        except Exception:  # pragma: no cover - logging only
            logger.exception("Encoder worker failed during abort")
        finally:
            self._worker = None
            self.chunks.clear()

    def _detach(self) -> None:
        self._accepting = False
        remover = self._remove_listener
        self._remove_listener = None
        if remover is not None:
            remover()

    # ---------------------------- frame intake -----------------------------
    def _on_frame(self, frame: np.ndarray) -> None:
        queue = self._queue
        if queue is None or not self._accepting:
            return
        if queue.qsize() >= self._max_pending:
            self.dropped_frames += 1
            logger.debug("Encoder backlog full; dropping frame")
            return
        queue.put_nowait((self._clock(), frame))

    # ------------------------------- worker --------------------------------
    async def _run(self) -> None:
        assert self._queue is not None and self._start_future is not None
        try:
            await asyncio.to_thread(self._open)
        except (av.FFmpegError, OSError, ValueError) as exc:
            self._failure = EncoderError(_compose_codec_failure_message(exc, None))
            logger.error("Unable to open WebM encoder: %s", exc)
            self._detach()
            if not self._start_future.done():
                self._start_future.set_exception(self._failure)
                # mark retrieved; callers may never await the start signal
                self._start_future.exception()
            return
        self._started = True
        if not self._start_future.done():
            self._start_future.set_result(None)
        logger.info(
            "Encoder started with %s (%s)",
            self._codec_name or "container default codec",
            self.mime_type,
        )

        next_slice = self._clock() + self._timeslice
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            if item is _FLUSH:
                self._emit_chunk()
                next_slice = self._clock() + self._timeslice
                continue
            timestamp, frame = item  # type: ignore[misc]
            await asyncio.to_thread(self._encode, frame, timestamp)
            if self._clock() >= next_slice:
                self._emit_chunk()
                next_slice = self._clock() + self._timeslice
        await asyncio.to_thread(self._finalise)
        self._emit_chunk()

    def _emit_chunk(self) -> int:
        sink = self._sink
        if sink is None:
            return 0
        data = sink.drain()
        if data:
            self.chunks.append(data)
        return len(data)

    # --------------------------- thread helpers ----------------------------
    def _open(self) -> None:
        self._choice = negotiate_codec(self._codec_candidates, self._codec_probe)
        self._sink = _ChunkSink()
        self._container = self._container_factory(self._sink)
        if self._choice.name is None:
            self._codec_name = getattr(self._container, "default_video_codec", None) or None
        else:
            self._codec_name = self._choice.name

    def _add_stream(self, width: int, height: int) -> None:
        container = self._container
        codec_name = self._codec_name
        if container is None or codec_name is None:
            raise EncoderError(_compose_codec_failure_message(None, codec_name))
        stream = container.add_stream(codec_name, rate=self._fps)
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        codec_context = getattr(stream, "codec_context", None)
        if codec_context is not None:
            codec_context.bit_rate = self._bitrate
        stream.options = _encoding_options(codec_name, self._bitrate)
        try:
            stream.time_base = _TIME_BASE
        except (AttributeError, TypeError, ValueError):  # pragma: no cover - read-only in some PyAV builds
            pass
        self._stream = stream
        self._stream_size = (width, height)

    def _encode(self, array: np.ndarray, timestamp: float) -> None:
        if self._failure is not None:
            return
        try:
            if self._stream is None:
                height, width = array.shape[:2]
                self._add_stream(_even(width), _even(height))
            assert self._stream is not None and self._stream_size is not None
            stream_width, stream_height = self._stream_size
            frame = av.VideoFrame.from_ndarray(array, format="rgb24")
            frame = frame.reformat(width=stream_width, height=stream_height, format="yuv420p")
            if self._first_timestamp is None:
                self._first_timestamp = timestamp
            pts = int(round((timestamp - self._first_timestamp) / _TIME_BASE))
            if pts <= self._last_pts:
                pts = self._last_pts + 1
            frame.pts = pts
            frame.time_base = _TIME_BASE
            self._last_pts = pts
            for packet in self._stream.encode(frame):
                self._container.mux(packet)
        except EncoderError as exc:
            self._failure = exc
            logger.error("%s", exc)
            return
        except (av.FFmpegError, ValueError) as exc:
            self._failure = EncoderError(_compose_codec_failure_message(exc, self._codec_name))
            logger.error("Encoding failed; discarding further frames: %s", exc)
            return
        self.frame_count += 1

    def _finalise(self) -> None:
        container = self._container
        self._container = None
        if container is None:
            return
        try:
            if self._stream is not None and self._failure is None:
                for packet in self._stream.encode():
                    container.mux(packet)
        except av.FFmpegError as exc:
            logger.warning("Failed to flush encoder: %s", exc)
        finally:
            try:
                container.close()
            except av.FFmpegError as exc:
                logger.warning("Failed to close WebM container: %s", exc)
            self._stream = None


__all__ = [
    "Artifact",
    "CONTAINER_DEFAULT_CODEC",
    "CodecChoice",
    "DEFAULT_BITRATE",
    "DEFAULT_TIMESLICE",
    "Encoder",
    "EncoderError",
    "VIDEO_CODEC_CANDIDATES",
    "negotiate_codec",
]

"""Live frame sources that can be sampled into a recording canvas."""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import AsyncIterator
from urllib.parse import urlparse

import av
import httpx
import numpy as np
import simplejpeg

from .camera import BaseCamera, CameraError, create_camera, summarise_exception
from .canvas import Canvas

logger = logging.getLogger(__name__)

STREAM_TYPE_MJPEG = "mjpeg"
STREAM_TYPE_HLS = "hls"
STREAM_TYPE_YOUTUBE = "youtube"
STREAM_TYPE_LOCAL = "local"

_JPEG_START = b"\xff\xd8"
_JPEG_END = b"\xff\xd9"


class UnsupportedSourceError(RuntimeError):
    """Raised when a stream cannot be captured for recording."""


class CaptureBlockedError(RuntimeError):
    """Raised when a frame source refuses to expose its pixels."""


class FrameSource(ABC):
    """A live surface that a sampler can paint into a canvas."""

    capturable: bool = True
    stream_type: str = STREAM_TYPE_LOCAL

    @property
    @abstractmethod
    def ready(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @property
    def natural_width(self) -> int:
        return 0

    @property
    def natural_height(self) -> int:
        return 0

    @abstractmethod
    def draw_into(self, canvas: Canvas) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def start(self) -> None:  # pragma: no cover - optional override
        return None

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


class _LatestFrameSource(FrameSource):
    """Base class for sources that keep the most recent decoded frame."""

    def __init__(self) -> None:
        self._latest: np.ndarray | None = None
        self._blocked: CaptureBlockedError | None = None
        self.last_error: str | None = None

    @property
    def ready(self) -> bool:
        return self._latest is not None or self._blocked is not None

    @property
    def blocked(self) -> bool:
        return self._blocked is not None

    @property
    def natural_width(self) -> int:
        frame = self._latest
        return int(frame.shape[1]) if frame is not None else 0

    @property
    def natural_height(self) -> int:
        frame = self._latest
        return int(frame.shape[0]) if frame is not None else 0

    def draw_into(self, canvas: Canvas) -> None:
        if self._blocked is not None:
            raise self._blocked
        frame = self._latest
        if frame is None:
            return
        canvas.draw_image(frame)

    def _publish(self, frame: np.ndarray) -> None:
        self._latest = frame


class CameraFrameSource(_LatestFrameSource):
    """Pump frames from a local :class:`BaseCamera` into the latest-frame slot."""

    stream_type = STREAM_TYPE_LOCAL

    def __init__(self, camera: BaseCamera, *, retry_delay: float = 1.0) -> None:
        super().__init__()
        self._camera = camera
        self._retry_delay = max(0.0, float(retry_delay))
        self._task: asyncio.Task[None] | None = None

    @property
    def camera(self) -> BaseCamera:
        return self._camera

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while True:
            try:
                frame = await self._camera.get_frame()
            except CameraError as exc:
                self.last_error = summarise_exception(exc)
                logger.warning("Camera frame read failed: %s", self.last_error)
                await asyncio.sleep(self._retry_delay)
                continue
            self._publish(frame)
            await asyncio.sleep(0)

    async def close(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._camera.close()


def _extract_multipart_boundary(media_type: str) -> str | None:
    if not isinstance(media_type, str):
        return None
    parts = [segment.strip() for segment in media_type.split(";")]
    if not parts or not parts[0].lower().startswith("multipart/x-mixed-replace"):
        return None
    for segment in parts[1:]:
        if not segment.lower().startswith("boundary="):
            continue
        boundary = segment.split("=", 1)[1].strip().strip('"')
        if boundary.startswith("--"):
            boundary = boundary[2:]
        if boundary:
            return boundary
    return None


class MultipartJpegParser:
    """Incrementally split an MJPEG byte stream into JPEG payloads.

    When the multipart boundary is known, parts are cut on the boundary marker
    and their headers discarded. Without a boundary the parser falls back to
    scanning for JPEG start and end markers.
    """

    def __init__(self, boundary: str | None = None, *, max_buffer: int = 8 * 1024 * 1024) -> None:
        self._marker = f"--{boundary}".encode("ascii", errors="ignore") if boundary else None
        self._buffer = bytearray()
        self._max_buffer = max_buffer

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        if self._marker is not None:
            payloads = self._split_on_marker()
        else:
            payloads = self._split_on_jpeg_markers()
        if len(self._buffer) > self._max_buffer:
            logger.warning("Discarding %d bytes of unparseable MJPEG data", len(self._buffer))
            self._buffer.clear()
        return payloads

    def _split_on_marker(self) -> list[bytes]:
        assert self._marker is not None
        marker = self._marker
        payloads: list[bytes] = []
        while True:
            start = self._buffer.find(marker)
            if start < 0:
                return payloads
            following = self._buffer.find(marker, start + len(marker))
            if following < 0:
                if start:
                    del self._buffer[:start]
                return payloads
            part = bytes(self._buffer[start + len(marker) : following])
            del self._buffer[:following]
            _header, separator, body = part.partition(b"\r\n\r\n")
            if not separator:
                continue
            body = body.rstrip(b"\r\n")
            if body:
                payloads.append(body)

    def _split_on_jpeg_markers(self) -> list[bytes]:
        payloads: list[bytes] = []
        while True:
            start = self._buffer.find(_JPEG_START)
            if start < 0:
                # keep a trailing 0xFF, it may begin the next start marker
                del self._buffer[: max(0, len(self._buffer) - 1)]
                if self._buffer[-1:] != b"\xff":
                    self._buffer.clear()
                return payloads
            end = self._buffer.find(_JPEG_END, start + 2)
            if end < 0:
                if start:
                    del self._buffer[:start]
                return payloads
            payloads.append(bytes(self._buffer[start : end + 2]))
            del self._buffer[: end + 2]


class MjpegFrameSource(_LatestFrameSource):
    """Read a ``multipart/x-mixed-replace`` feed over HTTP."""

    stream_type = STREAM_TYPE_MJPEG

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        reconnect_delay: float = 2.0,
        timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self._url = url
        self._client = client
        self._owns_client = client is None
        self._reconnect_delay = max(0.0, float(reconnect_delay))
        self._timeout = timeout
        self._task: asyncio.Task[None] | None = None
        self.frames_decoded = 0

    @property
    def url(self) -> str:
        return self._url

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while self._blocked is None:
            try:
                await self._read_stream()
            except httpx.HTTPError as exc:
                self.last_error = str(exc) or exc.__class__.__name__
                logger.warning("MJPEG stream %s failed: %s", self._url, self.last_error)
            if self._blocked is not None:
                break
            await asyncio.sleep(self._reconnect_delay)

    async def _read_stream(self) -> None:
        assert self._client is not None
        async with self._client.stream("GET", self._url) as response:
            if response.status_code in (401, 403):
                self._blocked = CaptureBlockedError(
                    f"Stream {self._url} refused frame access (HTTP {response.status_code})"
                )
                logger.warning("%s", self._blocked)
                return
            response.raise_for_status()
            boundary = _extract_multipart_boundary(response.headers.get("content-type", ""))
            async for payload in self._iter_payloads(response.aiter_bytes(), boundary):
                self._decode(payload)

    @staticmethod
    async def _iter_payloads(
        chunks: AsyncIterator[bytes], boundary: str | None
    ) -> AsyncIterator[bytes]:
        parser = MultipartJpegParser(boundary)
        async for chunk in chunks:
            for payload in parser.feed(chunk):
                yield payload

    def _decode(self, payload: bytes) -> None:
        try:
            array = simplejpeg.decode_jpeg(payload, colorspace="RGB")
        except ValueError as exc:
            logger.debug("Skipping undecodable MJPEG frame: %s", exc)
            return
        self.frames_decoded += 1
        self._publish(array)

    async def close(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class HlsFrameSource(_LatestFrameSource):
    """Decode an HLS playlist with PyAV on a worker thread."""

    stream_type = STREAM_TYPE_HLS

    def __init__(self, url: str, *, reconnect_delay: float = 2.0, timeout: float = 10.0) -> None:
        super().__init__()
        self._url = url
        self._reconnect_delay = max(0.0, float(reconnect_delay))
        self._timeout = timeout
        self._stop = threading.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        return self._url

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(asyncio.to_thread(self._decode_loop))

    def _decode_loop(self) -> None:
        while not self._stop.is_set():
            try:
                with av.open(self._url, mode="r", timeout=self._timeout) as container:
                    for frame in container.decode(video=0):
                        if self._stop.is_set():
                            return
                        self._publish(frame.to_ndarray(format="rgb24"))
            except av.FFmpegError as exc:
                self.last_error = str(exc)
                logger.warning("HLS stream %s failed: %s", self._url, exc)
            self._stop.wait(self._reconnect_delay)

    async def close(self) -> None:
        self._stop.set()
        task = self._task
        self._task = None
        if task is not None:
            try:
                await task
            except Exception:  # pragma: no cover - logging only
                logger.exception("HLS decoder terminated unexpectedly")


class EmbedFrameSource(FrameSource):
    """Third-party player embed whose pixels are never exposed."""

    capturable = False
    stream_type = STREAM_TYPE_YOUTUBE

    def __init__(self, url: str) -> None:
        self._url = url

    @property
    def ready(self) -> bool:
        return False

    def draw_into(self, canvas: Canvas) -> None:
        raise UnsupportedSourceError(
            "Recording is not available for YouTube streams due to DRM restrictions"
        )


def detect_stream_type(url: str) -> str:
    """Classify *url* as an MJPEG, HLS, YouTube or local camera stream."""

    text = (url or "").strip()
    lowered = text.lower()
    scheme = urlparse(lowered).scheme
    if scheme in ("camera", "synthetic"):
        return STREAM_TYPE_LOCAL
    if ".m3u8" in lowered:
        return STREAM_TYPE_HLS
    if "youtube.com" in lowered or "youtu.be" in lowered:
        return STREAM_TYPE_YOUTUBE
    return STREAM_TYPE_MJPEG


def is_recording_supported(stream_type: str) -> bool:
    return stream_type != STREAM_TYPE_YOUTUBE


def _create_local_camera(url: str, *, fps: int | None) -> BaseCamera:
    parsed = urlparse(url.strip())
    if parsed.scheme.lower() == "synthetic":
        return create_camera("synthetic", fps=fps)
    target = (parsed.netloc or parsed.path or "").strip("/")
    if target in ("", "synthetic"):
        return create_camera("synthetic", fps=fps)
    try:
        index = int(target)
    except ValueError as exc:
        raise UnsupportedSourceError(f"Unknown local camera: {url}") from exc
    return create_camera("opencv", fps=fps, index=index)


def create_frame_source(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    fps: int | None = None,
) -> FrameSource:
    """Build the frame source matching the stream at *url*."""

    stream_type = detect_stream_type(url)
    if stream_type == STREAM_TYPE_HLS:
        return HlsFrameSource(url)
    if stream_type == STREAM_TYPE_YOUTUBE:
        return EmbedFrameSource(url)
    if stream_type == STREAM_TYPE_LOCAL:
        try:
            camera = _create_local_camera(url, fps=fps)
        except CameraError as exc:
            raise UnsupportedSourceError(summarise_exception(exc)) from exc
        return CameraFrameSource(camera)
    return MjpegFrameSource(url, client=client)


__all__ = [
    "CameraFrameSource",
    "CaptureBlockedError",
    "EmbedFrameSource",
    "FrameSource",
    "HlsFrameSource",
    "MjpegFrameSource",
    "MultipartJpegParser",
    "STREAM_TYPE_HLS",
    "STREAM_TYPE_LOCAL",
    "STREAM_TYPE_MJPEG",
    "STREAM_TYPE_YOUTUBE",
    "UnsupportedSourceError",
    "create_frame_source",
    "detect_stream_type",
    "is_recording_supported",
]

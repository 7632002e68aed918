"""Local camera backends that can feed a recording canvas."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Iterable

import numpy as np

logger = logging.getLogger(__name__)

# User visible identifiers for local camera backends.
CAMERA_SOURCES: dict[str, str] = {
    "synthetic": "Synthetic test pattern",
    "opencv": "OpenCV (USB webcam)",
}

DEFAULT_CAMERA_CHOICE = "synthetic"

_CAMERA_ALIASES = {
    "usb": "opencv",
    "webcam": "opencv",
    "test": "synthetic",
}


class CameraError(RuntimeError):
    """Raised when a local camera cannot be opened or read."""


class BaseCamera(ABC):
    """Abstract camera capable of producing RGB frames."""

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details)


class OpenCVCamera(BaseCamera):
    """USB webcam backed by OpenCV ``VideoCapture``."""

    def __init__(
        self,
        index: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError("OpenCV is not installed") from exc

        self._cv2 = cv2
        self._capture = cv2.VideoCapture(index)
        if not self._capture.isOpened():
            raise CameraError(f"Failed to open camera index {index}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps is not None and fps > 0:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))

    async def get_frame(self) -> np.ndarray:
        ret, frame = await asyncio.to_thread(self._capture.read)
        if not ret:
            raise CameraError("Failed to read frame from OpenCV camera")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    async def close(self) -> None:
        await asyncio.to_thread(self._capture.release)


class SyntheticCamera(BaseCamera):
    """Generates a moving test pattern paced at the requested frame rate."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        if width <= 0 or height <= 0:
            raise CameraError("Synthetic camera dimensions must be positive")
        self._width = int(width)
        self._height = int(height)
        self._interval = 1.0 / fps if fps else 0.0
        self._start = time.perf_counter()
        self.frames_served = 0

    async def get_frame(self) -> np.ndarray:
        if self._interval:
            await asyncio.sleep(self._interval)
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        frame = np.stack([red, green, blue], axis=2)
        self.frames_served += 1
        return frame.astype(np.uint8)


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("CCTV_RECORDER_CAMERA", DEFAULT_CAMERA_CHOICE)
    normalised = choice.strip().lower()
    return _CAMERA_ALIASES.get(normalised, normalised)


def create_camera(
    choice: str | None = None,
    *,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
    index: int = 0,
) -> BaseCamera:
    """Instantiate the camera backend named by *choice*."""

    normalised = _normalise_choice(choice)
    if normalised == "synthetic":
        return SyntheticCamera(resolution=resolution, fps=fps)
    if normalised == "opencv":
        return OpenCVCamera(index=index, resolution=resolution, fps=fps)
    raise CameraError(f"Unknown camera selection: {choice}")


__all__ = [
    "BaseCamera",
    "CAMERA_SOURCES",
    "CameraError",
    "DEFAULT_CAMERA_CHOICE",
    "OpenCVCamera",
    "SyntheticCamera",
    "create_camera",
    "summarise_exception",
]

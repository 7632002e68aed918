"""Off-screen pixel buffer that frame sources paint into."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_CANVAS_SIZE: tuple[int, int] = (640, 480)

FrameListener = Callable[[np.ndarray], None]


def _prepare_rgb_frame(frame: np.ndarray | list) -> np.ndarray:
    """Return a contiguous uint8 RGB frame ready to be painted."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame for the recording canvas")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)

    return array


def _scale_nearest(image: np.ndarray, width: int, height: int) -> np.ndarray:
    src_height, src_width = image.shape[:2]
    if src_width == width and src_height == height:
        return image
    rows = (np.arange(height) * src_height) // height
    cols = (np.arange(width) * src_width) // width
    return image[rows[:, np.newaxis], cols]


class Canvas:
    """RGB drawing surface whose painted frames feed capture listeners.

    Every successful :meth:`draw_image` call replaces the whole surface and
    hands a copy of the new content to each registered listener, which is how
    encoders observe the live frame stream.
    """

    def __init__(self, width: int = DEFAULT_CANVAS_SIZE[0], height: int = DEFAULT_CANVAS_SIZE[1]) -> None:
        self._pixels = self._allocate(width, height)
        self._listeners: list[FrameListener] = []
        self.frames_painted = 0

    @staticmethod
    def _allocate(width: int, height: int) -> np.ndarray:
        width = int(width)
        height = int(height)
        if width <= 0 or height <= 0:
            raise ValueError("Canvas dimensions must be positive integers")
        return np.zeros((height, width, 3), dtype=np.uint8)

    @property
    def width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def resize(self, width: int, height: int) -> bool:
        """Resize the surface, clearing it. Returns ``True`` when the size changed."""

        if (int(width), int(height)) == self.size:
            return False
        self._pixels = self._allocate(width, height)
        return True

    def draw_image(self, image: np.ndarray) -> np.ndarray:
        """Paint *image* scaled to the full canvas and notify listeners."""

        prepared = _prepare_rgb_frame(image)
        scaled = _scale_nearest(prepared, self.width, self.height)
        self._pixels[...] = scaled
        self.frames_painted += 1
        for listener in list(self._listeners):
            try:
                listener(self._pixels.copy())
            except Exception:  # pragma: no cover - logging only
                logger.exception("Canvas listener failed")
        return self._pixels

    def snapshot(self) -> np.ndarray:
        return self._pixels.copy()

    def add_listener(self, listener: FrameListener) -> Callable[[], None]:
        """Register *listener* for painted frames and return a remover."""

        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


__all__ = ["Canvas", "DEFAULT_CANVAS_SIZE", "FrameListener"]

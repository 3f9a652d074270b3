"""
Single-channel pixel access, windows and the default image collaborators
(background statistics and the noise filter used before candidate search).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import cv2
import numpy as np


@dataclass(frozen=True)
class Rectangle:
    """Image area in 0-based pixels: columns x..x+w-1, rows y..y+h-1."""
    x: int
    y: int
    w: int
    h: int

    def clipped(self, width: int, height: int) -> "Rectangle":
        x0, y0 = max(0, self.x), max(0, self.y)
        x1, y1 = min(width, self.x + self.w), min(height, self.y + self.h)
        return Rectangle(x0, y0, max(0, x1 - x0), max(0, y1 - y0))


@dataclass(frozen=True)
class ChannelStats:
    median: float
    sigma: float


def robust_stats(data: np.ndarray) -> ChannelStats:
    """
    Background median and noise sigma from the median absolute deviation.

    Args:
        data (np.ndarray): Pixel values (any shape).

    Returns:
        ChannelStats with the median and 1.4826 * MAD (standard deviation if MAD is 0).
    """
    values = np.asarray(data, dtype=np.float64).ravel()
    if values.size == 0:
        raise ValueError("cannot compute statistics of an empty sample")
    bg = float(np.median(values))
    mad = float(np.median(np.abs(values - bg)))
    sigma = 1.4826 * mad if mad > 0 else float(np.std(values))
    return ChannelStats(bg, sigma)


def gaussian_smooth(data: np.ndarray, ksize: int = 5) -> np.ndarray:
    """Noise filter applied before candidate search."""
    img = np.asarray(data, dtype=np.float32)
    if ksize > 1:
        img = cv2.GaussianBlur(img, (ksize, ksize), 0)
    return img


StatisticsProvider = Callable[[np.ndarray], ChannelStats]
NoiseFilter = Callable[[np.ndarray], np.ndarray]


def _default_saturation(data: np.ndarray) -> float:
    if np.issubdtype(data.dtype, np.integer):
        return float(np.iinfo(data.dtype).max)
    if data.size and float(np.nanmax(data)) <= 1.0:
        return 1.0
    return float("inf")


class ImageChannel:
    """
    One channel of an image.

    Valid pixels lie strictly between ``lo`` and ``saturation``.
    """

    def __init__(self, data: np.ndarray, saturation: Optional[float] = None,
                 lo: float = 0.0, layer: int = 0):
        data = np.asarray(data)
        if data.ndim != 2:
            raise ValueError(f"Expected 2D array, got shape {data.shape}.")
        self.data = data
        self.saturation = float(saturation) if saturation is not None else _default_saturation(data)
        self.lo = float(lo)
        self.layer = int(layer)

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    def in_range(self, values) -> np.ndarray:
        v = np.asarray(values, dtype=np.float64)
        return (v > self.lo) & (v < self.saturation)

    def statistics(self, area: Optional[Rectangle] = None,
                   provider: StatisticsProvider = robust_stats) -> ChannelStats:
        if area is None:
            return provider(self.data)
        return provider(self.window(area.clipped(self.width, self.height)).data)

    def window(self, rect: Rectangle) -> "PixelWindow":
        if rect.w <= 0 or rect.h <= 0:
            raise ValueError(f"empty window {rect}")
        if rect.x < 0 or rect.y < 0 or rect.x + rect.w > self.width or rect.y + rect.h > self.height:
            raise ValueError(f"window {rect} outside of {self.width}x{self.height} image")
        return PixelWindow(self, rect)


class PixelWindow:
    """Read-only rectangular sample of a channel handed to the solver."""

    def __init__(self, channel: ImageChannel, rect: Rectangle):
        self.channel = channel
        self.rect = rect
        view = channel.data[rect.y:rect.y + rect.h, rect.x:rect.x + rect.w].view()
        view.flags.writeable = False
        self.data = view

    @classmethod
    def from_array(cls, data: np.ndarray, saturation: Optional[float] = None) -> "PixelWindow":
        channel = ImageChannel(data, saturation=saturation)
        return cls(channel, Rectangle(0, 0, channel.width, channel.height))

    @property
    def shape(self):
        return self.data.shape

    @property
    def size(self) -> int:
        return int(self.data.size)

    def to_image(self, x0: float, y0: float):
        """Map a 1-indexed window-local center to 0-based image coordinates."""
        return self.rect.x + x0 - 1.0, self.rect.y + y0 - 1.0

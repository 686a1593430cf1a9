from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple
import numpy as np

from ..errors import UnsupportedInput
from .geometry import CornerSet

# ITU-R BT.601 luma weights, RGB order.
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


@dataclass
class Raster:
    """
    Simple data object: RGBA pixels (+ optional source path for bookkeeping).
    Every operation that changes pixels returns a *new* Raster.
    """
    pixels: np.ndarray # Shape (H, W, 4), dtype uint8, RGBA order.
    path: Path | None = None # Source of the image.

    def __post_init__(self):
        pixels = self.pixels
        if not isinstance(pixels, np.ndarray):
            raise UnsupportedInput(f"Raster pixels must be a numpy array, got {type(pixels).__name__}")
        if pixels.dtype != np.uint8:
            raise UnsupportedInput(f"Raster pixels must be uint8, got {pixels.dtype}")
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise UnsupportedInput(f"Raster pixels must have shape (H, W, 4), got {pixels.shape}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise UnsupportedInput(f"Raster has a zero dimension: {pixels.shape[1]}x{pixels.shape[0]}")
        if not pixels.flags["C_CONTIGUOUS"]:
            self.pixels = np.ascontiguousarray(pixels)
        if self.path is not None:
            self.path = Path(self.path)

    # ── Constructors ─────────────────────────────────────────────────
    @classmethod
    def from_rgba(cls, pixels: np.ndarray, path: str | Path | None = None) -> Raster:
        """Wrap a copy of an (H, W, 4) uint8 array."""
        return cls(pixels=np.array(pixels, dtype=np.uint8, copy=True), path=path)

    @classmethod
    def from_rgb(cls, pixels: np.ndarray, path: str | Path | None = None) -> Raster:
        """Build an opaque Raster from an (H, W, 3) or (H, W) uint8 array."""
        pixels = np.asarray(pixels)
        if pixels.ndim == 2:
            pixels = np.repeat(pixels[:, :, None], 3, axis=2)
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise UnsupportedInput(f"Expected (H, W, 3) RGB pixels, got {pixels.shape}")
        h, w = pixels.shape[:2]
        out = np.empty((h, w, 4), dtype=np.uint8)
        out[:, :, :3] = pixels
        out[:, :, 3] = 255
        return cls(pixels=out, path=path)

    @classmethod
    def blank(cls, width: int, height: int,
              color: Tuple[int, int, int, int] = (255, 255, 255, 255)) -> Raster:
        if width <= 0 or height <= 0:
            raise UnsupportedInput(f"Cannot create a {width}x{height} raster")
        pixels = np.empty((int(height), int(width), 4), dtype=np.uint8)
        pixels[:] = color
        return cls(pixels=pixels)

    # ── Accessors ────────────────────────────────────────────────────
    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        """Read-only view of the colour channels."""
        view = self.pixels[:, :, :3]
        view.flags.writeable = False
        return view

    @property
    def alpha(self) -> np.ndarray:
        view = self.pixels[:, :, 3]
        view.flags.writeable = False
        return view

    def luminance(self) -> np.ndarray:
        """Float32 (H, W) luminance, 0.299R + 0.587G + 0.114B."""
        return self.pixels[:, :, :3].astype(np.float32) @ LUMA_WEIGHTS

    def copy(self) -> Raster:
        return Raster(pixels=self.pixels.copy(), path=self.path)

    def with_pixels(self, pixels: np.ndarray) -> Raster:
        """New Raster with the same bookkeeping and different pixels."""
        return Raster(pixels=pixels, path=self.path)

    def full_extent(self):
        """CornerSet covering the whole raster."""
        return CornerSet.bounding_box(self.width, self.height)

from __future__ import annotations
from typing import Callable, List, Mapping, Tuple, Union
import logging
import math

import numpy as np

from ..errors import FilterStageError, UnsupportedInput
from ..models.filter_parameters import FilterParameters
from ..models.raster import LUMA_WEIGHTS, Raster
from ..repositories.vision_repository import VisionRepository

logger = logging.getLogger(__name__)

# Text enhancement
TEXT_BLOCK_SIZE = 9
TEXT_DEVIATION = 20.0
TEXT_BRIGHT_LEVEL = 200.0

# White background
BACKGROUND_PERCENTILE = 0.90
BACKGROUND_BAND = 0.8


def _split(raster: Raster) -> Tuple[np.ndarray, np.ndarray]:
    """float32 RGB copy and the untouched alpha plane."""
    return raster.pixels[:, :, :3].astype(np.float32), raster.pixels[:, :, 3]


def _merge(raster: Raster, rgb: np.ndarray, alpha: np.ndarray) -> Raster:
    """Round, clamp to [0, 255] and reattach alpha as a new Raster."""
    out = np.empty(raster.pixels.shape, dtype=np.uint8)
    out[:, :, :3] = np.clip(np.rint(rgb), 0, 255)
    out[:, :, 3] = alpha
    return raster.with_pixels(out)


def _luma(rgb: np.ndarray) -> np.ndarray:
    return rgb @ LUMA_WEIGHTS


def _grid_weights(grid: np.ndarray, n: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Left/right grid indices and interpolation weights for positions 0..n-1."""
    pos = np.arange(n, dtype=np.float32)
    if len(grid) == 1:
        zeros = np.zeros(n, dtype=np.intp)
        return zeros, zeros, np.zeros(n, dtype=np.float32)
    i0 = np.clip(np.searchsorted(grid, pos, side="right") - 1, 0, len(grid) - 2)
    i1 = i0 + 1
    t = (pos - grid[i0]) / (grid[i1] - grid[i0]).astype(np.float32)
    return i0, i1, t.astype(np.float32)


def _grid_positions(n: int, stride: int) -> np.ndarray:
    positions = np.arange(0, n, stride)
    if positions[-1] != n - 1:
        positions = np.append(positions, n - 1)
    return positions


class FilterService:
    """
    Ordered, parameterised pixel filters over RGBA rasters.

    *   Every stage is pure: it returns a new Raster and keeps alpha as is.
    *   A stage at its neutral value is skipped by `apply_all`.
    """

    def __init__(self, vision: VisionRepository | None = None):
        self.vision = vision or VisionRepository()
        # (name, is_active, apply) in execution order
        self.stages: List[Tuple[str, Callable[[FilterParameters], bool],
                                Callable[[Raster, FilterParameters], Raster]]] = [
            ("brightness", lambda p: p.brightness != 0,
             lambda r, p: self.apply_brightness(r, p.brightness)),
            ("contrast", lambda p: p.contrast != 0,
             lambda r, p: self.apply_contrast(r, p.contrast)),
            ("sharpness", lambda p: p.sharpness != 0,
             lambda r, p: self.apply_sharpness(r, p.sharpness)),
            ("saturation", lambda p: p.saturation != 0,
             lambda r, p: self.apply_saturation(r, p.saturation)),
            ("denoise", lambda p: p.denoise != 0,
             lambda r, p: self.apply_denoise(r, p.denoise)),
            ("color_correction", lambda p: p.temperature != 0 or p.tint != 0,
             lambda r, p: self.apply_color_correction(r, p.temperature, p.tint)),
            ("white_background", lambda p: p.white_background != 0,
             lambda r, p: self.apply_white_background(r, p.white_background)),
            ("text_enhancement", lambda p: p.text_enhancement != 0,
             lambda r, p: self.apply_text_enhancement(r, p.text_enhancement)),
            ("binarization", lambda p: p.binarization != 0,
             lambda r, p: self.apply_binarization(r, p.binarization)),
        ]

    # ─── Pipeline ────────────────────────────────────────────────────
    def apply_all(self, raster: Raster,
                  params: Union[FilterParameters, Mapping[str, float], None] = None) -> Raster:
        """
        Run every active stage in order. Neutral parameters return a
        pixel-identical copy.

        Raises:
            UnsupportedInput: `raster` is not a Raster.
            FilterStageError: a stage failed; nothing after it ran.
        """
        if not isinstance(raster, Raster):
            raise UnsupportedInput(f"Expected a Raster, got {type(raster).__name__}")
        if params is None:
            params = FilterParameters()
        else:
            # same checks and clamping whether built directly or parsed
            values = params.as_dict() if isinstance(params, FilterParameters) else params
            params = FilterParameters.from_dict(values)

        current = raster
        for name, is_active, apply in self.stages:
            if not is_active(params):
                continue
            try:
                current = apply(current, params)
            except Exception as err:
                raise FilterStageError(name, err, last_raster=current) from err
            logger.debug(f"Applied filter stage '{name}'")

        return raster.copy() if current is raster else current

    # ─── Tone ────────────────────────────────────────────────────────
    def apply_brightness(self, raster: Raster, value: float) -> Raster:
        """Shift every colour channel by value/100 * 255."""
        if value == 0:
            return raster.copy()
        rgb, alpha = _split(raster)
        return _merge(raster, rgb + value / 100 * 255, alpha)

    def apply_contrast(self, raster: Raster, value: float) -> Raster:
        """Classic contrast factor F = 259(C+255) / 255(259-C), pivot at 128."""
        if value == 0:
            return raster.copy()
        value = min(value, 258)
        factor = (259 * (value + 255)) / (255 * (259 - value))
        rgb, alpha = _split(raster)
        return _merge(raster, factor * (rgb - 128) + 128, alpha)

    def apply_sharpness(self, raster: Raster, value: float) -> Raster:
        """
        Unsharp mask: src * (1 + s) - blurred * s, s = value / 100.
        The blur sigma grows with the strength.
        """
        if value == 0:
            return raster.copy()
        strength = value / 100
        rgb, alpha = _split(raster)
        blurred = self.vision.gaussian_blur(rgb, ksize=0, sigma=1.0 + strength)
        return _merge(raster, rgb * (1 + strength) - blurred * strength, alpha)

    def apply_saturation(self, raster: Raster, value: float) -> Raster:
        """Blend away from (or toward) the pixel's gray: gray + (p - gray)(1 + s)."""
        if value == 0:
            return raster.copy()
        factor = 1 + value / 100
        rgb, alpha = _split(raster)
        gray = _luma(rgb)[:, :, None]
        return _merge(raster, gray + (rgb - gray) * factor, alpha)

    # ─── Noise / colour ──────────────────────────────────────────────
    def apply_denoise(self, raster: Raster, value: float) -> Raster:
        """Per-channel median, radius floor(value / 100 * 2), window at least 3x3."""
        if value == 0:
            return raster.copy()
        radius = int(math.floor(value / 100 * 2))
        ksize = max(3, 2 * radius + 1)
        out = raster.pixels.copy()
        out[:, :, :3] = self.vision.median_blur(raster.pixels[:, :, :3], ksize)
        return raster.with_pixels(out)

    def apply_color_correction(self, raster: Raster, temperature: float, tint: float) -> Raster:
        """
        Temperature: warm raises R and lowers B by temp/100 * 30 (cool is the reverse).
        Tint: green raises G by tint/100 * 20 and lowers R, B by tint/100 * 10.
        """
        if temperature == 0 and tint == 0:
            return raster.copy()
        rgb, alpha = _split(raster)
        if temperature != 0:
            shift = temperature / 100 * 30
            rgb[:, :, 0] += shift
            rgb[:, :, 2] -= shift
            np.clip(rgb, 0, 255, out=rgb)
        if tint != 0:
            rgb[:, :, 1] += tint / 100 * 20
            rgb[:, :, 0] -= tint / 100 * 10
            rgb[:, :, 2] -= tint / 100 * 10
        return _merge(raster, rgb, alpha)

    # ─── Document filters ────────────────────────────────────────────
    def background_threshold(self, raster: Raster) -> int:
        """Luminance level at or below which 90 % of the pixels fall."""
        gray = self.vision.to_gray(raster.pixels)
        cdf = np.cumsum(np.bincount(gray.ravel(), minlength=256))
        return int(np.searchsorted(cdf, BACKGROUND_PERCENTILE * cdf[-1]))

    def apply_white_background(self, raster: Raster, value: float) -> Raster:
        """
        Push paper-coloured pixels toward white. Pixels brighter than 0.8 T
        (T = background threshold) move toward 255 in proportion to how far
        into the band they are and to the strength.
        """
        if value == 0:
            return raster.copy()
        strength = value / 100
        threshold = self.background_threshold(raster)
        low = BACKGROUND_BAND * threshold
        band = max(threshold - low, 1.0)

        rgb, alpha = _split(raster)
        lum = _luma(rgb)
        weight = np.where(lum > low, np.clip((lum - low) / band, 0, 1), 0) * strength
        return _merge(raster, rgb + (255 - rgb) * weight[:, :, None], alpha)

    def local_mean(self, lum: np.ndarray) -> np.ndarray:
        """
        Local mean luminance: 9x9 block means sampled on a coarse grid
        (stride max(4, min(W, H) // 50)) and bilinearly interpolated.
        """
        h, w = lum.shape
        stride = max(4, min(w, h) // 50)
        ys = _grid_positions(h, stride)
        xs = _grid_positions(w, stride)
        grid = self.vision.box_mean(lum, TEXT_BLOCK_SIZE)[np.ix_(ys, xs)]

        y0, y1, ty = _grid_weights(ys.astype(np.float32), h)
        x0, x1, tx = _grid_weights(xs.astype(np.float32), w)
        ty = ty[:, None]
        tx = tx[None, :]
        top = grid[np.ix_(y0, x0)] * (1 - tx) + grid[np.ix_(y0, x1)] * tx
        bottom = grid[np.ix_(y1, x0)] * (1 - tx) + grid[np.ix_(y1, x1)] * tx
        return top * (1 - ty) + bottom * ty

    def apply_text_enhancement(self, raster: Raster, value: float) -> Raster:
        """
        Strokes that stand out from the local mean by more than 20 levels get
        their deviation amplified by 1 + 0.5 s; flat bright paper (local mean
        above 200) is lightened by 1 + 0.2 s.
        """
        if value == 0:
            return raster.copy()
        strength = value / 100
        rgb, alpha = _split(raster)
        lum = _luma(rgb)
        mean = self.local_mean(lum)
        deviation = lum - mean

        stroke = np.abs(deviation) > TEXT_DEVIATION
        paper = (mean > TEXT_BRIGHT_LEVEL) & ~stroke

        out = rgb.copy()
        m = mean[stroke][:, None]
        out[stroke] = m + (rgb[stroke] - m) * (1 + 0.5 * strength)
        out[paper] = rgb[paper] * (1 + 0.2 * strength)
        return _merge(raster, out, alpha)

    def otsu_threshold(self, raster: Raster) -> float:
        """Otsu's threshold of the luminance histogram."""
        level, _ = self.vision.otsu_threshold(self.vision.to_gray(raster.pixels))
        return level

    def apply_binarization(self, raster: Raster, value: float) -> Raster:
        """Blend toward the Otsu black/white image: original(1 - s) + binary * s."""
        if value == 0:
            return raster.copy()
        strength = value / 100
        level, binary = self.vision.otsu_threshold(self.vision.to_gray(raster.pixels))
        logger.debug(f"Otsu threshold: {level:.0f}")
        rgb, alpha = _split(raster)
        binary = binary.astype(np.float32)[:, :, None]
        return _merge(raster, rgb * (1 - strength) + binary * strength, alpha)

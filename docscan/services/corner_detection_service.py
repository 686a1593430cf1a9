from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Sequence
import logging
import os

import cv2
import numpy as np
from dotenv import load_dotenv

from ..errors import DetectionFailure, UnsupportedInput
from ..models.geometry import CornerSet
from ..models.raster import Raster
from ..repositories.vision_repository import VisionRepository

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

EPSILON_RATIOS = (0.01, 0.02, 0.03, 0.04, 0.05)
FALLBACK_EPSILON = 0.02


@dataclass(frozen=True)
class DetectionResult:
    """
    Corners plus how they were found.
    `fallback` is True when the first strategy did not produce them,
    i.e. the user should probably check the corners by hand.
    """
    corners: CornerSet
    strategy: str
    fallback: bool


class DetectionStrategy(ABC):
    """Finds the document quadrilateral or raises DetectionFailure."""

    name: str = "strategy"
    requires_engine: bool = False

    @abstractmethod
    def find_corners(self, raster: Raster) -> CornerSet:
        ...


# ─── Contour based (OpenCV) ──────────────────────────────────────────
def reduce_to_four(points: np.ndarray, width: float, height: float) -> np.ndarray:
    """
    Pick one point per angular quadrant around the centroid: the farthest one.
    Empty quadrants take the point nearest to the matching raster corner.
    Returns (4, 2) in TL, TR, BR, BL quadrant order.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    centre = points.mean(axis=0)
    dx = points[:, 0] - centre[0]
    dy = points[:, 1] - centre[1]
    dist = np.hypot(dx, dy)

    quadrants = (
        (dx < 0) & (dy < 0),     # top-left
        (dx >= 0) & (dy < 0),    # top-right
        (dx >= 0) & (dy >= 0),   # bottom-right
        (dx < 0) & (dy >= 0),    # bottom-left
    )
    targets = np.array([[0, 0], [width, 0], [width, height], [0, height]], dtype=np.float64)

    chosen = np.empty((4, 2), dtype=np.float64)
    for q, in_quadrant in enumerate(quadrants):
        idx = np.flatnonzero(in_quadrant)
        if idx.size:
            chosen[q] = points[idx[np.argmax(dist[idx])]]
        else:
            near = np.hypot(points[:, 0] - targets[q, 0], points[:, 1] - targets[q, 1])
            chosen[q] = points[np.argmin(near)]
    return chosen


class ContourDetectionStrategy(DetectionStrategy):
    """
    1) grayscale → 5x5 Gaussian blur
    2) binary mask: Canny + dilation ("edges") or Otsu + open/close ("otsu")
    3) external contours, drop those under `min_area_ratio` of the raster
    4) largest contour → polygon with exactly 4 vertices, else quadrant reduction
    """

    requires_engine = True

    def __init__(self, mode: str = "edges", vision: VisionRepository | None = None,
                 min_area_ratio: float = None, max_dimension: int = None):
        if mode not in ("edges", "otsu"):
            raise ValueError(f"Unknown contour mask mode: {mode}")
        self.mode = mode
        self.name = mode
        self.vision = vision or VisionRepository()
        self.min_area_ratio = (float(os.getenv("DETECTION_MIN_AREA_RATIO", "0.1"))
                               if min_area_ratio is None else min_area_ratio)
        self.max_dimension = (int(os.getenv("DETECTION_MAX_DIMENSION", "1000"))
                              if max_dimension is None else max_dimension)

    def _working_gray(self, raster: Raster) -> tuple[np.ndarray, float]:
        """Grayscale image, downscaled so the long side is at most max_dimension."""
        gray = self.vision.to_gray(raster.pixels)
        scale = 1.0
        longest = max(raster.width, raster.height)
        if self.max_dimension and longest > self.max_dimension:
            scale = self.max_dimension / longest
            size = (max(1, round(raster.width * scale)), max(1, round(raster.height * scale)))
            gray = cv2.resize(gray, size, interpolation=cv2.INTER_AREA)
        return gray, scale

    def _mask(self, gray: np.ndarray) -> np.ndarray:
        blurred = self.vision.gaussian_blur(gray, ksize=5)
        if self.mode == "edges":
            return self.vision.edge_mask(blurred)
        return self.vision.otsu_mask(blurred)

    def _quadrilateral(self, contour: np.ndarray, width: float, height: float) -> np.ndarray:
        for ratio in EPSILON_RATIOS:
            approx = self.vision.approx_polygon(contour, ratio)
            if len(approx) == 4:
                logger.debug(f"[{self.name}] 4-vertex approximation at epsilon {ratio:.0%}")
                return approx

        approx = self.vision.approx_polygon(contour, FALLBACK_EPSILON)
        candidates = approx if len(approx) >= 4 else contour.reshape(-1, 2)
        logger.debug(f"[{self.name}] no 4-vertex approximation; reducing {len(candidates)} points by quadrant")
        return reduce_to_four(candidates, width, height)

    def find_corners(self, raster: Raster) -> CornerSet:
        gray, scale = self._working_gray(raster)
        h, w = gray.shape[:2]
        if gray.min() == gray.max():
            raise DetectionFailure(f"[{self.name}] image is a single flat tone")
        min_area = w * h * self.min_area_ratio

        contours = [c for c in self.vision.external_contours(self._mask(gray))
                    if self.vision.contour_area(c) >= min_area]
        if not contours:
            raise DetectionFailure(f"[{self.name}] no contour covers {self.min_area_ratio:.0%} of the image")

        best = max(contours, key=self.vision.contour_area)
        if self.vision.bounding_rect(best) == (0, 0, w, h):
            # the mask is the whole frame, not a page inside it
            raise DetectionFailure(f"[{self.name}] largest contour is the image border")
        quad = self._quadrilateral(best, w, h) / scale
        quad[:, 0] = np.clip(quad[:, 0], 0, raster.width)
        quad[:, 1] = np.clip(quad[:, 1], 0, raster.height)
        return CornerSet.canonical(quad.tolist())


# ─── Brightness scan (no OpenCV) ─────────────────────────────────────
class BrightnessScanStrategy(DetectionStrategy):
    """
    Simplified detector: walk inward from the top and from the bottom,
    starting at a 10 % margin, to the first row holding a pixel darker than
    `threshold`; the hits give the top and bottom corner pairs.
    """

    name = "scan"

    def __init__(self, threshold: float = 200, margin_ratio: float = 0.1):
        self.threshold = threshold
        self.margin_ratio = margin_ratio

    @staticmethod
    def _first_hit(dark: np.ndarray, rows: Sequence[int], margin: int):
        for y in rows:
            xs = np.flatnonzero(dark[y, margin:dark.shape[1] - margin])
            if xs.size:
                return y, int(xs[0]) + margin
        return None

    def find_corners(self, raster: Raster) -> CornerSet:
        w, h = raster.width, raster.height
        rgb = raster.pixels[:, :, :3]
        if rgb.min() == rgb.max():
            raise DetectionFailure("[scan] image is a single flat tone")
        margin = int(min(w, h) * self.margin_ratio)
        dark = rgb.mean(axis=2) < self.threshold

        corners = [[0, 0], [w, 0], [w, h], [0, h]]
        top = self._first_hit(dark, range(margin, h // 2), margin)
        bottom = self._first_hit(dark, range(min(h - margin, h - 1), h // 2, -1), margin)
        if top is None and bottom is None:
            raise DetectionFailure("[scan] no dark pixels inside the margin")

        if top is not None:
            y, x = top
            corners[0] = [max(0, x - margin), max(0, y - margin)]
            corners[1] = [min(w, w - x + margin), max(0, y - margin)]
        if bottom is not None:
            y, x = bottom
            corners[2] = [min(w, w - x + margin), min(h, y + margin)]
            corners[3] = [max(0, x - margin), min(h, y + margin)]
        return CornerSet.canonical(corners)


def build_strategies(names: str | Sequence[str] = None,
                     vision: VisionRepository | None = None) -> List[DetectionStrategy]:
    """Strategies from a comma-separated list: edges, otsu, scan."""
    if names is None:
        names = os.getenv("DETECTION_STRATEGIES", "edges,otsu,scan")
    if isinstance(names, str):
        names = [n.strip() for n in names.split(",") if n.strip()]

    strategies: List[DetectionStrategy] = []
    for name in names:
        if name in ("edges", "otsu"):
            vision = vision or VisionRepository()
            strategies.append(ContourDetectionStrategy(mode=name, vision=vision))
        elif name == "scan":
            strategies.append(BrightnessScanStrategy())
        else:
            raise ValueError(f"Unknown detection strategy: {name}")
    return strategies


class CornerDetectionService:
    """
    Business logic on top of the detection strategies.
    Never fails on a valid raster: the last resort is the full image extent.
    """

    def __init__(self, strategies: Sequence[DetectionStrategy] | None = None,
                 vision: VisionRepository | None = None):
        self.vision = vision or VisionRepository()
        self.strategies = list(strategies) if strategies is not None else build_strategies(vision=self.vision)

    def _available(self) -> List[DetectionStrategy]:
        if self.vision.ready:
            return self.strategies
        skipped = [s.name for s in self.strategies if s.requires_engine]
        if skipped:
            logger.warning(f"Vision engine not ready, skipping strategies: {', '.join(skipped)}")
        return [s for s in self.strategies if not s.requires_engine]

    def detect_with_report(self, raster: Raster) -> DetectionResult:
        if not isinstance(raster, Raster):
            raise UnsupportedInput(f"Expected a Raster, got {type(raster).__name__}")
        available = self._available()
        for i, strategy in enumerate(available):
            try:
                corners = strategy.find_corners(raster)
            except DetectionFailure as err:
                logger.info(f"Detection strategy '{strategy.name}' found nothing: {err}")
                continue
            except cv2.error as err:
                logger.warning(f"Detection strategy '{strategy.name}' failed in OpenCV: {err}")
                continue
            fallback = i > 0 or available[0] is not self.strategies[0]
            logger.info(f"Corners detected by '{strategy.name}': {corners}")
            return DetectionResult(corners=corners, strategy=strategy.name, fallback=fallback)

        logger.warning(f"No document boundary found in {raster.width}x{raster.height} image; "
                       f"using the full image extent")
        return DetectionResult(corners=raster.full_extent(), strategy="full_extent", fallback=True)

    def detect(self, raster: Raster) -> CornerSet:
        return self.detect_with_report(raster).corners

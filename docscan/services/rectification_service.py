from __future__ import annotations
from itertools import combinations
from typing import Iterable, Tuple, Union
import logging
import math
import os

import numpy as np
from dotenv import load_dotenv

from ..errors import InvalidGeometry, UnsupportedInput
from ..models.geometry import CornerSet
from ..models.raster import Raster
from ..repositories.vision_repository import VisionRepository

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Triangles thinner than this fraction of the squared corner spread count as collinear.
COLLINEAR_TOLERANCE = 1e-6


def solve_homography(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    3x3 projective transform H with H @ [src_i, 1] ~ [dst_i, 1] for four
    point pairs, from the standard 8x8 linear system (h33 fixed to 1).

    Raises:
        InvalidGeometry: three collinear points or a singular system.
    """
    src = np.asarray(src, dtype=np.float64).reshape(4, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(4, 2)

    for pts, label in ((src, "source"), (dst, "target")):
        spread = float(np.ptp(pts, axis=0).max()) ** 2
        if spread == 0:
            raise InvalidGeometry(f"All {label} corners coincide")
        for a, b, c in combinations(pts, 3):
            twice_area = abs((b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0]))
            if twice_area <= COLLINEAR_TOLERANCE * spread:
                raise InvalidGeometry(f"Three {label} corners are collinear: {a}, {b}, {c}")

    A = np.zeros((8, 8), dtype=np.float64)
    b = np.zeros(8, dtype=np.float64)
    for i, ((x, y), (u, v)) in enumerate(zip(src, dst)):
        A[2 * i] = [x, y, 1, 0, 0, 0, -x * u, -y * u]
        A[2 * i + 1] = [0, 0, 0, x, y, 1, -x * v, -y * v]
        b[2 * i] = u
        b[2 * i + 1] = v

    try:
        h = np.linalg.solve(A, b)
    except np.linalg.LinAlgError as err:
        raise InvalidGeometry(f"Perspective system is singular: {err}") from None

    H = np.append(h, 1.0).reshape(3, 3)
    if not np.all(np.isfinite(H)) or abs(np.linalg.det(H)) < 1e-12:
        raise InvalidGeometry("Perspective transform is degenerate")
    return H


class RectificationService:
    """
    Perspective rectification: maps a quadrilateral of the source raster onto
    an axis-aligned output raster.
    """

    def __init__(self, vision: VisionRepository | None = None,
                 min_output_size: int = None, margin_percent: float = None,
                 max_output_size: int = None):
        self.vision = vision or VisionRepository()
        self.min_output_size = (int(os.getenv("MIN_OUTPUT_SIZE", "100"))
                                if min_output_size is None else min_output_size)
        self.max_output_size = (int(os.getenv("MAX_OUTPUT_SIZE", "10000"))
                                if max_output_size is None else max_output_size)
        self.margin_percent = (float(os.getenv("OUTPUT_MARGIN_PERCENT", "1"))
                               if margin_percent is None else margin_percent)

    # ─── Output size ─────────────────────────────────────────────────
    def calculate_optimal_output_size(self, corners: Union[CornerSet, Iterable]) -> Tuple[int, int]:
        """
        Natural output size for `corners`: mean of the top and bottom edges for
        the width, mean of the left and right edges for the height, plus the
        margin, rounded up and floored at the minimum output size.
        """
        corners = corners if isinstance(corners, CornerSet) else CornerSet(corners)
        top, right, bottom, left = corners.edge_lengths()
        width = math.ceil((top + bottom) / 2 * (100 + self.margin_percent) / 100)
        height = math.ceil((left + right) / 2 * (100 + self.margin_percent) / 100)
        return max(self.min_output_size, width), max(self.min_output_size, height)

    def _output_size(self, value) -> int:
        if value is None:
            raise InvalidGeometry("Output size is missing")
        value = float(value)
        if not math.isfinite(value):
            raise InvalidGeometry(f"Output size must be finite, got {value}")
        size = max(self.min_output_size, int(math.floor(value)))
        if size > self.max_output_size:
            raise InvalidGeometry(f"Output size {size} exceeds the limit of {self.max_output_size} px")
        return size

    # ─── Public API ──────────────────────────────────────────────────
    def transform_matrix(self, corners: CornerSet, out_width: int, out_height: int) -> np.ndarray:
        """Homography taking output pixel coordinates to source coordinates."""
        target = np.array([[0, 0], [out_width, 0], [out_width, out_height], [0, out_height]],
                          dtype=np.float64)
        return solve_homography(target, corners.as_array())

    def rectify(
            self,
            raster: Raster,
            corners: Union[CornerSet, Iterable],
            out_width: float | None = None,
            out_height: float | None = None,
    ) -> Raster:
        """
        Resample the quadrilateral `corners` (TL, TR, BR, BL) of `raster` into
        an out_width x out_height raster. Sizes below the minimum are raised to
        it; omitted sizes use `calculate_optimal_output_size`. Source
        coordinates outside the raster are filled with opaque white.

        Raises:
            InvalidGeometry: malformed corners or a degenerate transform.
            UnsupportedInput: `raster` is not a Raster.
        """
        if not isinstance(raster, Raster):
            raise UnsupportedInput(f"Expected a Raster, got {type(raster).__name__}")
        corners = corners if isinstance(corners, CornerSet) else CornerSet(corners)

        if out_width is None or out_height is None:
            natural_w, natural_h = self.calculate_optimal_output_size(corners)
            out_width = natural_w if out_width is None else out_width
            out_height = natural_h if out_height is None else out_height
        width, height = self._output_size(out_width), self._output_size(out_height)

        if not corners.is_convex():
            logger.warning(f"Corners do not form a convex quadrilateral: {corners}")

        matrix = self.transform_matrix(corners, width, height)
        pixels = self.vision.warp_perspective(raster.pixels, matrix, (width, height))
        logger.info(f"Rectified {raster.width}x{raster.height} → {width}x{height}")
        return raster.with_pixels(pixels)

    def rectify_auto(self, raster: Raster, corners: Union[CornerSet, Iterable]) -> Raster:
        """Rectify at the natural output size of `corners`."""
        return self.rectify(raster, corners)

from __future__ import annotations
from typing import Tuple
import logging

import numpy as np

from ..models.filter_parameters import FilterParameters
from ..models.raster import Raster
from ..repositories.vision_repository import VisionRepository
from .filter_service import FilterService

logger = logging.getLogger(__name__)

# Fixed supplements of the auto preset
AUTO_SHARPNESS = 20.0
AUTO_SATURATION = 10.0
AUTO_DENOISE = 15.0
LOW_CONTRAST_RANGE = 50.0
MAX_AUTO_ADJUSTMENT = 50.0


class EnhancementService:
    """
    Derives brightness/contrast for the "auto" preset from the luminance
    histogram, then hands the result to the filter pipeline.
    *   No I/O here; works only with Raster objects.
    """

    def __init__(self, filter_service: FilterService | None = None,
                 vision: VisionRepository | None = None):
        self.vision = vision or VisionRepository()
        self.filter_service = filter_service or FilterService(vision=self.vision)

    # ─── Public API ────────────────────────────────────────────────
    def estimate(self, raster: Raster) -> FilterParameters:
        gray = self.vision.to_gray(raster.pixels)
        mean = float(gray.mean())
        lum_range = float(gray.max()) - float(gray.min())

        # Pull the mean toward mid-gray.
        brightness = float(np.clip((128 - mean) / 128 * MAX_AUTO_ADJUSTMENT,
                                   -MAX_AUTO_ADJUSTMENT, MAX_AUTO_ADJUSTMENT))
        # Only flat images get a contrast boost.
        contrast = 0.0
        if lum_range < LOW_CONTRAST_RANGE:
            contrast = min(MAX_AUTO_ADJUSTMENT, (LOW_CONTRAST_RANGE - lum_range) / 2)

        params = FilterParameters(
            brightness=brightness,
            contrast=contrast,
            sharpness=AUTO_SHARPNESS,
            saturation=AUTO_SATURATION,
            denoise=AUTO_DENOISE,
        )
        logger.info(f"Auto-enhance: mean={mean:.1f}, range={lum_range:.0f} → "
                    f"brightness={brightness:.1f}, contrast={contrast:.1f}")
        return params

    def auto_enhance(self, raster: Raster) -> Tuple[Raster, FilterParameters]:
        params = self.estimate(raster)
        return self.filter_service.apply_all(raster, params), params

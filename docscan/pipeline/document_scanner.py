"""
Document Scanner Pipeline
Chains the scanner steps: detect the page → rectify it → apply filters → export.
Services are optional keyword arguments so callers (CLI, API) can share instances.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Tuple, Union
import logging

from ..errors import InvalidGeometry
from ..models.filter_parameters import FilterParameters, PRESETS, preset
from ..models.geometry import CornerSet
from ..models.raster import Raster
from ..services.corner_detection_service import CornerDetectionService, DetectionResult
from ..services.enhancement_service import EnhancementService
from ..services.filter_service import FilterService
from ..services.image_service import ImageService
from ..services.rectification_service import RectificationService

logger = logging.getLogger(__name__)

FilterChoice = Union[str, FilterParameters, Mapping[str, float], None]


@dataclass
class ScanResult:
    source: Raster
    detection: DetectionResult
    rectified: Raster
    output: Raster
    params: FilterParameters = field(default_factory=FilterParameters)
    was_rectified: bool = True


def detect_document(
    raster: Raster,
    corners: CornerSet | None = None,
    *,
    detection_service: CornerDetectionService = None,
) -> DetectionResult:
    """Corners given by the caller win over automatic detection."""
    if corners is not None:
        corners = corners if isinstance(corners, CornerSet) else CornerSet(corners)
        return DetectionResult(corners=corners, strategy="manual", fallback=False)
    detection_service = detection_service or CornerDetectionService()
    return detection_service.detect_with_report(raster)


def rectify_document(
    raster: Raster,
    corners: CornerSet,
    size: Tuple[float, float] | None = None,
    *,
    rectification_service: RectificationService = None,
) -> Tuple[Raster, bool]:
    """
    Rectify `raster` to `corners`. On degenerate corners the input raster is
    returned unchanged and the flag is False.
    """
    rectification_service = rectification_service or RectificationService()
    out_w, out_h = size if size is not None else (None, None)
    try:
        return rectification_service.rectify(raster, corners, out_w, out_h), True
    except InvalidGeometry as err:
        logger.warning(f"Rectification skipped, keeping the original image: {err}")
        return raster, False


def enhance_document(
    raster: Raster,
    filters: FilterChoice = None,
    *,
    filter_service: FilterService = None,
    enhancement_service: EnhancementService = None,
) -> Tuple[Raster, FilterParameters]:
    """
    `filters` is a preset name ("reset", "document", "auto"), a
    FilterParameters, a {name: value} mapping or None (no filters).
    """
    filter_service = filter_service or FilterService()
    if isinstance(filters, str):
        if filters == "auto":
            enhancement_service = enhancement_service or EnhancementService(filter_service=filter_service)
            return enhancement_service.auto_enhance(raster)
        params = preset(filters)
    elif filters is None:
        params = FilterParameters()
    elif isinstance(filters, FilterParameters):
        params = filters
    else:
        params = FilterParameters.from_dict(filters)

    active = params.active_filters()
    if active:
        logger.info(f"Applying filters: {', '.join(active)}")
    return filter_service.apply_all(raster, params), params


def scan_document(
    raster: Raster,
    *,
    corners: CornerSet | None = None,
    filters: FilterChoice = None,
    size: Tuple[float, float] | None = None,
    rectify: bool = True,
    detection_service: CornerDetectionService = None,
    rectification_service: RectificationService = None,
    filter_service: FilterService = None,
) -> ScanResult:
    """Full scan of one raster: detect → rectify → filter."""
    detection = detect_document(raster, corners, detection_service=detection_service)
    if detection.fallback:
        logger.warning(f"Corners came from fallback '{detection.strategy}'; check them before trusting the result")

    rectified, was_rectified = raster, False
    if rectify:
        rectified, was_rectified = rectify_document(
            raster, detection.corners, size, rectification_service=rectification_service
        )

    output, params = enhance_document(rectified, filters, filter_service=filter_service)
    return ScanResult(
        source=raster,
        detection=detection,
        rectified=rectified,
        output=output,
        params=params,
        was_rectified=was_rectified,
    )


def export_document(
    raster: Raster,
    path: Union[str, Path],
    quality: int | None = None,
    *,
    image_service: ImageService = None,
) -> Path:
    """Write `raster` to `path`; the format follows the suffix (png, jpg, pdf)."""
    image_service = image_service or ImageService()
    path = Path(path)
    if not path.suffix:
        path = path.with_suffix(".png")
    saved = image_service.save(raster, path, quality)
    logger.info(f"Saved {raster.width}x{raster.height} scan to {saved}")
    return saved


def preset_names() -> list[str]:
    return [*PRESETS, "auto"]

import numpy as np
import pytest

from docscan.errors import DetectionFailure, UnsupportedInput
from docscan.models.raster import Raster
from docscan.repositories.vision_repository import VisionRepository
from docscan.services.corner_detection_service import (
    BrightnessScanStrategy,
    ContourDetectionStrategy,
    CornerDetectionService,
    build_strategies,
    reduce_to_four,
)

TOLERANCE = 10


class OfflineVision(VisionRepository):
    """Vision repository whose engine failed to start."""

    @property
    def ready(self) -> bool:
        return False


def assert_close(corners, expected, tol=TOLERANCE):
    for found, (x, y) in zip(corners, expected):
        assert abs(found.x - x) <= tol and abs(found.y - y) <= tol, f"{found} vs {(x, y)}"


@pytest.fixture(scope="module")
def service():
    return CornerDetectionService()


def test_detects_page_with_primary_strategy(service, document_raster, page_corners):
    result = service.detect_with_report(document_raster)
    assert result.strategy == "edges"
    assert result.fallback is False
    assert_close(result.corners, page_corners)


@pytest.mark.parametrize("mode", ["edges", "otsu"])
def test_contour_modes_find_page(mode, document_raster, page_corners):
    corners = ContourDetectionStrategy(mode=mode).find_corners(document_raster)
    assert_close(corners, page_corners)


def test_detection_on_downscaled_working_copy(document_raster, page_corners):
    corners = ContourDetectionStrategy(max_dimension=200).find_corners(document_raster)
    assert_close(corners, page_corners, tol=2 * TOLERANCE)


def test_detected_corners_are_inside_raster(service, document_raster):
    for p in service.detect(document_raster):
        assert 0 <= p.x <= document_raster.width
        assert 0 <= p.y <= document_raster.height


def test_uniform_image_falls_back_to_full_extent(service, gray_raster):
    result = service.detect_with_report(gray_raster)
    assert result.strategy == "full_extent"
    assert result.fallback is True
    assert [p.as_tuple() for p in result.corners] == [(0, 0), (160, 0), (160, 120), (0, 120)]


@pytest.mark.parametrize("mode", ["edges", "otsu"])
def test_contour_strategy_rejects_flat_image(mode, gray_raster):
    with pytest.raises(DetectionFailure):
        ContourDetectionStrategy(mode=mode).find_corners(gray_raster)


def test_otsu_rejects_mask_covering_whole_frame():
    # one dark speck keeps the image from being flat; the close fills it in
    rgb = np.full((120, 160, 3), 200, dtype=np.uint8)
    rgb[60, 80] = 20
    with pytest.raises(DetectionFailure):
        ContourDetectionStrategy(mode="otsu").find_corners(Raster.from_rgb(rgb))


def test_scan_strategy_rejects_flat_dark_image(gray_raster):
    with pytest.raises(DetectionFailure):
        BrightnessScanStrategy().find_corners(gray_raster)


@pytest.mark.parametrize("size", [(1, 1), (1, 7), (7, 1), (3, 3), (2, 50), (50, 2)])
@pytest.mark.parametrize("fill", ["blank", "dark", "noise"])
def test_tiny_rasters_always_give_four_corners(service, size, fill):
    w, h = size
    if fill == "blank":
        raster = Raster.blank(w, h)
    elif fill == "dark":
        raster = Raster.blank(w, h, color=(10, 10, 10, 255))
    else:
        rng = np.random.default_rng(3)
        raster = Raster(pixels=rng.integers(0, 256, size=(h, w, 4), dtype=np.uint8))
    corners = service.detect(raster)
    assert len(corners.as_list()) == 4
    for p in corners:
        assert 0 <= p.x <= w and 0 <= p.y <= h


def test_white_image_uses_full_extent():
    service = CornerDetectionService(strategies=[BrightnessScanStrategy()])
    result = service.detect_with_report(Raster.blank(50, 40))
    assert result.strategy == "full_extent"
    assert result.fallback is True
    assert [p.as_tuple() for p in result.corners] == [(0, 0), (50, 0), (50, 40), (0, 40)]


def test_offline_engine_skips_opencv_strategies(document_raster):
    vision = OfflineVision()
    service = CornerDetectionService(strategies=build_strategies("edges,scan", vision=vision), vision=vision)
    result = service.detect_with_report(document_raster)
    assert result.strategy == "scan"
    assert result.fallback is True


def test_contour_strategy_rejects_small_regions():
    rgb = np.full((200, 200, 3), 30, dtype=np.uint8)
    rgb[90:110, 90:110] = 240
    with pytest.raises(DetectionFailure):
        ContourDetectionStrategy(mode="edges").find_corners(Raster.from_rgb(rgb))


def test_scan_strategy_finds_dark_content():
    rgb = np.full((100, 100, 3), 255, dtype=np.uint8)
    rgb[30:70, 30:70] = 0
    corners = BrightnessScanStrategy().find_corners(Raster.from_rgb(rgb))
    assert corners.top_left.x < 30 and corners.top_left.y < 30
    assert corners.bottom_right.x > 70 and corners.bottom_right.y > 70


def test_scan_strategy_fails_on_blank_page():
    with pytest.raises(DetectionFailure):
        BrightnessScanStrategy().find_corners(Raster.blank(60, 60))


def test_reduce_to_four_picks_quadrant_extremes():
    octagon = np.array([[30, 0], [70, 0], [100, 30], [100, 70],
                        [70, 100], [30, 100], [0, 70], [0, 30]], dtype=np.float64)
    quad = reduce_to_four(octagon, 100, 100)
    assert quad.shape == (4, 2)
    # one point per quadrant, in TL, TR, BR, BL order
    assert quad[0, 0] < 50 and quad[0, 1] < 50
    assert quad[1, 0] > 50 and quad[1, 1] < 50
    assert quad[2, 0] > 50 and quad[2, 1] > 50
    assert quad[3, 0] < 50 and quad[3, 1] > 50


def test_unknown_strategy_name():
    with pytest.raises(ValueError):
        build_strategies("edges,magic")


def test_rejects_non_raster(service):
    with pytest.raises(UnsupportedInput):
        service.detect(np.zeros((10, 10, 4), dtype=np.uint8))

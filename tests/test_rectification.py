import numpy as np
import pytest

from docscan.errors import InvalidGeometry, UnsupportedInput
from docscan.models.geometry import CornerSet
from docscan.models.raster import Raster
from docscan.services.rectification_service import RectificationService, solve_homography


@pytest.fixture(scope="module")
def service():
    return RectificationService(min_output_size=100, margin_percent=1)


def test_homography_maps_all_four_points():
    src = np.array([[10, 20], [200, 5], [220, 180], [0, 160]], dtype=np.float64)
    dst = np.array([[0, 0], [300, 0], [300, 200], [0, 200]], dtype=np.float64)
    H = solve_homography(src, dst)
    for (x, y), (u, v) in zip(src, dst):
        p = H @ np.array([x, y, 1.0])
        assert p[0] / p[2] == pytest.approx(u, abs=1e-6)
        assert p[1] / p[2] == pytest.approx(v, abs=1e-6)


def test_homography_rejects_collinear_points():
    src = [[0, 0], [50, 0], [100, 0], [50, 50]]
    with pytest.raises(InvalidGeometry):
        solve_homography(src, [[0, 0], [1, 0], [1, 1], [0, 1]])


def test_homography_rejects_coincident_points():
    with pytest.raises(InvalidGeometry):
        solve_homography([[5, 5]] * 4, [[0, 0], [1, 0], [1, 1], [0, 1]])


def test_optimal_size_adds_margin(service):
    assert service.calculate_optimal_output_size(CornerSet.bounding_box(200, 300)) == (202, 303)


def test_optimal_size_has_a_floor(service):
    assert service.calculate_optimal_output_size(CornerSet.bounding_box(10, 20)) == (100, 100)


def test_optimal_size_averages_opposite_edges(service):
    trapezoid = CornerSet([(0, 0), (400, 0), (300, 200), (100, 200)])
    width, height = service.calculate_optimal_output_size(trapezoid)
    # top 400, bottom 200 → 300; sides sqrt(100² + 200²)
    assert width == 303
    assert height == int(np.ceil(np.hypot(100, 200) * 1.01))


def test_full_extent_at_same_size_is_identity(service, random_raster):
    out = service.rectify(random_raster, random_raster.full_extent(), 100, 100)
    assert np.array_equal(out.pixels, random_raster.pixels)


def test_output_size_follows_request(service, random_raster):
    out = service.rectify(random_raster, random_raster.full_extent(), 250.7, 130)
    assert out.size == (250, 130)


def test_small_requests_are_raised_to_minimum(service, random_raster):
    out = service.rectify(random_raster, random_raster.full_extent(), 20, 5)
    assert out.size == (100, 100)


def test_natural_size_when_omitted(service, random_raster):
    out = service.rectify(random_raster, random_raster.full_extent())
    assert out.size == (101, 101)


def test_outside_source_is_opaque_white(service):
    raster = Raster.blank(100, 100, color=(0, 0, 0, 255))
    corners = CornerSet([(-50, -50), (150, -50), (150, 150), (-50, 150)])
    out = service.rectify(raster, corners, 200, 200)
    assert tuple(out.pixels[5, 5]) == (255, 255, 255, 255)
    assert tuple(out.pixels[100, 100]) == (0, 0, 0, 255)


def test_rectified_page_is_the_page(service, document_raster, page_corners):
    out = service.rectify(document_raster, page_corners)
    lum = out.luminance()
    # away from the text lines everything is paper
    assert lum[5:25, 10:-10].mean() > 220
    assert lum[-30:-10, 10:-10].mean() > 220


@pytest.mark.parametrize("corners", [
    [(0, 0), (50, 0), (100, 0), (50, 50)],
    [(0, 0), (10, 10), (20, 20), (30, 30)],
    [(0, 0), (1, 0), (1, 1)],
    [(0, 0), (1, 0), (1, float("nan")), (0, 1)],
])
def test_degenerate_corners(service, random_raster, corners):
    with pytest.raises(InvalidGeometry):
        service.rectify(random_raster, corners, 100, 100)


def test_missing_size_value_is_invalid(service, random_raster):
    with pytest.raises(InvalidGeometry):
        service.rectify(random_raster, random_raster.full_extent(), float("inf"), 100)


def test_rejects_non_raster(service):
    with pytest.raises(UnsupportedInput):
        service.rectify(np.zeros((10, 10, 4), dtype=np.uint8), CornerSet.bounding_box(10, 10))


def test_rectify_auto_uses_natural_size(service, document_raster, page_corners):
    expected = service.calculate_optimal_output_size(page_corners)
    assert service.rectify_auto(document_raster, page_corners).size == expected


@pytest.mark.parametrize("size", [(20001, 200), (200, 50000), (1e12, 1e12)])
def test_requests_above_the_limit_are_rejected(random_raster, size):
    capped = RectificationService(min_output_size=100, margin_percent=1, max_output_size=20000)
    with pytest.raises(InvalidGeometry):
        capped.rectify(random_raster, random_raster.full_extent(), *size)


def test_natural_size_above_the_limit_is_rejected(random_raster):
    capped = RectificationService(min_output_size=100, margin_percent=1, max_output_size=500)
    huge = CornerSet([(-1000, -1000), (1000, -1000), (1000, 1000), (-1000, 1000)])
    with pytest.raises(InvalidGeometry):
        capped.rectify_auto(random_raster, huge)


def test_limit_itself_is_allowed(random_raster):
    capped = RectificationService(min_output_size=100, margin_percent=1, max_output_size=300)
    assert capped.rectify(random_raster, random_raster.full_extent(), 300, 120).size == (300, 120)


def test_limit_comes_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_OUTPUT_SIZE", "640")
    assert RectificationService().max_output_size == 640

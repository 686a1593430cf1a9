import numpy as np
import pytest
from PIL import Image as PILImage

from docscan.models.filter_parameters import FilterParameters
from docscan.models.geometry import CornerSet
from docscan.pipeline.document_scanner import (
    detect_document,
    enhance_document,
    export_document,
    preset_names,
    rectify_document,
    scan_document,
)


def test_scan_document_end_to_end(document_raster):
    result = scan_document(document_raster, filters="document")
    assert result.detection.strategy == "edges"
    assert result.was_rectified
    assert result.params.binarization == 60
    # rectified page is roughly the page size, not the photo size
    assert 260 <= result.output.width <= 320
    assert 180 <= result.output.height <= 230
    assert result.output.size == result.rectified.size


def test_manual_corners_skip_detection(document_raster, page_corners):
    detection = detect_document(document_raster, page_corners)
    assert detection.strategy == "manual"
    assert detection.fallback is False
    assert detection.corners == CornerSet(page_corners)


def test_explicit_output_size(document_raster, page_corners):
    result = scan_document(document_raster, corners=page_corners, size=(600, 400))
    assert result.output.size == (600, 400)
    assert result.params.is_neutral()


def test_degenerate_corners_keep_original(random_raster):
    collinear = CornerSet([(0, 0), (50, 0), (100, 0), (50, 50)])
    out, rectified = rectify_document(random_raster, collinear)
    assert rectified is False
    assert out is random_raster


def test_no_rectify_keeps_geometry(document_raster):
    result = scan_document(document_raster, rectify=False, filters={"brightness": 10})
    assert result.was_rectified is False
    assert result.output.size == document_raster.size


def test_enhance_with_auto_preset(gray_raster):
    out, params = enhance_document(gray_raster, "auto")
    assert params.contrast == pytest.approx(25)
    assert out.size == gray_raster.size


def test_enhance_with_parameters(two_tone_raster):
    out, params = enhance_document(two_tone_raster, FilterParameters(binarization=100))
    assert set(np.unique(out.rgb)) == {0, 255}


def test_enhance_with_unknown_preset(gray_raster):
    with pytest.raises(ValueError):
        enhance_document(gray_raster, "sepia")


def test_export_defaults_to_png(random_raster, tmp_path):
    saved = export_document(random_raster, tmp_path / "scan")
    assert saved.suffix == ".png"
    assert PILImage.open(saved).size == (100, 100)


def test_export_pdf(random_raster, tmp_path):
    saved = export_document(random_raster, tmp_path / "scan.pdf")
    assert saved.read_bytes().startswith(b"%PDF")


def test_preset_names():
    assert preset_names() == ["reset", "document", "auto"]

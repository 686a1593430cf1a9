import cv2
import numpy as np
import pytest

from docscan.models.raster import Raster

# Page corners of the synthetic photo, TL, TR, BR, BL.
PAGE_CORNERS = [(60, 40), (330, 60), (350, 260), (40, 240)]


@pytest.fixture
def page_corners():
    return list(PAGE_CORNERS)


@pytest.fixture
def document_raster():
    """400x300 photo: a bright, slightly skewed page on a dark desk."""
    rgb = np.full((300, 400, 3), 40, dtype=np.uint8)
    cv2.fillPoly(rgb, [np.array(PAGE_CORNERS, dtype=np.int32)], (235, 235, 230))
    # a few lines of "text"
    for y in (100, 130, 160, 190):
        cv2.line(rgb, (100, y), (290, y + 8), (30, 30, 30), 3)
    return Raster.from_rgb(rgb)


@pytest.fixture
def gray_raster():
    return Raster.from_rgb(np.full((120, 160, 3), 128, dtype=np.uint8))


@pytest.fixture
def two_tone_raster():
    """Left half dark (50), right half light (200)."""
    rgb = np.full((60, 80, 3), 200, dtype=np.uint8)
    rgb[:, :40] = 50
    return Raster.from_rgb(rgb)


@pytest.fixture
def random_raster():
    rng = np.random.default_rng(7)
    return Raster.from_rgba(rng.integers(0, 256, size=(100, 100, 4), dtype=np.uint8))

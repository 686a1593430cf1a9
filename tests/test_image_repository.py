from io import BytesIO
import re

import cv2
import numpy as np
import pytest
from PIL import Image as PILImage

from docscan.errors import UnsupportedInput
from docscan.models.raster import Raster
from docscan.repositories.image_repository import ImageRepository
from docscan.services.image_service import ImageService


@pytest.fixture
def repo():
    return ImageRepository()


def png_bytes(bgr: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", bgr)
    assert ok
    return buf.tobytes()


def test_decode_converts_bgr_to_rgba(repo):
    bgr = np.zeros((4, 6, 3), dtype=np.uint8)
    bgr[:, :, 0] = 255  # blue in OpenCV order
    raster = repo.decode(png_bytes(bgr), "photo.png")
    assert raster.size == (6, 4)
    assert tuple(raster.pixels[0, 0]) == (0, 0, 255, 255)


def test_decode_grayscale(repo):
    gray = np.full((3, 3), 77, dtype=np.uint8)
    raster = repo.decode(png_bytes(gray), "scan.PNG")
    assert tuple(raster.pixels[1, 1]) == (77, 77, 77, 255)


def test_decode_keeps_transparency(repo):
    bgra = np.zeros((2, 2, 4), dtype=np.uint8)
    bgra[:, :, 3] = 100
    assert (repo.decode(png_bytes(bgra), "a.png").alpha == 100).all()


@pytest.mark.parametrize("name", ["notes.gif", "notes.tiff", "notes"])
def test_rejects_extension(repo, name):
    with pytest.raises(UnsupportedInput):
        repo.decode(png_bytes(np.zeros((2, 2, 3), dtype=np.uint8)), name)


def test_rejects_empty_and_garbage(repo):
    with pytest.raises(UnsupportedInput):
        repo.decode(b"", "a.png")
    with pytest.raises(UnsupportedInput):
        repo.decode(b"definitely not an image", "a.png")


def test_rejects_oversized_upload(repo):
    repo.MAX_BYTES = 10
    with pytest.raises(UnsupportedInput, match="limit"):
        repo.decode(png_bytes(np.zeros((20, 20, 3), dtype=np.uint8)), "a.png")


def test_load_missing_file(repo, tmp_path):
    with pytest.raises(FileNotFoundError):
        repo.load(tmp_path / "missing.jpg")


def test_save_and_load_png_is_lossless(repo, random_raster, tmp_path):
    path = repo.save(random_raster, tmp_path / "out" / "page.png")
    assert path.exists()
    loaded = repo.load(path)
    assert np.array_equal(loaded.pixels, random_raster.pixels)
    assert loaded.path == path


def test_jpeg_flattens_transparency_onto_white(repo):
    raster = Raster.blank(8, 8, color=(0, 0, 0, 0))
    img = PILImage.open(BytesIO(repo.encode_jpeg(raster)))
    assert img.format == "JPEG"
    assert img.mode == "RGB"
    assert min(img.getpixel((4, 4))) > 245


def test_pdf_page_matches_raster_size(repo):
    landscape = Raster.blank(300, 200)
    data = repo.encode_pdf(landscape)
    assert data.startswith(b"%PDF")
    assert re.search(rb"/MediaBox \[\s*0 0 300(\.0)? 200(\.0)?\s*\]", data)


def test_unknown_export_format():
    with pytest.raises(ValueError):
        ImageService().export(Raster.blank(4, 4), "tiff")


def test_export_mimetypes():
    assert ImageService.mimetype("jpg") == "image/jpeg"
    assert ImageService.mimetype(".PDF") == "application/pdf"

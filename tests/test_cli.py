import pytest
from PIL import Image as PILImage
from typer.testing import CliRunner

from docscan.cli.scan_document import app, parse_corners, parse_settings, parse_size
from docscan.models.filter_parameters import FilterParameters
from docscan.repositories.image_repository import ImageRepository

runner = CliRunner()


@pytest.fixture
def photo(tmp_path, document_raster):
    return ImageRepository().save(document_raster, tmp_path / "photo.png")


def test_scan_with_defaults(photo):
    result = runner.invoke(app, [str(photo)])
    assert result.exit_code == 0, result.output
    out = photo.with_name("photo_scan.png")
    assert out.exists()
    assert "edges" in result.output


def test_scan_to_pdf_with_preset(photo, tmp_path):
    out = tmp_path / "page.pdf"
    result = runner.invoke(app, [str(photo), "-o", str(out), "--preset", "document"])
    assert result.exit_code == 0, result.output
    assert out.read_bytes().startswith(b"%PDF")


def test_manual_corners_and_size(photo, tmp_path):
    out = tmp_path / "page.jpg"
    result = runner.invoke(app, [
        str(photo), "-o", str(out),
        "--corners", "60,40 330,60 350,260 40,240",
        "--size", "500x700",
        "--set", "contrast=20",
    ])
    assert result.exit_code == 0, result.output
    assert "manual" in result.output
    assert PILImage.open(out).size == (500, 700)


def test_missing_input_exits_with_error(tmp_path):
    result = runner.invoke(app, [str(tmp_path / "nothing.png")])
    assert result.exit_code == 1


def test_unknown_preset_is_a_usage_error(photo):
    result = runner.invoke(app, [str(photo), "--preset", "sepia"])
    assert result.exit_code == 2


def test_parse_helpers():
    assert parse_size("640x480") == (640.0, 480.0)
    corners = parse_corners("0,0;10,0;10,10;0,10")
    assert corners.bottom_right.as_tuple() == (10.0, 10.0)
    params = parse_settings(["contrast=15", "whiteBackground=30"], FilterParameters(sharpness=5))
    assert (params.contrast, params.white_background, params.sharpness) == (15, 30, 5)


@pytest.mark.parametrize("size", ["90000x100", "100xinf"])
def test_oversized_output_is_a_usage_error(photo, size, monkeypatch):
    monkeypatch.setenv("MAX_OUTPUT_SIZE", "10000")
    result = runner.invoke(app, [str(photo), "--size", size])
    assert result.exit_code == 2

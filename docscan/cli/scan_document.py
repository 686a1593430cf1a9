import logging
import math
import os
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

from ..errors import InvalidGeometry, ScannerError
from ..models.filter_parameters import FilterParameters, RANGES, preset as load_preset
from ..models.geometry import CornerSet
from ..models.vision_engine import VisionEngine
from ..pipeline.document_scanner import export_document, preset_names, scan_document
from ..services.image_service import ImageService

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Scan a photographed document into a flat, clean page.")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)-25s - %(levelname)-8s - %(message)s',
        datefmt='%H:%M:%S'
    )


def parse_corners(text: str) -> CornerSet:
    """"x1,y1,x2,y2,x3,y3,x4,y4" in TL, TR, BR, BL order."""
    try:
        values = [float(v) for v in text.replace(";", ",").replace(" ", ",").split(",") if v.strip()]
    except ValueError:
        raise typer.BadParameter(f"Corners must be numbers: {text}")
    if len(values) != 8:
        raise typer.BadParameter(f"Expected 8 numbers (4 x,y pairs), got {len(values)}")
    try:
        return CornerSet(list(zip(values[0::2], values[1::2])))
    except InvalidGeometry as err:
        raise typer.BadParameter(str(err))


def parse_size(text: str) -> Tuple[float, float]:
    """"WxH", e.g. 1240x1754. Each side is at most MAX_OUTPUT_SIZE."""
    try:
        w, h = text.lower().split("x")
        w, h = float(w), float(h)
    except ValueError:
        raise typer.BadParameter(f"Size must look like WIDTHxHEIGHT, got {text}")
    limit = int(os.getenv("MAX_OUTPUT_SIZE", "10000"))
    if not all(math.isfinite(v) and v <= limit for v in (w, h)):
        raise typer.BadParameter(f"Size must be finite and at most {limit} px per side, got {text}")
    return w, h


def parse_settings(items: List[str], base: FilterParameters) -> FilterParameters:
    """Apply "name=value" overrides on top of `base`."""
    values = base.as_dict()
    for item in items:
        name, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Filter setting must be name=value, got {item}")
        values[name.strip()] = value.strip()
    try:
        return FilterParameters.from_dict(values)
    except ValueError as err:
        raise typer.BadParameter(f"{err}. Filters: {', '.join(RANGES)}")


@app.command()
def scan(
    input_path: Path = typer.Argument(..., help="Photo of the document"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (.png, .jpg or .pdf)"),
    corners: Optional[str] = typer.Option(None, "--corners", help="x,y x,y x,y x,y in TL, TR, BR, BL order"),
    preset: Optional[str] = typer.Option(None, "--preset", help="reset, document or auto"),
    settings: List[str] = typer.Option([], "--set", help="Filter override, e.g. --set contrast=30"),
    size: Optional[str] = typer.Option(None, "--size", help="Output size WIDTHxHEIGHT"),
    quality: Optional[int] = typer.Option(None, "--quality", min=1, max=100, help="JPEG quality"),
    no_rectify: bool = typer.Option(False, "--no-rectify", help="Skip perspective correction"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Detect the page, rectify it, apply filters and save the result."""
    _setup_logging(verbose)

    if preset is not None and preset not in preset_names():
        raise typer.BadParameter(f"Unknown preset '{preset}'. Use one of: {', '.join(preset_names())}")
    if preset == "auto" and settings:
        raise typer.BadParameter("--set cannot be combined with --preset auto")

    manual_corners = parse_corners(corners) if corners else None
    out_size = parse_size(size) if size else None
    filters = preset
    if settings:
        filters = parse_settings(settings, load_preset(preset) if preset else FilterParameters())

    output = output or input_path.with_name(f"{input_path.stem}_scan.png")

    status = VisionEngine().status
    if not status.ready:
        logger.warning(f"Vision engine unavailable ({status.error}); using the basic detector")

    try:
        raster = ImageService().load(input_path)
        result = scan_document(
            raster,
            corners=manual_corners,
            filters=filters,
            size=out_size,
            rectify=not no_rectify,
        )
        saved = export_document(result.output, output, quality)
    except (FileNotFoundError, ValueError) as err:
        logger.error(str(err))
        raise typer.Exit(code=1)
    except ScannerError as err:
        logger.error(f"Scan failed: {err}")
        raise typer.Exit(code=1)

    typer.echo(f"Corners ({result.detection.strategy}): "
               + ", ".join(f"({p.x:.0f}, {p.y:.0f})" for p in result.detection.corners))
    typer.echo(f"Saved {result.output.width}x{result.output.height} → {saved}")


def main():
    app()


if __name__ == "__main__":
    main()

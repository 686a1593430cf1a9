from __future__ import annotations
from pathlib import Path
from typing import Union
import os

from dotenv import load_dotenv

from ..models.raster import Raster
from ..repositories.image_repository import ImageRepository

# Load environment variables
load_dotenv()

EXPORT_FORMATS = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "pdf": "application/pdf",
}


class ImageService:
    """I/O helpers.  No CV logic."""
    def __init__(self):
        self.JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "95"))
        self.image_repository = ImageRepository()

    def load(self, path: Union[str, Path]) -> Raster:
        """Load a single image from disk into a Raster."""
        return self.image_repository.load(path)

    def decode(self, data: bytes, filename: str | None = None) -> Raster:
        """Decode an uploaded image body into a Raster."""
        return self.image_repository.decode(data, filename)

    def export(self, raster: Raster, fmt: str, quality: int | None = None) -> bytes:
        """
        Encode a Raster for download.

        Args:
            raster (Raster): The image to encode.
            fmt (str): png, jpg/jpeg or pdf.
            quality (int): JPEG quality, defaults to JPEG_QUALITY.
        Returns:
            The encoded file body.
        """
        fmt = fmt.lower().lstrip(".")
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}. Use one of: png, jpg, pdf")
        return self.image_repository.encode(raster, fmt, quality or self.JPEG_QUALITY)

    @staticmethod
    def mimetype(fmt: str) -> str:
        return EXPORT_FORMATS[fmt.lower().lstrip(".")]

    def save(self, raster: Raster, path: Union[str, Path], quality: int | None = None) -> Path:
        """Save the raster; the format follows the file extension."""
        return self.image_repository.save(raster, path, quality or self.JPEG_QUALITY)

from __future__ import annotations
from io import BytesIO
from pathlib import Path
from typing import Union
import os

import cv2
import numpy as np
from PIL import Image as PILImage
from dotenv import load_dotenv

from ..errors import UnsupportedInput
from ..models.raster import Raster

# Load environment variables
load_dotenv()


class ImageRepository:
    """
    Handles decoding, encoding and file I/O for Raster entities.
    """
    def __init__(self):
        self.VALID_EXTS = {
            ext.strip().lower()
            for ext in os.getenv("VALID_IMAGE_EXTENSIONS", ".jpg,.jpeg,.png,.webp").split(",")
            if ext.strip()
        }
        self.MAX_BYTES = int(float(os.getenv("MAX_UPLOAD_SIZE_MB", "10")) * 1024 * 1024)
        self.JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "95"))

    # ─── Validation ──────────────────────────────────────────────────
    def check_extension(self, name: Union[str, Path]) -> None:
        suffix = Path(name).suffix.lower()
        if suffix not in self.VALID_EXTS:
            raise UnsupportedInput(
                f"Unsupported file type '{suffix or name}'. Allowed: {', '.join(sorted(self.VALID_EXTS))}"
            )

    def check_size(self, num_bytes: int) -> None:
        if num_bytes == 0:
            raise UnsupportedInput("Image file is empty")
        if num_bytes > self.MAX_BYTES:
            raise UnsupportedInput(
                f"Image is {num_bytes / (1024 * 1024):.1f}MB, limit is {self.MAX_BYTES // (1024 * 1024)}MB"
            )

    # ─── Decoding ────────────────────────────────────────────────────
    @staticmethod
    def _to_rgba(arr: np.ndarray) -> np.ndarray:
        """Normalise whatever OpenCV decoded (gray, BGR, BGRA, 16-bit) to uint8 RGBA."""
        if arr.dtype == np.uint16:
            arr = (arr >> 8).astype(np.uint8)
        elif arr.dtype != np.uint8:
            raise UnsupportedInput(f"Unsupported pixel depth: {arr.dtype}")

        if arr.ndim == 2:
            return cv2.cvtColor(arr, cv2.COLOR_GRAY2RGBA)
        channels = arr.shape[2]
        if channels == 1:
            return cv2.cvtColor(arr[:, :, 0], cv2.COLOR_GRAY2RGBA)
        if channels == 3:
            return cv2.cvtColor(arr, cv2.COLOR_BGR2RGBA)
        if channels == 4:
            return cv2.cvtColor(arr, cv2.COLOR_BGRA2RGBA)
        raise UnsupportedInput(f"Unsupported channel count: {channels}")

    def decode(self, data: bytes, filename: str | None = None) -> Raster:
        """Decode an uploaded file body into a Raster."""
        if filename is not None:
            self.check_extension(filename)
        self.check_size(len(data))

        arr = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        if arr is None:
            raise UnsupportedInput(f"Could not decode image {filename or ''}".strip())
        return Raster(pixels=self._to_rgba(arr), path=Path(filename) if filename else None)

    def load(self, path: Union[str, Path]) -> Raster:
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Image not found: {path}")
        self.check_extension(path)
        self.check_size(path.stat().st_size)

        arr = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        if arr is None:
            raise UnsupportedInput(f"Image unreadable: {path}")
        return Raster(pixels=self._to_rgba(arr), path=path)

    # ─── Encoding ────────────────────────────────────────────────────
    @staticmethod
    def to_pil(raster: Raster) -> PILImage.Image:
        return PILImage.fromarray(raster.pixels)

    @classmethod
    def _flatten(cls, raster: Raster) -> PILImage.Image:
        """RGB image with any transparency composited onto white."""
        rgba = cls.to_pil(raster)
        if raster.alpha.min() == 255:
            return rgba.convert("RGB")
        background = PILImage.new("RGBA", rgba.size, (255, 255, 255, 255))
        return PILImage.alpha_composite(background, rgba).convert("RGB")

    def encode_png(self, raster: Raster) -> bytes:
        buffer = BytesIO()
        self.to_pil(raster).save(buffer, format="PNG")
        return buffer.getvalue()

    def encode_jpeg(self, raster: Raster, quality: int | None = None) -> bytes:
        buffer = BytesIO()
        self._flatten(raster).save(buffer, format="JPEG", quality=quality or self.JPEG_QUALITY)
        return buffer.getvalue()

    def encode_pdf(self, raster: Raster) -> bytes:
        """
        Single-page PDF with the page sized to the raster's pixel dimensions
        (72 dpi, so one pixel is one PDF point).
        """
        buffer = BytesIO()
        self._flatten(raster).save(buffer, format="PDF", resolution=72.0)
        return buffer.getvalue()

    def encode(self, raster: Raster, fmt: str, quality: int | None = None) -> bytes:
        fmt = fmt.lower().lstrip(".")
        if fmt == "png":
            return self.encode_png(raster)
        if fmt in ("jpg", "jpeg"):
            return self.encode_jpeg(raster, quality)
        if fmt == "pdf":
            return self.encode_pdf(raster)
        raise ValueError(f"Unsupported export format: {fmt}")

    def save(self, raster: Raster, path: Union[str, Path], quality: int | None = None) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.encode(raster, path.suffix or ".png", quality))
        return path

# repositories/vision_repository.py
from __future__ import annotations
from typing import List, Tuple
import cv2
import numpy as np

from ..models.vision_engine import VisionEngine


class VisionRepository:
    """
    Low-level OpenCV primitives used by detection, rectification and filters.

    • Every method takes and returns numpy arrays, never Raster objects.
    • Inputs are never modified in place.
    """

    WHITE = (255, 255, 255, 255)

    def __init__(self, engine: VisionEngine | None = None) -> None:
        self.engine = engine or VisionEngine()

    @property
    def ready(self) -> bool:
        return self.engine.ready

    # ---------- colour ----------
    @staticmethod
    def to_gray(rgba: np.ndarray) -> np.ndarray:
        """uint8 (H, W) luminance from RGBA pixels (0.299R + 0.587G + 0.114B)."""
        return cv2.cvtColor(rgba, cv2.COLOR_RGBA2GRAY)

    # ---------- smoothing ----------
    @staticmethod
    def gaussian_blur(img: np.ndarray, ksize: int = 5, sigma: float = 0) -> np.ndarray:
        """ksize=0 lets OpenCV derive the kernel from sigma."""
        return cv2.GaussianBlur(img, (ksize, ksize), sigmaX=sigma, sigmaY=sigma)

    @staticmethod
    def median_blur(img: np.ndarray, ksize: int) -> np.ndarray:
        """Per-channel median over a ksize x ksize window (ksize odd, >= 3)."""
        return cv2.medianBlur(np.ascontiguousarray(img), ksize)

    @staticmethod
    def box_mean(img: np.ndarray, ksize: int) -> np.ndarray:
        """Mean over a ksize x ksize block around every pixel, edges replicated."""
        return cv2.blur(img, (ksize, ksize), borderType=cv2.BORDER_REPLICATE)

    # ---------- masks ----------
    @staticmethod
    def edge_mask(gray: np.ndarray, low: int = 50, high: int = 150,
                  dilate_iterations: int = 2) -> np.ndarray:
        """
        1) Canny edges
        2) Dilate with a 3x3 rectangle to close gaps in the outline
        """
        edges = cv2.Canny(gray, low, high, apertureSize=3)
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        return cv2.dilate(edges, kernel, iterations=dilate_iterations)

    @staticmethod
    def otsu_mask(gray: np.ndarray, kernel_size: int = 5) -> np.ndarray:
        """
        1) Global Otsu threshold (bright page → 255)
        2) Open to drop specks, close to fill text holes
        """
        _, mask = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
        kernel = np.ones((kernel_size, kernel_size), np.uint8)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel, iterations=1)
        return cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel, iterations=2)

    @staticmethod
    def otsu_threshold(gray: np.ndarray) -> Tuple[float, np.ndarray]:
        """Otsu level and the matching 0/255 binary image."""
        level, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
        return float(level), binary

    # ---------- contours ----------
    @staticmethod
    def external_contours(mask: np.ndarray) -> List[np.ndarray]:
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        return list(contours)

    @staticmethod
    def contour_area(contour: np.ndarray) -> float:
        return float(cv2.contourArea(contour))

    @staticmethod
    def bounding_rect(contour: np.ndarray) -> Tuple[int, int, int, int]:
        """Axis-aligned (x, y, width, height) of a contour."""
        x, y, w, h = cv2.boundingRect(contour)
        return int(x), int(y), int(w), int(h)

    @staticmethod
    def approx_polygon(contour: np.ndarray, epsilon_ratio: float) -> np.ndarray:
        """Douglas-Peucker approximation, tolerance = ratio * closed perimeter. Returns (N, 2) float."""
        epsilon = epsilon_ratio * cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, epsilon, True)
        return approx.reshape(-1, 2).astype(np.float64)

    # ---------- geometry ----------
    def warp_perspective(
            self,
            rgba: np.ndarray,
            dst_to_src: np.ndarray,
            size: Tuple[int, int],
    ) -> np.ndarray:
        """
        Resample `rgba` into a `size` (width, height) raster.

        `dst_to_src` maps output pixel coordinates to source coordinates.
        Bilinear sampling; anything outside the source becomes opaque white.
        """
        self.engine.require()
        return cv2.warpPerspective(
            rgba,
            dst_to_src,
            size,
            flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=self.WHITE,
        )

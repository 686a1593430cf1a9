from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
import logging
import os

import cv2
import numpy as np
from dotenv import load_dotenv

from ..errors import EngineUnavailable

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineStatus:
    ready: bool
    version: str | None = None
    error: str | None = None


class VisionEngine:
    """
    Singleton owning the OpenCV runtime settings.

    Initialised once: applies the thread count, runs a small warm-up under a
    single timeout and records the outcome as an EngineStatus. Repositories
    receive the engine explicitly instead of touching cv2 globals themselves.
    """

    _instance: VisionEngine | None = None  # Class-level cache for singleton

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._init_engine(*args, **kwargs)
        return cls._instance

    def _init_engine(self, num_threads: int = None, timeout: float = None):
        """
        Args:
            num_threads (int): OpenCV worker threads, 0 = let OpenCV decide. Defaults to env var.
            timeout (float): Seconds allowed for the warm-up run. Defaults to env var.
        """
        if num_threads is None:
            num_threads = int(os.getenv("OPENCV_NUM_THREADS", "0"))
        if timeout is None:
            timeout = float(os.getenv("VISION_INIT_TIMEOUT", "10"))
        self.num_threads = num_threads
        self.timeout = timeout
        self.status = self._initialise()

    def _initialise(self) -> EngineStatus:
        try:
            if self.num_threads > 0:
                cv2.setNumThreads(self.num_threads)
            with ThreadPoolExecutor(max_workers=1) as pool:
                pool.submit(self._warm_up).result(timeout=self.timeout)
        except FutureTimeout:
            logger.error(f"OpenCV warm-up timed out after {self.timeout}s")
            return EngineStatus(ready=False, error=f"warm-up timed out after {self.timeout}s")
        except cv2.error as err:
            logger.error(f"OpenCV warm-up failed: {err}")
            return EngineStatus(ready=False, error=str(err))

        logger.info(f"OpenCV {cv2.__version__} ready (threads={cv2.getNumThreads()})")
        return EngineStatus(ready=True, version=cv2.__version__)

    @staticmethod
    def _warm_up() -> None:
        sample = np.zeros((16, 16), dtype=np.uint8)
        sample[4:12, 4:12] = 255
        blurred = cv2.GaussianBlur(sample, (5, 5), 0)
        cv2.findContours(cv2.Canny(blurred, 50, 150), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    @property
    def ready(self) -> bool:
        return self.status.ready

    def require(self) -> None:
        """Raise EngineUnavailable unless the engine initialised."""
        if not self.status.ready:
            raise EngineUnavailable(f"Vision engine unavailable: {self.status.error}")

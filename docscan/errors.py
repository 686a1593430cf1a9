from __future__ import annotations


class ScannerError(Exception):
    """Base class for every error raised by the scanner core."""


class UnsupportedInput(ScannerError):
    """Raster or file the scanner cannot work with (empty, malformed, disallowed)."""


class InvalidGeometry(ScannerError):
    """Corner set that cannot define a perspective transform."""


class DetectionFailure(ScannerError):
    """A detection strategy found no document boundary."""


class EngineUnavailable(ScannerError):
    """The vision engine failed to initialise."""


class FilterStageError(ScannerError):
    """
    A filter stage failed. The pipeline stops at the failing stage;
    `last_raster` is the last complete raster produced before it.
    """

    def __init__(self, stage: str, cause: Exception, last_raster=None):
        super().__init__(f"Filter stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause
        self.last_raster = last_raster

from __future__ import annotations
from dataclasses import dataclass, asdict, fields, replace
from typing import Dict, Mapping, Tuple
import math


# Slider bounds, in the units the UI shows.
RANGES: Dict[str, Tuple[float, float]] = {
    "brightness":       (-100.0, 100.0),
    "contrast":         (-100.0, 100.0),
    "sharpness":        (0.0, 200.0),
    "saturation":       (-100.0, 100.0),
    "denoise":          (0.0, 100.0),
    "temperature":      (-100.0, 100.0),
    "tint":             (-100.0, 100.0),
    "binarization":     (0.0, 100.0),
    "white_background": (0.0, 100.0),
    "text_enhancement": (0.0, 100.0),
}

# Keys as the browser front-end sends them.
_CAMEL_CASE = {
    "whiteBackground": "white_background",
    "textEnhancement": "text_enhancement",
}


@dataclass
class FilterParameters:
    """
    Value-object holding every filter slider.
    0 is the neutral value of every field; a neutral filter is skipped.
    """
    brightness:       float = 0.0   # [-100, +100]
    contrast:         float = 0.0   # [-100, +100]
    sharpness:        float = 0.0   # [0, 200]
    saturation:       float = 0.0   # [-100, +100]
    denoise:          float = 0.0   # [0, 100]
    temperature:      float = 0.0   # [-100, +100]
    tint:             float = 0.0   # [-100, +100]
    binarization:     float = 0.0   # [0, 100]
    white_background: float = 0.0   # [0, 100]
    text_enhancement: float = 0.0   # [0, 100]

    # ── Helpers ──────────────────────────────────────────────────────
    def is_neutral(self) -> bool:
        return all(getattr(self, f.name) == 0 for f in fields(self))

    def active_filters(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) != 0]

    def clamped(self) -> FilterParameters:
        """Copy with every value clamped into its slider range."""
        values = {}
        for name, (lo, hi) in RANGES.items():
            values[name] = min(max(float(getattr(self, name)), lo), hi)
        return FilterParameters(**values)

    def updated(self, **changes) -> FilterParameters:
        return replace(self, **changes)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FilterParameters:
        """
        Parse a (possibly partial) mapping of slider values.

        Accepts snake_case and the front-end's camelCase keys. Missing keys
        stay neutral; values are clamped into range.

        Raises:
            ValueError: unknown key, or a value that is not a finite number.
        """
        values: Dict[str, float] = {}
        for key, raw in data.items():
            name = _CAMEL_CASE.get(key, key)
            if name not in RANGES:
                raise ValueError(f"Unknown filter parameter: {key}")
            if isinstance(raw, bool):
                raise ValueError(f"Filter parameter '{key}' must be a number, got {raw!r}")
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"Filter parameter '{key}' must be a number, got {raw!r}") from None
            if not math.isfinite(value):
                raise ValueError(f"Filter parameter '{key}' must be finite, got {raw!r}")
            values[name] = value
        return cls(**values).clamped()


# ── Presets ──────────────────────────────────────────────────────────
# "auto" is not listed: it depends on the image (see EnhancementService).
PRESETS: Dict[str, FilterParameters] = {
    "reset": FilterParameters(),
    "document": FilterParameters(
        contrast=30,
        sharpness=45,
        saturation=-80,     # almost black and white
        denoise=20,
        binarization=60,
        white_background=60,
        text_enhancement=70,
    ),
}


def preset(name: str) -> FilterParameters:
    try:
        return replace(PRESETS[name])
    except KeyError:
        raise ValueError(f"Unknown preset: {name}. Available: {', '.join(sorted(PRESETS))}, auto") from None

import math

import pytest

from docscan.models.filter_parameters import PRESETS, FilterParameters, preset


def test_defaults_are_neutral():
    params = FilterParameters()
    assert params.is_neutral()
    assert params.active_filters() == []


def test_from_dict_accepts_camel_case_and_clamps():
    params = FilterParameters.from_dict({"whiteBackground": 40, "contrast": 500, "sharpness": "-5"})
    assert params.white_background == 40
    assert params.contrast == 100
    assert params.sharpness == 0
    assert params.active_filters() == ["contrast", "white_background"]


@pytest.mark.parametrize("data", [
    {"exposure": 10},
    {"contrast": "a lot"},
    {"contrast": None},
    {"contrast": True},
    {"brightness": math.nan},
    {"brightness": math.inf},
])
def test_from_dict_rejects_bad_values(data):
    with pytest.raises(ValueError):
        FilterParameters.from_dict(data)


def test_document_preset_values():
    doc = preset("document")
    assert doc.contrast == 30
    assert doc.sharpness == 45
    assert doc.saturation == -80
    assert doc.denoise == 20
    assert doc.binarization == 60
    assert doc.white_background == 60
    assert doc.text_enhancement == 70
    assert doc.brightness == doc.temperature == doc.tint == 0


def test_preset_returns_a_copy():
    doc = preset("document")
    doc.contrast = 0
    assert PRESETS["document"].contrast == 30


def test_reset_preset_is_neutral():
    assert preset("reset").is_neutral()


def test_unknown_preset():
    with pytest.raises(ValueError, match="auto"):
        preset("vintage")


def test_updated_leaves_original_untouched():
    params = FilterParameters(contrast=10)
    changed = params.updated(brightness=5)
    assert changed.brightness == 5 and changed.contrast == 10
    assert params.brightness == 0

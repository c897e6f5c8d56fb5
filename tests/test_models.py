import pydantic
import pytest

from converter.app.errors import ValidationError
from converter.app.jobs import parse_options, validate_job_id
from converter.app.models import ConversionOptions


def test_defaults():
    opts = ConversionOptions()
    assert opts.crf == 30
    assert opts.audio_bitrate == "128k"
    assert opts.detect_green is False


@pytest.mark.parametrize("crf", [0, 30, 63])
def test_crf_in_range(crf):
    assert ConversionOptions(crf=crf).crf == crf


@pytest.mark.parametrize("crf", [-1, 64, 999])
def test_crf_out_of_range(crf):
    with pytest.raises(pydantic.ValidationError):
        ConversionOptions(crf=crf)


@pytest.mark.parametrize("token,expected", [("128k", "128k"), (" 96K ", "96k"), ("6k", "6k"), ("510k", "510k")])
def test_audio_bitrate_tokens(token, expected):
    assert ConversionOptions(audio_bitrate=token).audio_bitrate == expected


@pytest.mark.parametrize("token", ["128", "128kbps", "5k", "511k", "fast", "1.5k"])
def test_audio_bitrate_rejected(token):
    with pytest.raises(pydantic.ValidationError):
        ConversionOptions(audio_bitrate=token)


@pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("on", True), ("false", False), ("", False), ("no", False)])
def test_detect_green_form_values(raw, expected):
    assert ConversionOptions(detect_green=raw).detect_green is expected


def test_options_are_immutable():
    opts = ConversionOptions()
    with pytest.raises(pydantic.ValidationError):
        opts.crf = 10


def test_parse_options_blank_values_fall_back_to_defaults():
    opts = parse_options("", "", None)
    assert opts == ConversionOptions()


def test_parse_options_out_of_bounds_crf():
    with pytest.raises(ValidationError) as exc:
        parse_options("999", "128k", "false")
    assert "crf" in str(exc.value)


def test_parse_options_non_integer_crf():
    with pytest.raises(ValidationError):
        parse_options("high", None, None)


def test_parse_options_bad_flag():
    with pytest.raises(ValidationError):
        parse_options("30", "128k", "maybe")


def test_validate_job_id():
    assert validate_job_id(None) is None
    assert validate_job_id("") is None
    assert validate_job_id("a1b2-c3_d4") == "a1b2-c3_d4"
    for bad in ("../etc", "a b", "x" * 65):
        with pytest.raises(ValidationError):
            validate_job_id(bad)

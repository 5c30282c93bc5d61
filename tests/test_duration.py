from datetime import timedelta

import pytest

from svckit.duration import Duration, format_duration, parse_duration


@pytest.mark.parametrize(
    "value, expected",
    [
        (timedelta(0), "P0D"),
        (timedelta(seconds=1), "PT1S"),
        (timedelta(milliseconds=1100), "PT1S"),
        (timedelta(hours=24), "P1D"),
        (timedelta(hours=48), "P2D"),
        (timedelta(hours=50), "P2DT2H"),
        (timedelta(hours=50, minutes=20), "P2DT2H20M"),
        (timedelta(hours=50, minutes=100), "P2DT3H40M"),
        (timedelta(hours=50, minutes=20, seconds=15), "P2DT2H20M15S"),
        (timedelta(hours=50, seconds=15), "P2DT2H15S"),
        (timedelta(hours=240, seconds=15), "P10DT15S"),
    ],
)
def test_to_iso_string(value, expected):
    assert Duration(value).to_iso_string() == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("0", timedelta(0)),
        ("3s", timedelta(seconds=3)),
        ("6m", timedelta(minutes=6)),
        ("1h30m", timedelta(minutes=90)),
        ("-1.5h", timedelta(minutes=-90)),
        ("300ms", timedelta(milliseconds=300)),
        ("1us", timedelta(microseconds=1)),
        ("2\u00b5s", timedelta(microseconds=2)),
        ("+5s", timedelta(seconds=5)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "1", "1x", "-", "s", "1..5s"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parse_duration_unknown_unit_message():
    with pytest.raises(ValueError, match="unknown unit"):
        parse_duration("5days")


def test_parse_duration_missing_unit_message():
    with pytest.raises(ValueError, match="missing unit"):
        parse_duration("17")


@pytest.mark.parametrize(
    "value, expected",
    [
        (timedelta(0), "0s"),
        (timedelta(milliseconds=1500), "1.5s"),
        (timedelta(milliseconds=1), "1ms"),
        (timedelta(microseconds=1), "1\u00b5s"),
        (timedelta(hours=1), "1h0m0s"),
        (timedelta(seconds=60), "1m0s"),
        (timedelta(seconds=-90), "-1m30s"),
        (2.5, "2.5s"),
    ],
)
def test_format_duration(value, expected):
    assert format_duration(value) == expected


def test_str_and_to_json():
    assert str(Duration(timedelta(seconds=3))) == "3s"
    assert Duration(timedelta(minutes=90)).to_json() == '"1h30m0s"'


def test_from_json_string():
    d = Duration().from_json('"3s"')
    assert d.value == timedelta(seconds=3)


def test_from_json_number_is_nanoseconds():
    d = Duration().from_json("3000000000")
    assert d.value == timedelta(seconds=3)


def test_from_json_invalid_type():
    with pytest.raises(ValueError, match="invalid duration"):
        Duration().from_json("true")


def test_json_round_trip():
    original = Duration(timedelta(hours=2, minutes=5, milliseconds=250))
    assert Duration().from_json(original.to_json()) == original
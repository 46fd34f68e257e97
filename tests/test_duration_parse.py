import argparse

import pytest

from rolloutkeeper.config import parse_duration_ms, parse_duration_s


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("0.2s", 200),
        ("1.5s", 1500),
        ("250ms", 250),
        ("2", 2000),
        ("2s", 2000),
        ("2m", 120000),
        ("1h", 3600000),
        (" 10MS ", 10),
        ("0", 0),
    ],
)
def test_parse_duration_ms_ok(value: str, expected: int) -> None:
    assert parse_duration_ms(value) == expected


@pytest.mark.parametrize("value", ["abc", "1xs", "", "ms", "-1s", "nan", "inf", "0.5ms"])
def test_parse_duration_ms_invalid(value: str) -> None:
    with pytest.raises(argparse.ArgumentTypeError, match="invalid duration"):
        parse_duration_ms(value)


def test_parse_duration_s() -> None:
    assert parse_duration_s("250ms") == 0.25

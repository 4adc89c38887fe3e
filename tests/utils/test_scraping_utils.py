# ABOUTME: Tests for text cleaning, number parsing and reason joining helpers

import pytest

from utils.scraping_utils import (
    calculate_retry_delay,
    clean_text,
    join_reason,
    normalize_plate,
    parse_decimal,
    truncate,
)


class TestCleanText:
    def test_collapses_spaces_but_keeps_lines(self):
        assert clean_text("  Latitud :\t 4.6 \n\n Longitud:  -74.0 ") == "Latitud : 4.6\nLongitud: -74.0"

    def test_decodes_entities(self):
        assert clean_text("Calle&nbsp;80 &amp; Cra\xa07") == "Calle 80 & Cra 7"

    def test_empty(self):
        assert clean_text(None) == ""
        assert clean_text("") == ""


class TestParseDecimal:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("45 km/h", 45.0),
            ("45,5 km/h", 45.5),
            ("1,234.5", 1234.5),
            ("-3.2 °C", -3.2),
            (12, 12.0),
            (None, 0.0),
            ("", 0.0),
            ("-", 0.0),
            ("NaN", 0.0),
            (float("nan"), 0.0),
            ("sin dato", 0.0),
        ],
    )
    def test_values(self, value, expected):
        assert parse_decimal(value) == pytest.approx(expected)

    def test_custom_default(self):
        assert parse_decimal("-", default=-1.0) == -1.0


class TestJoinReason:
    def test_skips_empty_values(self):
        reason = join_reason(
            [("Estado", "En ruta"), ("Conductor", None), ("Zona", "-"), ("Velocidad", 0), ("Temp", 4.5), ("", "Libre")]
        )

        assert reason == "Estado: En ruta | Temp: 4.5 | Libre"

    def test_nothing_left(self):
        assert join_reason([("Estado", ""), ("Zona", None)]) is None

    def test_truncated(self):
        assert len(join_reason([("Evento", "x" * 100)], max_length=20)) == 20


def test_normalize_plate():
    assert normalize_plate("  abc  123 ") == "ABC 123"
    assert normalize_plate(None) == ""


def test_truncate():
    assert truncate("abcdef", 3) == "abc"
    assert truncate("abc", 3) == "abc"
    assert truncate(None, 3) is None


def test_calculate_retry_delay():
    assert calculate_retry_delay(0, 1.0) == 1.0
    assert calculate_retry_delay(3, 1.0) == 8.0
    assert calculate_retry_delay(10, 1.0, max_delay=5.0) == 5.0

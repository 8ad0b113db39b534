from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path

from core.utils.json_serializers import json_serializer


class Color(Enum):
    RED = "red"
    BLUE = "blue"


class SampleObj:
    def __str__(self):
        return "sample"


class TestJsonSerializer:

    def test_serializes_datetime_to_isoformat(self):
        assert json_serializer(datetime(2025, 6, 15, 10, 30, 0)) == "2025-06-15T10:30:00"

    def test_serializes_date_to_isoformat(self):
        assert json_serializer(date(2025, 12, 25)) == "2025-12-25"

    def test_serializes_decimal_to_float(self):
        result = json_serializer(Decimal("1.25"))
        assert result == 1.25
        assert isinstance(result, float)

    def test_serializes_enum_to_value(self):
        assert json_serializer(Color.BLUE) == "blue"

    def test_serializes_bytes_as_text(self):
        assert json_serializer(b'{"meta": 1}') == '{"meta": 1}'

    def test_invalid_utf8_bytes_replaced(self):
        assert json_serializer(b"\xff") == "�"

    def test_serializes_set_sorted(self):
        assert json_serializer({"b", "a"}) == ["a", "b"]

    def test_serializes_path(self):
        assert json_serializer(Path("/tmp/logs")) == "/tmp/logs"

    def test_falls_back_to_str(self):
        assert json_serializer(SampleObj()) == "sample"

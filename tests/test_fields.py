"""Tests for xsentry.fields."""

from __future__ import annotations

from xsentry.fields import FIELDS, Field, for_key, resolve, type_name


class TestResolve:
    def test_by_slug(self):
        f = resolve("battery")
        assert f is not None and f.id == "batInfo"

    def test_by_id_and_alias(self):
        assert resolve("coPpm") is resolve("co")
        assert resolve("wifiRSSI") is resolve("wifiRssi")

    def test_unknown(self):
        assert resolve("nope") is None


class TestForKey:
    def test_ignores_slugs(self):
        assert for_key("alarm") is None
        assert for_key("alarmStatus") is not None


class TestFormatValue:
    def test_enum(self):
        f = resolve("battery")
        assert f is not None
        assert f.format_value(3) == "full"
        assert f.format_value("1") == "low"
        assert f.format_value(9) == "9"

    def test_unit(self):
        assert Field("coPpm", "co", "CO", "int", unit="ppm").format_value(12) == "12ppm"

    def test_bool(self):
        assert Field("isOpen", "open", "Open", "bool").format_value(True) == "yes"

    def test_plain(self):
        assert Field("deviceName", "name", "Name").format_value("Hall") == "Hall"


class TestTable:
    def test_unique_slugs_and_ids(self):
        slugs = [f.slug for f in FIELDS]
        ids = [f.id for f in FIELDS]
        assert len(slugs) == len(set(slugs))
        assert len(ids) == len(set(ids))

    def test_type_name(self):
        assert type_name("XH02-M") == "Heat alarm"
        assert type_name("ZZZ") == "ZZZ"
        assert type_name("") == "Unknown"

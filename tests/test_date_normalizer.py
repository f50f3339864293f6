"""
Date Normalizer Tests:
  - Rule order: DD-MM-YYYY, DDMMYY, spreadsheet serial, generic ISO
  - Fallback to now / default for unparseable input
  - Read-back repair of extended-year serial strings
  - LenientDateTime column round trip
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from casedesk.services.date_normalizer import (
    format_iso,
    from_serial,
    normalize_date,
    parse_date_value,
    repair_stored_date,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestParsingRules:

    def test_dd_mm_yyyy(self):
        assert parse_date_value("25-06-2023") == _utc(2023, 6, 25)
        assert parse_date_value("5-1-2024") == _utc(2024, 1, 5)

    def test_ddmmyy_recent_century(self):
        assert normalize_date("250623") == _utc(2023, 6, 25)

    def test_ddmmyy_pivot(self):
        assert parse_date_value("010149") == _utc(2049, 1, 1)
        assert parse_date_value("010150") == _utc(1950, 1, 1)

    def test_invalid_ddmmyy_falls_through_to_serial(self):
        # day 99 is not a DDMMYY date, so the digits are read as a serial
        assert parse_date_value("991399") == from_serial(991399)

    def test_serial_number(self):
        expected = _utc(1900, 1, 1) + timedelta(days=45000 - 2)
        assert normalize_date(45000) == expected
        assert expected.date() == date(2023, 3, 15)

    def test_serial_as_string_and_float(self):
        assert parse_date_value("45000") == parse_date_value(45000.0) == _utc(2023, 3, 15)

    def test_serial_out_of_range(self):
        assert from_serial(500) is None
        assert from_serial(3_000_000) is None

    def test_iso_with_zulu(self):
        assert parse_date_value("2024-02-10T08:30:00.000Z") == _utc(2024, 2, 10, 8, 30)

    def test_human_formats(self):
        assert parse_date_value("10/02/2024") == _utc(2024, 2, 10)
        assert parse_date_value("10 Feb 2024") == _utc(2024, 2, 10)

    def test_datetime_and_date_inputs(self):
        naive = datetime(2024, 5, 1, 12, 0)
        assert parse_date_value(naive) == _utc(2024, 5, 1, 12, 0)
        assert parse_date_value(date(2024, 5, 1)) == _utc(2024, 5, 1)

    def test_booleans_are_not_dates(self):
        assert parse_date_value(True) is None


class TestFallback:

    def test_unparseable_returns_now(self):
        before = datetime.now(timezone.utc)
        result = normalize_date("not-a-date")
        after = datetime.now(timezone.utc)
        assert before <= result <= after

    def test_blank_returns_default(self):
        default = _utc(2020, 1, 1)
        assert normalize_date("", default=default) == default
        assert normalize_date(None, default=default) == default

    def test_never_raises_on_odd_types(self):
        assert isinstance(normalize_date({"day": 1}), datetime)


class TestStoredRepair:

    def test_extended_year_serial_string(self):
        repaired = repair_stored_date("+045000-01-01T00:00:00.000Z")
        assert repaired == _utc(2023, 3, 15)

    def test_regular_iso_passes_through(self):
        assert repair_stored_date("2024-01-02T03:04:05.006Z") == _utc(2024, 1, 2, 3, 4, 5, 6000)

    def test_format_iso_shape(self):
        assert format_iso(_utc(2024, 1, 2, 3, 4, 5, 6000)) == "2024-01-02T03:04:05.006Z"
        assert format_iso(None) is None


class TestLenientColumn:

    def test_broken_stored_value_reads_back_repaired(self, new_dtr):
        import sqlalchemy as sa

        from casedesk.models import db
        from casedesk.models.dtr import DTR

        dtr = new_dtr()
        db.session.execute(
            sa.text("UPDATE dtrs SET error_date = :v WHERE id = :id"),
            {"v": "+045000-01-01T00:00:00.000Z", "id": dtr["id"]},
        )
        db.session.commit()
        db.session.expire_all()
        assert db.session.get(DTR, dtr["id"]).error_date == _utc(2023, 3, 15)

    def test_unparseable_bind_is_rejected(self, new_dtr):
        from casedesk.models import db
        from casedesk.models.dtr import DTR

        dtr = new_dtr()
        row = db.session.get(DTR, dtr["id"])
        row.error_date = "garbage"
        with pytest.raises(Exception):
            db.session.commit()
        db.session.rollback()

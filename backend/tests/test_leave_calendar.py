from datetime import date, datetime
from decimal import Decimal

import pytest

from workflow_core.errors import ValidationError
from workflow_core.leave_calendar import as_date, calculate_leave_days, days_until, fiscal_year_for
from workflow_core.workflow_types import build_leave_payload


class TestLeaveDays:

    def test_weekdays_only(self):
        # Mon 2025-03-03 .. Wed 2025-03-05
        assert calculate_leave_days("2025-03-03", "2025-03-05") == Decimal(3)

    def test_weekend_is_skipped(self):
        # Fri .. Mon
        assert calculate_leave_days(date(2025, 3, 7), date(2025, 3, 10)) == Decimal(2)

    def test_weekend_counted_when_requested(self):
        assert calculate_leave_days("2025-03-07", "2025-03-10", exclude_weekends=False) == Decimal(4)

    def test_half_day(self):
        assert calculate_leave_days("2025-03-03", "2025-03-03", is_half_day=True) == Decimal("0.5")

    def test_half_day_must_be_single_date(self):
        with pytest.raises(ValidationError):
            calculate_leave_days("2025-03-03", "2025-03-04", is_half_day=True)

    def test_end_before_start(self):
        with pytest.raises(ValidationError):
            calculate_leave_days("2025-03-05", "2025-03-03")


class TestDates:

    def test_as_date_accepts_datetime_and_iso(self):
        assert as_date(datetime(2025, 3, 3, 10, 30)) == date(2025, 3, 3)
        assert as_date("2025-03-03T10:30:00") == date(2025, 3, 3)

    def test_as_date_rejects_garbage(self):
        with pytest.raises(ValidationError):
            as_date("next tuesday")
        with pytest.raises(ValidationError):
            as_date(None, "start_date")

    def test_fiscal_year(self):
        assert fiscal_year_for("2025-12-31") == 2025

    def test_days_until(self):
        today = date(2025, 3, 3)
        assert days_until("2025-03-05", today=today) == 2
        assert days_until("2025-03-01", today=today) == -2


class TestLeavePayload:

    def test_half_day_allowed_for_casual_leave(self):
        payload = build_leave_payload({"leave_type": "CASUAL", "start_date": "2025-03-03", "is_half_day": True})
        assert payload["number_of_days"] == 0.5
        assert payload["end_date"] == "2025-03-03"

    def test_half_day_refused_where_the_leave_type_forbids_it(self):
        with pytest.raises(ValidationError) as exc:
            build_leave_payload({"leave_type": "EARNED", "start_date": "2025-03-03", "is_half_day": True})
        assert "does not allow half-day" in exc.value.message

    def test_full_days_for_earned_leave(self):
        payload = build_leave_payload({"leave_type": "EARNED", "start_date": "2025-03-03", "end_date": "2025-03-07"})
        assert payload["number_of_days"] == 5.0
        assert payload["fiscal_year"] == 2025

    @pytest.mark.parametrize("leave_type", [None, "", "SABBATICAL"])
    def test_unknown_leave_type(self, leave_type):
        with pytest.raises(ValidationError):
            build_leave_payload({"leave_type": leave_type, "start_date": "2025-03-03"})

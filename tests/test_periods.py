from datetime import date, datetime

import pytest

from periods import billing_period_start, month_key, resolve_period


def test_billing_period_starts_on_first_of_calendar_month() -> None:
    assert billing_period_start(datetime(2025, 3, 31, 23, 59)) == datetime(2025, 3, 1)
    assert billing_period_start(datetime(2025, 3, 1, 0, 0)) == datetime(2025, 3, 1)


def test_month_key_is_zero_padded() -> None:
    assert month_key(datetime(2025, 1, 9)) == "2025-01"
    assert month_key(datetime(2024, 12, 31)) == "2024-12"


def test_resolve_period_last_month_wraps_year() -> None:
    period = resolve_period("last_month", None, None, today=date(2025, 1, 15))

    assert (period.start, period.end) == (date(2024, 12, 1), date(2024, 12, 31))


def test_resolve_period_custom_requires_ordered_dates() -> None:
    with pytest.raises(ValueError, match="requires start and end"):
        resolve_period("custom", "2025-01-01", None)
    with pytest.raises(ValueError, match="before end"):
        resolve_period("custom", "2025-02-01", "2025-01-01")

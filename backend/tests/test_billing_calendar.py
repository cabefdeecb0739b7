from datetime import datetime

import pytest

from coursebilling.db.models import PlanType
from coursebilling.services.billing_calendar import next_billing_date


@pytest.mark.parametrize(
    "start, plan, expected",
    [
        (datetime(2024, 1, 31, 10, 30), PlanType.MONTHLY, datetime(2024, 2, 29, 10, 30)),
        (datetime(2023, 1, 31), PlanType.MONTHLY, datetime(2023, 2, 28)),
        (datetime(2024, 3, 31), PlanType.MONTHLY, datetime(2024, 4, 30)),
        (datetime(2024, 12, 15), PlanType.MONTHLY, datetime(2025, 1, 15)),
        (datetime(2023, 11, 30), PlanType.QUARTERLY, datetime(2024, 2, 29)),
        (datetime(2024, 8, 31), PlanType.QUARTERLY, datetime(2024, 11, 30)),
        (datetime(2024, 2, 29), PlanType.YEARLY, datetime(2025, 2, 28)),
        (datetime(2023, 6, 1), PlanType.YEARLY, datetime(2024, 6, 1)),
    ],
)
def test_next_billing_date_clamps_to_month_end(start, plan, expected):
    assert next_billing_date(start, plan) == expected


def test_every_month_end_of_a_year_yields_a_valid_date():
    for month in range(1, 13):
        start = datetime(2024, month, 28)
        for day in (29, 30, 31):
            try:
                start = datetime(2024, month, day)
            except ValueError:
                break
        result = next_billing_date(start, PlanType.MONTHLY)
        assert result.month == month % 12 + 1
        assert result.day <= start.day


def test_lifetime_plan_is_never_billed_again():
    assert next_billing_date(datetime(2024, 1, 1), PlanType.LIFETIME) is None

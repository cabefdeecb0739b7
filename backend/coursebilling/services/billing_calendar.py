"""
Billing period arithmetic.
"""

from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from ..db.models import PlanType

PLAN_PERIODS = {
    PlanType.MONTHLY: relativedelta(months=1),
    PlanType.QUARTERLY: relativedelta(months=3),
    PlanType.YEARLY: relativedelta(years=1),
}


def next_billing_date(current: datetime, plan: PlanType) -> Optional[datetime]:
    """
    Next charge date for `plan` counted from `current`.

    Calendar months are added with the day clamped to the target month's
    length (Jan 31 + 1 month is Feb 28, or Feb 29 in leap years). LIFETIME plans
    return None, meaning no further billing.
    """
    if plan == PlanType.LIFETIME:
        return None
    return current + PLAN_PERIODS[plan]

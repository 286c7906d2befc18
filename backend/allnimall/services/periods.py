"""Calendar arithmetic for usage periods and billing cycles."""

import calendar
from datetime import datetime, timedelta

from allnimall.models.billing import BillingCycle
from allnimall.models.usage import UsagePeriod


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance_period(moment: datetime, period: UsagePeriod) -> datetime:
    """Return ``moment`` moved forward by one usage period."""
    if period == UsagePeriod.DAILY:
        return moment + timedelta(days=1)
    if period == UsagePeriod.WEEKLY:
        return moment + timedelta(weeks=1)
    if period == UsagePeriod.YEARLY:
        return add_months(moment, 12)
    return add_months(moment, 1)


def advance_billing_cycle(moment: datetime, cycle: BillingCycle) -> datetime:
    """Return ``moment`` moved forward by one billing cycle."""
    if cycle == BillingCycle.YEARLY:
        return add_months(moment, 12)
    return add_months(moment, 1)

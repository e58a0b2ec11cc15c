"""
Billing period arithmetic.

Pure functions over timestamps. ``now`` is always an optional argument so
callers can evaluate a subscription snapshot at a fixed instant.
"""

import math
from datetime import timedelta

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from .conf import get_setting
from .exceptions import ValidationError
from .plans import BillingInterval

SECONDS_PER_DAY = 24 * 60 * 60


def days_until(timestamp, now=None):
    """Whole days left until ``timestamp``, rounded up and never negative."""
    now = now or timezone.now()
    seconds = (timestamp - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def period_progress(period_start, period_end, now=None):
    """Elapsed fraction of a period, clamped to [0, 1]."""
    now = now or timezone.now()
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        return 1.0
    elapsed = (now - period_start).total_seconds()
    return min(1.0, max(0.0, elapsed / total))


def is_trial_ending_soon(trial_end, threshold_days=None, now=None):
    if trial_end is None:
        return False
    if threshold_days is None:
        threshold_days = get_setting('TRIAL_ENDING_SOON_DAYS')
    return days_until(trial_end, now=now) <= threshold_days


def add_interval(start, interval):
    """
    End of a billing period beginning at ``start``. Calendar months and years
    are used, so Jan 31 + 1 month is the last day of February.
    """
    if interval == BillingInterval.MONTH:
        return start + relativedelta(months=1)
    if interval == BillingInterval.YEAR:
        return start + relativedelta(years=1)
    raise ValidationError(
        f"'{interval}' is not a valid billing interval.",
        details={'billing_interval': interval, 'allowed': list(BillingInterval.values)},
    )


def trial_end_from(start):
    return start + timedelta(days=get_setting('TRIAL_DAYS'))

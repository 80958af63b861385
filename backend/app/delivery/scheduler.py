"""
scheduler.py — Earliest permissible send time per recipient.

    compute_not_before(prefs, category, now) → aware UTC datetime

Rules, in order:
    1. Bypass categories (transactional, system, security, alert) → now
    2. Digest frequency (hourly / daily / weekly) → next interval boundary
       aligned in the recipient's timezone
    3. Inside quiet hours → end of the window (same or next local day)

Wall-clock conversion goes through pytz ``localize`` so windows stay put
across DST changes: a 22:00-07:00 window ends at 07:00 local on both sides
of a clock change, not 06:00 or 08:00.

Example (Asia/Kolkata, window 22:00-07:00):
    submitted 23:30 local → not_before 07:00 local next day
    submitted 03:00 local → not_before 07:00 local same day
    submitted 12:00 local → not_before now
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

import pytz

from backend.app.delivery.models import (
    BYPASS_CATEGORIES,
    Category,
    Frequency,
    QuietHours,
    RecipientPreferences,
)

logger = logging.getLogger(__name__)


def resolve_timezone(name: Optional[str]):
    """pytz timezone for ``name``; unknown names fall back to UTC."""
    if not name:
        return pytz.utc
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %r — using UTC", name)
        return pytz.utc


def _localize(tz, naive: datetime) -> datetime:
    # normalize() moves times that fall in a DST gap forward
    return tz.normalize(tz.localize(naive))


def quiet_window_end(quiet_hours: QuietHours, now: datetime) -> Optional[datetime]:
    """
    End of the quiet window containing ``now`` (UTC), or None if ``now`` is
    outside it. A window with start == end is empty.
    """
    start, end = quiet_hours.start, quiet_hours.end
    if start == end:
        return None

    tz = resolve_timezone(quiet_hours.timezone)
    local = now.astimezone(tz)
    local_time = local.time().replace(tzinfo=None)
    today = local.date()

    if start < end:
        if not (start <= local_time < end):
            return None
        end_date = today
    else:
        # wraps midnight, e.g. 22:00-07:00
        if local_time >= start:
            end_date = today + timedelta(days=1)
        elif local_time < end:
            end_date = today
        else:
            return None

    end_local = _localize(tz, datetime.combine(end_date, end))
    return end_local.astimezone(pytz.utc)


def next_digest_boundary(frequency: Frequency, timezone_name: str, now: datetime) -> datetime:
    """
    Next digest slot strictly after ``now``.

    hourly → top of the next local hour
    daily  → next local midnight
    weekly → next local Monday 00:00
    """
    if frequency == Frequency.IMMEDIATE:
        return now

    tz = resolve_timezone(timezone_name)
    local = now.astimezone(tz).replace(tzinfo=None)

    if frequency == Frequency.HOURLY:
        boundary = local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    elif frequency == Frequency.DAILY:
        boundary = datetime.combine(local.date() + timedelta(days=1), datetime.min.time())
    else:
        days_ahead = 7 - local.weekday()  # Monday is 0
        boundary = datetime.combine(local.date() + timedelta(days=days_ahead), datetime.min.time())

    return _localize(tz, boundary).astimezone(pytz.utc)


class Scheduler:
    """
    Computes ``not_before`` from recipient preferences.

    Parameters
    ----------
    quiet_hours_enabled : bool
        Global switch; when off only digest batching applies.
    """

    def __init__(self, quiet_hours_enabled: bool = True):
        self.quiet_hours_enabled = quiet_hours_enabled

    def compute_not_before(
        self,
        prefs: Optional[RecipientPreferences],
        category: Category,
        now: datetime,
    ) -> datetime:
        now_utc = now.astimezone(pytz.utc)
        if category in BYPASS_CATEGORIES or prefs is None:
            return now_utc

        not_before = now_utc
        if prefs.frequency != Frequency.IMMEDIATE:
            not_before = next_digest_boundary(prefs.frequency, prefs.timezone, not_before)

        if self.quiet_hours_enabled and prefs.quiet_hours is not None:
            window_end = quiet_window_end(prefs.quiet_hours, not_before)
            if window_end is not None:
                logger.debug(
                    "Recipient %s in quiet hours until %s",
                    prefs.user_id, window_end.isoformat(),
                )
                not_before = window_end

        return not_before

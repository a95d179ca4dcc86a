"""
Recurrence Rule Evaluator

Pure functions that compute when a rule fires. Nothing in this module reads
a clock or touches storage: every "now" is passed in, so behaviour can be
tested against literal date/time fixtures.

All wall-clock computation happens in one reference zone per owner
(UTC unless the owner configured another). Returned instants are aware
UTC datetimes, which is what the repository stores.

DESIGN DECISION: Occurrence N is always derived from the rule's start
date, never from occurrence N-1. That is what keeps a monthly rule that
starts on the 31st on the 31st after passing through a short month
(Jan 31 -> Feb 28 -> Mar 31), instead of drifting to the 28th forever.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Union
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from recurring_ledger.config import EndTimePolicy
from recurring_ledger.models.ledger import Frequency, RuleSchedule, ensure_utc


UTC = timezone.utc

ZoneLike = Union[ZoneInfo, timezone]


def resolve_zone(name: Optional[str]) -> ZoneLike:
    """Map an IANA zone name to a tzinfo; empty means UTC."""
    if not name or name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


def local_instant(day: date, at: time, tz: ZoneLike = UTC) -> datetime:
    """
    Combine a local calendar day and wall-clock time into a UTC instant.

    Ambiguous times (DST fall-back) resolve to the first occurrence.
    Times inside a DST gap are shifted forward by the size of the gap,
    which lands on the nearest wall-clock time that actually exists.
    """
    local = datetime.combine(day, at.replace(tzinfo=None)).replace(tzinfo=tz, fold=0)
    return local.astimezone(UTC)


def occurrence_date(rule: RuleSchedule, index: int) -> date:
    """Local calendar date of the rule's occurrence number `index` (0-based)."""
    if index < 0:
        raise ValueError("Occurrence index cannot be negative")

    if rule.frequency == Frequency.ONCE:
        if index != 0:
            raise ValueError("A one-time rule has a single occurrence")
        return rule.start_date
    if rule.frequency == Frequency.DAILY:
        return rule.start_date + timedelta(days=index)
    if rule.frequency == Frequency.WEEKLY:
        return rule.start_date + timedelta(weeks=index)
    if rule.frequency == Frequency.MONTHLY:
        # relativedelta clamps to the last day of shorter months
        return rule.start_date + relativedelta(months=index)

    raise ValueError(f"Unsupported frequency: {rule.frequency}")


def first_occurrence(rule: RuleSchedule, tz: ZoneLike = UTC) -> datetime:
    """The instant a newly created rule first becomes due."""
    return local_instant(rule.start_date, rule.start_time, tz)


def _index_on_or_before(rule: RuleSchedule, day: date) -> int:
    """Cheap lower bound for the occurrence index that falls near `day`."""
    if day <= rule.start_date:
        return 0
    if rule.frequency == Frequency.DAILY:
        estimate = (day - rule.start_date).days
    elif rule.frequency == Frequency.WEEKLY:
        estimate = (day - rule.start_date).days // 7
    elif rule.frequency == Frequency.MONTHLY:
        estimate = (day.year - rule.start_date.year) * 12 + (day.month - rule.start_date.month)
    else:
        estimate = 0
    # One step back absorbs zone offsets near midnight
    return max(0, estimate - 1)


def compute_next_occurrence(
    rule: RuleSchedule,
    from_timestamp: datetime,
    tz: ZoneLike = UTC,
) -> Optional[datetime]:
    """
    Earliest occurrence strictly after `from_timestamp`.

    Passing the occurrence that was just materialized yields the one after
    it. Passing a time before the rule's start yields the first occurrence.

    Returns:
        The next occurrence as an aware UTC datetime, or None when the rule
        is exhausted (one-time rule already past, or the candidate date
        falls after end_date). The caller turns None into is_active=False.
    """
    from_timestamp = ensure_utc(from_timestamp)

    first = first_occurrence(rule, tz)
    if from_timestamp < first:
        index = 0
    elif rule.frequency == Frequency.ONCE:
        return None
    else:
        index = _index_on_or_before(rule, from_timestamp.astimezone(tz).date())

    while True:
        day = occurrence_date(rule, index)
        if rule.end_date is not None and day > rule.end_date:
            return None
        candidate = local_instant(day, rule.start_time, tz)
        if candidate > from_timestamp:
            return candidate
        if rule.frequency == Frequency.ONCE:
            return None
        index += 1


def upcoming_occurrences(
    rule: RuleSchedule,
    after: datetime,
    limit: int = 5,
    tz: ZoneLike = UTC,
) -> list[datetime]:
    """Preview of the next `limit` occurrences after `after`."""
    return list(_iter_occurrences(rule, after, tz, limit))


def _iter_occurrences(
    rule: RuleSchedule,
    after: datetime,
    tz: ZoneLike,
    limit: int,
) -> Iterator[datetime]:
    cursor = after
    for _ in range(limit):
        nxt = compute_next_occurrence(rule, cursor, tz)
        if nxt is None:
            return
        yield nxt
        cursor = nxt


def within_execution_window(
    rule: RuleSchedule,
    occurrence: datetime,
    now: datetime,
    policy: EndTimePolicy = EndTimePolicy.ANNOTATE,
    tz: ZoneLike = UTC,
) -> bool:
    """
    Whether an occurrence may still be materialized at `now`.

    Under ANNOTATE, end_time is display metadata and this is always True.
    Under ENFORCE_WINDOW, an occurrence is only valid until end_time on its
    own local day; a scheduler that reaches it later skips it.
    """
    if policy == EndTimePolicy.ANNOTATE or rule.end_time is None:
        return True
    occurrence_day = ensure_utc(occurrence).astimezone(tz).date()
    window_closes = local_instant(occurrence_day, rule.end_time, tz)
    return ensure_utc(now) <= window_closes

"""Recurrence rules and occurrence generation.

Only the subset of RFC 5545 that agent scheduling needs is supported:

    FREQ=DAILY|WEEKLY|MONTHLY   (required)
    INTERVAL=n                  (n >= 1)
    BYDAY=MO,TU,...             (ordinals such as 1MO or -1FR with MONTHLY)
    COUNT=n  or  UNTIL=YYYYMMDD[THHMMSS[Z]]

Occurrences keep the anchor's wall-clock time and wall-clock duration in the
series timezone. Across a DST change the absolute instant moves with the
zone offset while the local time stays put.
"""
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from itertools import islice
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule, weekday

from app.core.clock import as_utc, day_start
from app.core.exceptions import InvalidEventData, InvalidRecurrenceRule

FREQUENCIES = {"DAILY": DAILY, "WEEKLY": WEEKLY, "MONTHLY": MONTHLY}

WEEKDAYS = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}

SUPPORTED_TOKENS = {"FREQ", "INTERVAL", "BYDAY", "COUNT", "UNTIL"}

_BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
_UNTIL_DATE = re.compile(r"^\d{8}$")
_UNTIL_DATETIME = re.compile(r"^\d{8}T\d{6}Z?$")


@dataclass(frozen=True)
class RecurrenceRule:
    """A parsed, validated recurrence rule."""
    freq: str
    interval: int = 1
    by_day: tuple[weekday, ...] = field(default_factory=tuple)
    count: int | None = None
    until: date | datetime | None = None

    def to_rrule(self, dtstart: datetime, zone: ZoneInfo) -> rrule:
        """Build a ``dateutil`` rule over naive wall-clock times in ``zone``."""
        return rrule(
            FREQUENCIES[self.freq],
            dtstart=dtstart,
            interval=self.interval,
            byweekday=self.by_day or None,
            count=self.count,
            until=self._local_until(zone),
        )

    def _local_until(self, zone: ZoneInfo) -> datetime | None:
        if self.until is None:
            return None
        if isinstance(self.until, datetime):
            if self.until.tzinfo is None:
                return self.until
            return self.until.astimezone(zone).replace(tzinfo=None)
        # A bare date bounds the series inclusively
        return datetime.combine(self.until, time.max)


@dataclass(frozen=True)
class Occurrence:
    """One concrete occurrence of a series."""
    key: date
    start: datetime
    end: datetime


def resolve_zone(name: str | None) -> ZoneInfo:
    """Look up an IANA zone, rejecting unknown names."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidEventData(f"Unknown timezone: {name!r}") from e


def _parse_positive_int(token: str, value: str) -> int:
    if not value.isdigit() or int(value) < 1:
        raise InvalidRecurrenceRule(token, f"expected a positive integer, got {value!r}")
    return int(value)


def _parse_until(value: str) -> date | datetime:
    if _UNTIL_DATE.match(value):
        parsed = datetime.strptime(value, "%Y%m%d").date()
        return parsed
    if _UNTIL_DATETIME.match(value):
        parsed = datetime.strptime(value.rstrip("Z"), "%Y%m%dT%H%M%S")
        return parsed.replace(tzinfo=UTC) if value.endswith("Z") else parsed
    raise InvalidRecurrenceRule("UNTIL", f"expected YYYYMMDD or YYYYMMDDTHHMMSS[Z], got {value!r}")


def _parse_by_day(value: str, freq: str) -> tuple[weekday, ...]:
    days = []
    for token in value.split(","):
        match = _BYDAY_PATTERN.match(token.strip())
        if not match:
            raise InvalidRecurrenceRule("BYDAY", f"invalid day {token!r}")
        ordinal, code = match.groups()
        if ordinal is None:
            days.append(WEEKDAYS[code])
            continue
        if freq != "MONTHLY":
            raise InvalidRecurrenceRule("BYDAY", "ordinal days require FREQ=MONTHLY")
        n = int(ordinal)
        if n == 0 or abs(n) > 5:
            raise InvalidRecurrenceRule("BYDAY", f"ordinal out of range in {token!r}")
        days.append(WEEKDAYS[code](n))
    return tuple(days)


def parse_rule(text: str | None) -> RecurrenceRule:
    """Parse an RRULE string, e.g. ``"FREQ=DAILY;BYDAY=MO,TU,WE,TH,FR"``.

    An optional ``RRULE:`` prefix is accepted. Raises
    :class:`InvalidRecurrenceRule` naming the first offending token.
    """
    body = (text or "").strip()
    if body.upper().startswith("RRULE:"):
        body = body[6:]
    if not body:
        raise InvalidRecurrenceRule("RRULE", "rule is empty")

    tokens: dict[str, str] = {}
    for part in body.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise InvalidRecurrenceRule(part.strip(), "expected KEY=VALUE")
        key, value = (s.strip().upper() for s in part.split("=", 1))
        if key not in SUPPORTED_TOKENS:
            raise InvalidRecurrenceRule(key, "is not supported")
        if key in tokens:
            raise InvalidRecurrenceRule(key, "appears more than once")
        if not value:
            raise InvalidRecurrenceRule(key, "has no value")
        tokens[key] = value

    freq = tokens.get("FREQ")
    if freq is None:
        raise InvalidRecurrenceRule("FREQ", "is required")
    if freq not in FREQUENCIES:
        raise InvalidRecurrenceRule("FREQ", f"{freq} is not supported (use DAILY, WEEKLY or MONTHLY)")

    if "COUNT" in tokens and "UNTIL" in tokens:
        raise InvalidRecurrenceRule("COUNT", "cannot be combined with UNTIL")

    return RecurrenceRule(
        freq=freq,
        interval=_parse_positive_int("INTERVAL", tokens["INTERVAL"]) if "INTERVAL" in tokens else 1,
        by_day=_parse_by_day(tokens["BYDAY"], freq) if "BYDAY" in tokens else (),
        count=_parse_positive_int("COUNT", tokens["COUNT"]) if "COUNT" in tokens else None,
        until=_parse_until(tokens["UNTIL"]) if "UNTIL" in tokens else None,
    )


def generate_occurrences(
    rule: str | RecurrenceRule,
    start: datetime,
    end: datetime,
    tz: str | None,
    horizon_end: datetime,
    *,
    all_day: bool = False,
    cutoff: date | None = None,
    window_start: datetime | None = None,
) -> Iterator[Occurrence]:
    """Lazily generate occurrences of ``rule`` anchored at ``start``/``end``.

    The rule is validated before anything is yielded, so an invalid rule
    raises here rather than part way through iteration. The sequence stops at
    ``horizon_end`` (inclusive, compared on start instants), at the rule's
    own COUNT/UNTIL bound, or before ``cutoff`` (an occurrence-key date),
    whichever comes first. Calling again with the same arguments yields the
    same sequence.

    Occurrences that end before ``window_start`` are skipped. The rule is still
    expanded from the anchor, so COUNT keeps counting from the first
    occurrence; one that is under way at ``window_start`` is kept.

    All-day series are expanded on UTC dates, which is how their dates are
    stored.
    """
    parsed = rule if isinstance(rule, RecurrenceRule) else parse_rule(rule)
    zone = ZoneInfo("UTC") if all_day else resolve_zone(tz)
    local_start = as_utc(start).astimezone(zone).replace(tzinfo=None)
    local_end = as_utc(end).astimezone(zone).replace(tzinfo=None)
    if local_end < local_start:
        raise InvalidEventData("end must not be before start")
    lower = None
    if window_start is not None:
        # An all-day occurrence lasts until the end of its date
        lower = day_start(window_start) if all_day else as_utc(window_start)
    return _expand(
        parsed, local_start, local_end - local_start, zone, as_utc(horizon_end), cutoff, lower
    )


def _expand(
    parsed: RecurrenceRule,
    local_start: datetime,
    duration: timedelta,
    zone: ZoneInfo,
    horizon_end: datetime,
    cutoff: date | None,
    window_start: datetime | None,
) -> Iterator[Occurrence]:
    for wall in parsed.to_rrule(local_start, zone):
        if cutoff is not None and wall.date() >= cutoff:
            return
        occurrence_start = _to_instant(wall, zone)
        if occurrence_start > horizon_end:
            return
        occurrence_end = _to_instant(wall + duration, zone)
        if window_start is not None and occurrence_end < window_start:
            continue
        yield Occurrence(key=wall.date(), start=occurrence_start, end=occurrence_end)


def _to_instant(wall: datetime, zone: ZoneInfo) -> datetime:
    return wall.replace(tzinfo=zone).astimezone(UTC)


def validate_rule(
    text: str,
    start: datetime,
    end: datetime,
    tz: str | None,
    *,
    window_days: int,
    max_instances: int,
    all_day: bool = False,
) -> RecurrenceRule:
    """Parse ``text`` and check it is usable for a series anchored at ``start``.

    Rejects rules that produce nothing in the first materialization window
    (for example an UNTIL before the start) and rules that would produce more
    than ``max_instances`` occurrences in it.
    """
    parsed = parse_rule(text)
    window_end = as_utc(start) + timedelta(days=window_days)
    sample = list(
        islice(
            generate_occurrences(parsed, start, end, tz, window_end, all_day=all_day),
            max_instances + 1,
        )
    )
    if not sample:
        token = "UNTIL" if parsed.until is not None else "RRULE"
        raise InvalidRecurrenceRule(token, f"produces no occurrences in the first {window_days} days")
    if len(sample) > max_instances:
        raise InvalidRecurrenceRule(
            "FREQ", f"produces more than {max_instances} occurrences in {window_days} days"
        )
    return parsed

"""Recurrence interpretation, labels and canonicalization.

Events describe their schedule with a mix of fields: an RRULE string, legacy
free text ("weekly", "2nd/4th", "every other week"), a day-of-week name, an
anchor ``event_date`` and a list of custom dates. ``interpret_recurrence``
folds all of that into one ``NormalizedRecurrence`` so expansion, labels and
"next occurrence" all read the schedule the same way.

An interpretation is *confident* when the fields pin down concrete dates.
Ambiguous schedules (seasonal text, ordinals without a day, every-other-week
without an anchor) stay recurring but unconfident; callers list those under
"schedule unknown" rather than guessing dates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, time
from typing import Any, Iterable

from dateutil.rrule import (
    DAILY,
    FR,
    MO,
    MONTHLY,
    SA,
    SU,
    TH,
    TU,
    WE,
    WEEKLY,
    YEARLY,
    rrule,
    rruleset,
    rrulestr,
)

from .datekeys import (
    DAY_ABBREVS,
    DAY_NAMES,
    coerce_date_key,
    day_index,
    day_of_week_from_date_key,
)
from .utils import get_field

# Use uvicorn's error logger so warnings carry the level prefix in server logs.
logger = logging.getLogger("uvicorn.error")

FREQUENCIES = (
    "weekly",
    "biweekly",
    "monthly",
    "daily",
    "yearly",
    "custom",
    "one-time",
    "unknown",
)

ORDINAL_WORDS = {
    "1st": 1,
    "first": 1,
    "2nd": 2,
    "second": 2,
    "3rd": 3,
    "third": 3,
    "4th": 4,
    "fourth": 4,
    "5th": 5,
    "fifth": 5,
    "last": -1,
}

_ordinal_token = re.compile(
    r"\b(1st|2nd|3rd|4th|5th|first|second|third|fourth|fifth|last)\b"
)
_every_other = re.compile(r"\bevery other\b|\bbi-?weekly\b")
_byday_pattern = re.compile(r"^([+-]?\d+)?([A-Z]{2})$")
_rrule_prefix = re.compile(r"^RRULE:", re.IGNORECASE)
_day_lookup = {name.lower(): index for index, name in enumerate(DAY_NAMES)}
_day_in_text = re.compile(
    r"\b(" + "|".join(name.lower() for name in DAY_NAMES) + r")s?\b"
)

# dateutil weekday constants indexed Sunday=0 like ``DAY_NAMES``.
RRULE_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)
_RRULE_FREQUENCIES = {
    "daily": DAILY,
    "weekly": WEEKLY,
    "biweekly": WEEKLY,
    "monthly": MONTHLY,
    "yearly": YEARLY,
}


@dataclass(frozen=True)
class ParsedRRule:
    freq: str
    interval: int = 1
    byday: tuple[tuple[int | None, str], ...] = ()
    bymonthday: tuple[int, ...] = ()
    count: int | None = None
    until: date | None = None
    text: str = ""

    @property
    def pins_dates(self) -> bool:
        """True when the rule alone says which days of the period match.

        Rules that lean on DTSTART for their day (``FREQ=MONTHLY`` with no
        BYDAY) are read through ``NormalizedRecurrence`` instead, so the
        label and the dates agree.
        """
        if self.freq in ("DAILY", "YEARLY"):
            return True
        if self.freq == "WEEKLY":
            return bool(self.byday) and all(o is None for o, _ in self.byday)
        if self.freq == "MONTHLY":
            return bool(self.bymonthday) or (
                bool(self.byday) and all(o is not None for o, _ in self.byday)
            )
        return False


@dataclass(frozen=True)
class NormalizedRecurrence:
    is_recurring: bool
    frequency: str
    is_confident: bool
    interval: int = 1
    day_of_week_index: int | None = None
    weekdays: tuple[int, ...] = ()
    ordinals: tuple[int, ...] = ()
    # (ordinal, weekday) pairs for monthly rules such as 1st Tuesday + 3rd Thursday.
    nth_weekdays: tuple[tuple[int, int], ...] = ()
    month_days: tuple[int, ...] = ()
    start_date: str | None = None
    end_date: str | None = None
    count: int | None = None
    custom_dates: tuple[str, ...] = ()
    parsed_rrule: ParsedRRule | None = None

    @property
    def day_name(self) -> str | None:
        if self.day_of_week_index is None:
            return None
        return DAY_NAMES[self.day_of_week_index]

    @property
    def day_abbrev(self) -> str | None:
        if self.day_of_week_index is None:
            return None
        return DAY_ABBREVS[self.day_of_week_index]


def _positive_int(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _valid_ordinal(value: int) -> bool:
    return 1 <= value <= 5 or -5 <= value <= -1


def day_index_from_name(value: Any) -> int | None:
    """Map ``Monday``/``mondays`` (any case) to a Sunday-based index."""
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    if cleaned in _day_lookup:
        return _day_lookup[cleaned]
    if cleaned.endswith("s") and cleaned[:-1] in _day_lookup:
        return _day_lookup[cleaned[:-1]]
    return None


def _anchor_day(date_key: str | None) -> int | None:
    if not date_key:
        return None
    return day_index(date.fromisoformat(date_key))


def _anchor_ordinal(date_key: str) -> int:
    """Ordinal of the anchor's weekday within its month; a 5th counts as last."""
    ordinal = (date.fromisoformat(date_key).day - 1) // 7 + 1
    return -1 if ordinal == 5 else ordinal


def _parse_until(value: str) -> date | None:
    digits = value.strip()[:8]
    if len(digits) != 8 or not digits.isdigit():
        return None
    try:
        return date(int(digits[:4]), int(digits[4:6]), int(digits[6:8]))
    except ValueError:
        return None


def parse_rrule(rule: str | None) -> ParsedRRule | None:
    """Read the parts of an RRULE that classification and labels need.

    Returns ``None`` when there is no FREQ. The rule text itself is kept on
    the result for ``rrulestr``, with UNTIL reduced to a bare date since
    series are expanded from a naive local midnight.
    """
    if not rule or not isinstance(rule, str):
        return None
    text = _rrule_prefix.sub("", rule.strip()).strip()
    freq: str | None = None
    interval = 1
    byday: list[tuple[int | None, str]] = []
    bymonthday: list[int] = []
    count: int | None = None
    until: date | None = None
    parts: list[str] = []

    for part in re.split(r"[;\n]+", text):
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        value = value.strip()
        if not sep or not key or not value:
            continue
        parts.append(f"{key}={value}")
        if key == "FREQ":
            freq = value.upper()
        elif key == "INTERVAL":
            interval = _positive_int(value) or 1
        elif key == "BYDAY":
            for token in value.upper().split(","):
                match = _byday_pattern.match(token.strip())
                if not match or match.group(2) not in DAY_ABBREVS:
                    continue
                ordinal = int(match.group(1)) if match.group(1) else None
                if ordinal is not None and not _valid_ordinal(ordinal):
                    continue
                byday.append((ordinal, match.group(2)))
        elif key == "BYMONTHDAY":
            for token in value.split(","):
                try:
                    day = int(token)
                except ValueError:
                    continue
                if 1 <= abs(day) <= 31:
                    bymonthday.append(day)
        elif key == "COUNT":
            count = _positive_int(value)
        elif key == "UNTIL":
            until = _parse_until(value)
            parts[-1] = f"UNTIL={until:%Y%m%d}" if until else ""

    if not freq:
        return None
    return ParsedRRule(
        freq=freq,
        interval=interval,
        byday=tuple(byday),
        bymonthday=tuple(bymonthday),
        count=count,
        until=until,
        text=";".join(part for part in parts if part),
    )


def parse_multi_ordinal(text: str | None) -> list[int]:
    """``"1st/3rd"`` -> ``[1, 3]``; ``"2nd & last"`` -> ``[2, -1]``."""
    if not text:
        return []
    found = [ORDINAL_WORDS[token] for token in _ordinal_token.findall(text.lower())]
    return list(dict.fromkeys(found))


def _ordinal_sort_key(ordinal: int) -> tuple[int, int]:
    return (1, -ordinal) if ordinal < 0 else (0, ordinal)


def _ordinal_label(ordinal: int) -> str:
    if ordinal == -1:
        return "Last"
    if ordinal < 0:
        return f"{_ordinal_label(-ordinal)} to Last"
    return f"{ordinal}{_suffix(ordinal)}"


def _suffix(number: int) -> str:
    if 10 <= number % 100 <= 20:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")


def build_recurrence_rule_from_ordinals(ordinals: Iterable[int]) -> str:
    """Serialize ordinals as legacy text, ``last`` always at the end."""
    cleaned = sorted(
        {o for o in ordinals if o in ORDINAL_WORDS.values()}, key=_ordinal_sort_key
    )
    return "/".join("last" if o == -1 else _ordinal_label(o) for o in cleaned)


def parse_ordinals_from_recurrence_rule(rule: str | None) -> list[int]:
    return sorted(parse_multi_ordinal(rule), key=_ordinal_sort_key)


def normalize_custom_dates(values: Any) -> list[str]:
    """Sorted, de-duplicated valid date keys; anything else is dropped."""
    if not isinstance(values, (list, tuple)):
        return []
    keys = {coerce_date_key(value) for value in values}
    keys.discard(None)
    return sorted(keys)


def _weekly(
    base: NormalizedRecurrence,
    day: int | None,
    *,
    interval: int = 1,
    weekdays: tuple[int, ...] = (),
) -> NormalizedRecurrence:
    days = weekdays or ((day,) if day is not None else ())
    # Every-other-week needs a start date to know which weeks are "on".
    confident = bool(days) and (interval == 1 or base.start_date is not None)
    return replace(
        base,
        is_recurring=True,
        frequency="biweekly" if interval == 2 else "weekly",
        interval=interval,
        day_of_week_index=days[0] if days else day,
        weekdays=days,
        is_confident=confident,
    )


def _monthly(
    base: NormalizedRecurrence,
    day: int | None,
    ordinals: tuple[int, ...] = (),
    month_days: tuple[int, ...] = (),
    nth_weekdays: tuple[tuple[int, int], ...] = (),
) -> NormalizedRecurrence:
    anchor = base.start_date
    if not ordinals and not month_days and anchor:
        anchor_day = _anchor_day(anchor)
        if day is None or day == anchor_day:
            day = anchor_day
            ordinals = (_anchor_ordinal(anchor),)
    if not nth_weekdays and day is not None:
        nth_weekdays = tuple((ordinal, day) for ordinal in ordinals)
    weekdays = tuple(dict.fromkeys(weekday for _, weekday in nth_weekdays))
    return replace(
        base,
        is_recurring=True,
        frequency="monthly",
        day_of_week_index=day,
        weekdays=weekdays or ((day,) if day is not None else ()),
        ordinals=ordinals,
        nth_weekdays=nth_weekdays,
        month_days=month_days,
        is_confident=bool(month_days) or bool(nth_weekdays),
    )


def _custom(base: NormalizedRecurrence, custom_dates: Any) -> NormalizedRecurrence:
    dates = normalize_custom_dates(custom_dates)
    if not dates and base.start_date:
        dates = [base.start_date]
    return replace(
        base,
        is_recurring=True,
        frequency="custom",
        custom_dates=tuple(dates),
        is_confident=bool(dates),
    )


def _unknown(base: NormalizedRecurrence, *, recurring: bool, day: int | None = None):
    return replace(
        base,
        is_recurring=recurring,
        frequency="unknown",
        day_of_week_index=day,
        is_confident=False,
    )


def _from_rrule(
    parsed: ParsedRRule, base: NormalizedRecurrence, explicit_day: int | None
) -> NormalizedRecurrence:
    base = replace(
        base,
        parsed_rrule=parsed,
        end_date=parsed.until.isoformat() if parsed.until else base.end_date,
        count=parsed.count or base.count,
    )
    if parsed.byday:
        day = DAY_ABBREVS.index(parsed.byday[0][1])
    elif explicit_day is not None:
        day = explicit_day
    else:
        day = _anchor_day(base.start_date)

    if parsed.freq == "DAILY":
        return replace(
            base,
            is_recurring=True,
            frequency="daily",
            interval=parsed.interval,
            is_confident=parsed.interval == 1 or base.start_date is not None,
        )
    if parsed.freq == "WEEKLY":
        plain_days = tuple(
            dict.fromkeys(
                DAY_ABBREVS.index(abbrev)
                for ordinal, abbrev in parsed.byday
                if ordinal is None
            )
        )
        return _weekly(base, day, interval=parsed.interval, weekdays=plain_days)
    if parsed.freq == "MONTHLY":
        pairs = tuple(
            dict.fromkeys(
                (ordinal, DAY_ABBREVS.index(abbrev))
                for ordinal, abbrev in parsed.byday
                if ordinal is not None
            )
        )
        ordinals = tuple(dict.fromkeys(ordinal for ordinal, _ in pairs))
        return _monthly(base, day, ordinals, parsed.bymonthday, pairs)
    if parsed.freq == "YEARLY":
        return replace(
            base,
            is_recurring=True,
            frequency="yearly",
            interval=parsed.interval,
            day_of_week_index=day,
            is_confident=base.start_date is not None,
        )
    return _unknown(base, recurring=False, day=day)


def _from_legacy(
    text: str,
    base: NormalizedRecurrence,
    explicit_day: int | None,
    custom_dates: Any,
) -> NormalizedRecurrence:
    if text == "none":
        if explicit_day is not None:
            return _weekly(base, explicit_day)
        if base.start_date:
            return replace(base, day_of_week_index=_anchor_day(base.start_date))
        return _unknown(base, recurring=False)

    named_days = tuple(
        dict.fromkeys(_day_lookup[name] for name in _day_in_text.findall(text))
    )
    day = explicit_day
    if day is None:
        day = named_days[0] if named_days else _anchor_day(base.start_date)

    if text == "weekly":
        return _weekly(base, day)
    if text in ("biweekly", "every other week"):
        return _weekly(base, day, interval=2)
    if text == "daily":
        return replace(base, is_recurring=True, frequency="daily", is_confident=True)
    if text == "custom":
        return _custom(base, custom_dates)
    if text == "monthly":
        return _monthly(base, day)
    if text == "seasonal":
        return _unknown(base, recurring=True, day=day)
    ordinals = tuple(parse_multi_ordinal(text))
    if ordinals:
        return _monthly(base, day, ordinals)
    # Free text that names days ("Mondays & Wednesdays, 7pm") is weekly.
    if day is not None:
        days = tuple(sorted({day, *named_days})) if named_days else (day,)
        interval = 2 if _every_other.search(text) else 1
        return _weekly(base, day, interval=interval, weekdays=days)
    return _unknown(base, recurring=False)


def interpret_recurrence(event: Any) -> NormalizedRecurrence:
    """Normalize an event's schedule fields.

    ``event`` may be a mapping or an ORM row. Precedence: RRULE text, then
    legacy rule text, then custom dates, then a bare day of week (weekly),
    then a bare ``event_date`` (one-time).
    """
    event_date = coerce_date_key(get_field(event, "event_date"))
    rule = (get_field(event, "recurrence_rule") or "").strip()
    explicit_day = day_index_from_name(get_field(event, "day_of_week"))
    custom_dates = get_field(event, "custom_dates")
    base = NormalizedRecurrence(
        is_recurring=False,
        frequency="one-time",
        is_confident=True,
        start_date=event_date,
        end_date=coerce_date_key(get_field(event, "recurrence_end_date")),
        count=_positive_int(get_field(event, "max_occurrences")),
    )

    parsed = parse_rrule(rule)
    if parsed is not None:
        return _from_rrule(parsed, base, explicit_day)
    if rule:
        return _from_legacy(rule.lower(), base, explicit_day, custom_dates)
    if normalize_custom_dates(custom_dates):
        return _custom(base, custom_dates)
    if explicit_day is not None:
        return _weekly(base, explicit_day)
    if event_date:
        return replace(base, day_of_week_index=_anchor_day(event_date))
    return _unknown(base, recurring=False)


def _midnight(value: date) -> datetime:
    return datetime.combine(value, time.min)


def build_rrule(rec: NormalizedRecurrence, anchor: date) -> rrule | rruleset | None:
    """Return the dateutil rule that produces the series, starting at ``anchor``.

    Stored RRULE text that pins its own days goes through ``rrulestr``;
    legacy schedules are mapped onto ``rrule`` from the normalized fields.
    Custom schedules become an ``rruleset`` of their dates. Returns ``None``
    for frequencies that have no dates.
    """
    dtstart = _midnight(anchor)
    if rec.frequency == "custom":
        rules = rruleset()
        for key in rec.custom_dates:
            rules.rdate(_midnight(date.fromisoformat(key)))
        return rules
    if rec.frequency == "one-time":
        return rrule(DAILY, dtstart=dtstart, count=1)
    freq = _RRULE_FREQUENCIES.get(rec.frequency)
    if freq is None:
        return None

    parsed = rec.parsed_rrule
    if parsed is not None and parsed.pins_dates:
        try:
            return rrulestr(parsed.text, dtstart=dtstart)
        except ValueError as exc:
            logger.warning("Unreadable RRULE %r (%s); using its parsed parts", parsed.text, exc)

    options: dict[str, Any] = {"interval": rec.interval}
    if rec.frequency in ("weekly", "biweekly"):
        if rec.weekdays:
            options["byweekday"] = [RRULE_WEEKDAYS[day] for day in rec.weekdays]
        # Every-other-week phases are counted in Sunday-first weeks.
        options["wkst"] = SU
    elif rec.frequency == "monthly":
        if rec.nth_weekdays:
            options["byweekday"] = [
                RRULE_WEEKDAYS[weekday](ordinal) for ordinal, weekday in rec.nth_weekdays
            ]
        if rec.month_days:
            options["bymonthday"] = list(rec.month_days)
    if rec.count:
        options["count"] = rec.count
    if rec.end_date:
        options["until"] = _midnight(date.fromisoformat(rec.end_date))
    return rrule(freq, dtstart=dtstart, **options)


def _month_day_label(day: int) -> str:
    if day == -1:
        return "Last Day"
    if day < 0:
        return f"{-day}{_suffix(-day)} to Last Day"
    return f"{day}{_suffix(day)}"


def label_from_recurrence(rec: NormalizedRecurrence) -> str:
    """Human label that always agrees with what expansion will produce."""
    day = rec.day_name
    if not rec.is_recurring:
        return "One-time" if rec.frequency == "one-time" else "Schedule TBD"

    if rec.frequency in ("weekly", "biweekly"):
        days = " & ".join(DAY_NAMES[index] for index in rec.weekdays)
        if not days:
            return "Every Other Week" if rec.interval == 2 else "Weekly"
        if rec.interval == 2:
            return f"Every Other {days}"
        if rec.interval > 2:
            return f"Every {rec.interval} Weeks on {days}"
        return f"Every {days}"

    if rec.frequency == "monthly":
        if rec.month_days:
            labels = " & ".join(_month_day_label(d) for d in rec.month_days)
            return f"Monthly on the {labels}"
        if len(rec.weekdays) > 1 and rec.nth_weekdays:
            labels = " & ".join(
                f"{_ordinal_label(ordinal)} {DAY_NAMES[weekday]}"
                for ordinal, weekday in rec.nth_weekdays
            )
            return f"{labels} of the Month"
        if rec.ordinals and day:
            if len(rec.ordinals) == 1:
                return f"{_ordinal_label(rec.ordinals[0])} {day} of the Month"
            labels = " & ".join(_ordinal_label(o) for o in rec.ordinals)
            return f"{labels} {day}s"
        return f"{day} (Monthly)" if day else "Monthly"

    if rec.frequency == "daily":
        return "Every Day" if rec.interval == 1 else f"Every {rec.interval} Days"
    if rec.frequency == "yearly":
        return "Yearly" if rec.interval == 1 else f"Every {rec.interval} Years"
    if rec.frequency == "custom":
        return "Custom Schedule"
    return "Recurring"


def get_recurrence_summary(event: Any) -> str:
    rule = (get_field(event, "recurrence_rule") or "").strip().lower()
    if rule == "seasonal":
        return "Seasonal, check venue"
    return label_from_recurrence(interpret_recurrence(event))


# -------- Canonicalization --------


def is_ordinal_monthly_rule(rule: str | None) -> bool:
    """True for rules whose day of week must come from the anchor date."""
    if not rule or not isinstance(rule, str):
        return False
    parsed = parse_rrule(rule)
    if parsed is not None:
        return parsed.freq == "MONTHLY"
    text = rule.strip().lower()
    if text == "monthly":
        return True
    if text in ("", "none", "weekly", "biweekly", "every other week", "custom"):
        return False
    return bool(parse_multi_ordinal(text))


def derive_day_of_week_from_date(date_key: str | None) -> str | None:
    return day_of_week_from_date_key(date_key)


def canonicalize_day_of_week(
    rule: str | None, day_of_week: str | None, anchor_date: str | None
) -> str | None:
    """Keep an explicit day; derive one for ordinal-monthly rules; else None."""
    if isinstance(day_of_week, str) and day_of_week.strip():
        return day_of_week.strip()
    if is_ordinal_monthly_rule(rule):
        return derive_day_of_week_from_date(anchor_date)
    return None


def day_matches_date(day_of_week: str | None, event_date: str | None) -> bool:
    """False only when both are known and disagree."""
    expected = day_index_from_name(day_of_week)
    actual = _anchor_day(coerce_date_key(event_date))
    if expected is None or actual is None:
        return True
    return expected == actual


def assert_recurrence_invariant(
    rec: NormalizedRecurrence,
    occurrence_count: int,
    *,
    window_days: int,
    event_id: str | None = None,
    start_key: str | None = None,
    end_key: str | None = None,
) -> bool:
    """Log a warning when an open-ended series under-produces in a long window.

    A confident weekly series must yield at least two dates in any 14-day
    window (28 for every other week, 72 for monthly). Bounded series (count
    or end date), custom and yearly schedules are exempt. Returns True when a
    violation was logged.
    """
    if not rec.is_recurring or not rec.is_confident:
        return False
    if rec.count or rec.end_date:
        return False
    if rec.frequency == "daily":
        minimum = 2 * rec.interval
    elif rec.frequency in ("weekly", "biweekly"):
        minimum = 14 * rec.interval
    elif rec.frequency == "monthly":
        if any(abs(o) == 5 for o in rec.ordinals) or any(
            abs(d) > 28 for d in rec.month_days
        ):
            return False
        minimum = 72
    else:
        return False
    if window_days < minimum or occurrence_count >= 2:
        return False
    logger.warning(
        "[RECURRENCE INVARIANT VIOLATION] Event %s (%s) produced %d occurrence(s) "
        "in a %d-day window %s..%s. Expected >=2.",
        event_id or "unknown",
        rec.frequency,
        occurrence_count,
        window_days,
        start_key,
        end_key,
    )
    return True

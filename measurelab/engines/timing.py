"""
Timing resolution.

Turns a structured element timing constraint plus the measurement period
into a concrete inclusive date window. Anchors that depend on the patient
(an encounter period, a diagnosis date) cannot be resolved statically and
yield None, in which case callers fall back to the measurement period.
"""

from __future__ import annotations

import logging
from datetime import date

from dateutil.relativedelta import relativedelta

from measurelab.errors import InvalidMeasurementPeriodError
from measurelab.models import MeasurementPeriod, TimingConstraint

logger = logging.getLogger(__name__)

DateWindow = tuple[date, date]

MP = "measurement period"
MP_START = "measurement period start"
MP_END = "measurement period end"

DURING_OPERATORS = {"during", "starts during", "ends during", "overlaps"}


def check_period(period: MeasurementPeriod) -> MeasurementPeriod:
    """Reject a period that bypassed model validation with start after end."""
    if period.start > period.end:
        raise InvalidMeasurementPeriodError(
            "Measurement period start is after its end",
            {"start": str(period.start), "end": str(period.end)},
        )
    return period


def _offset(value: int, unit: str | None) -> relativedelta | None:
    unit = (unit or "").strip().lower().replace("(s)", "").rstrip("s")
    if unit == "year":
        return relativedelta(years=value)
    if unit == "month":
        return relativedelta(months=value)
    if unit == "day":
        return relativedelta(days=value)
    if unit == "week":
        return relativedelta(weeks=value)
    return None


def resolve_timing_window(
    timing: TimingConstraint | None,
    period: MeasurementPeriod,
) -> DateWindow | None:
    """
    Resolve a timing constraint into an inclusive (start, end) window.

    Examples:
        during / Measurement Period          -> (period.start, period.end)
        within 2 year(s) / MP End            -> (period.end - 2y, period.end)
        after start of 30 day(s) / MP Start  -> (period.start, period.start + 30d)
    """
    check_period(period)
    if timing is None:
        return None

    op = timing.operator.strip().lower()
    anchor = (timing.anchor or MP).strip().lower()
    start, end = period.start, period.end

    if op in DURING_OPERATORS:
        if anchor == MP:
            return (start, end)
        if anchor == MP_START:
            return (start, start)
        if anchor == MP_END:
            return (end, end)
        return None

    if not timing.value:
        logger.debug("Timing %r has no offset value; cannot resolve", timing.operator)
        return None
    delta = _offset(timing.value, timing.unit)
    if delta is None:
        logger.warning("Unrecognized timing unit %r", timing.unit)
        return None

    if op == "within":
        if anchor == MP_END:
            return (end - delta, end)
        if anchor == MP_START:
            return (start - delta, start)
        if anchor == MP:
            return (start - delta, end)
        return None

    if op == "before end of":
        if anchor in (MP_END, MP):
            return (end - delta, end)
        return None

    if op == "after start of":
        if anchor in (MP_START, MP):
            return (start, start + delta)
        return None

    logger.warning("Unrecognized timing operator %r", timing.operator)
    return None

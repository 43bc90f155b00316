"""
Treatment and cohort assignment from policy events.

For every event, independently:

    post_<slug>        interview date >= implementation date
    age_<threshold>p   age >= threshold
    treat_post_<slug>  post x age flag
    rel_<slug>         whole periods since implementation, floored

Relative time is floored toward negative infinity, so every interview within
a calendar period maps to the same index and ``rel >= 0`` exactly when
``post == 1``.
"""

from __future__ import annotations

import logging
from datetime import date

import numpy as np
import pandas as pd

from agewage.data.policy_events import PolicyCalendar, PolicyEvent
from agewage.errors import MissingVariable

logger = logging.getLogger(__name__)

MONTHS_PER_PERIOD = {"M": 1, "Q": 3}


def elapsed_months(dates: pd.Series, start: date) -> pd.Series:
    """Whole months from ``start`` to each date, floored (can be negative)."""
    start = pd.Timestamp(start)
    months = (dates.dt.year - start.year) * 12 + (dates.dt.month - start.month)
    short = dates.dt.day < start.day
    return months - short.astype(float)


def relative_periods(dates: pd.Series, start: date, freq: str = "Q") -> pd.Series:
    """Signed event time in quarters or months, floored toward -inf."""
    step = MONTHS_PER_PERIOD[freq.upper()]
    months = elapsed_months(dates, start)
    return np.floor(months / step).astype("Int64")


def event_dates(frame: pd.DataFrame, date_col: str | None, period_col: str | None) -> pd.Series:
    """Interview dates, or period start dates for aggregated cells."""
    if date_col and date_col in frame.columns:
        return pd.to_datetime(frame[date_col])
    if period_col and period_col in frame.columns:
        periods = frame[period_col]
        if isinstance(periods.dtype, pd.PeriodDtype):
            return periods.dt.start_time
        return pd.to_datetime(periods)
    raise MissingVariable([c for c in (date_col, period_col) if c], context="treatment assignment")


class TreatmentAssigner:
    """Attaches treatment/control/event-time labels for each policy event."""

    def __init__(self, calendar: PolicyCalendar, freq: str = "Q"):
        if freq.upper() not in MONTHS_PER_PERIOD:
            raise ValueError(f"freq must be Q or M, got {freq}")
        self.calendar = calendar
        self.freq = freq.upper()

    def assign(
        self,
        frame: pd.DataFrame,
        age_col: str = "age",
        date_col: str | None = "date",
        period_col: str | None = "period",
        events: list[PolicyEvent] | None = None,
    ) -> pd.DataFrame:
        """
        Compute treatment labels for every event.

        Args:
            frame: Panel observations or aggregated cells
            age_col: Age column
            date_col: Interview date column (preferred when present)
            period_col: Calendar period column (used when no date column)
            events: Subset of events (default: whole calendar)

        Returns:
            New DataFrame with the label columns added
        """
        if age_col not in frame.columns:
            raise MissingVariable([age_col], context="treatment assignment")

        out = frame.copy()
        dates = event_dates(out, date_col, period_col)
        ages = pd.to_numeric(out[age_col], errors="coerce")

        for event in events or list(self.calendar):
            out[event.post_col] = self._flag(dates >= event.timestamp, dates.isna())
            out[event.age_col] = self._flag(ages >= event.age_threshold, ages.isna())
            out[event.treat_col] = out[event.post_col] * out[event.age_col]
            out[event.rel_col] = relative_periods(dates, event.implementation_date, self.freq)

            logger.debug(
                f"{event.slug}: {int(out[event.treat_col].sum()):,} treated-post rows "
                f"of {len(out):,}"
            )

        return out

    @staticmethod
    def _flag(condition: pd.Series, missing: pd.Series) -> pd.Series:
        flag = condition.astype("Int64")
        flag[missing.to_numpy()] = pd.NA
        return flag

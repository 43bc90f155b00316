"""
Long-format panel construction from harmonized waves.

Each rotating wave follows respondents for up to five consecutive quarters,
stored wide (age1..age5, emp_status1..emp_status5). The builder reshapes this
to one row per (person, quarter), derives labour-market outcomes, and unions
waves by concatenation.

Overlapping waves are NOT deduplicated by default: a respondent who appears
in two overlapping rotating panels is counted twice. ``DedupPolicy`` makes the
alternative explicit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import pandas as pd

from config.settings import get_settings
from agewage.data.harmonize import HarmonizedWave
from agewage.data.variable_map import ILO_EMPLOYED, ILO_INACTIVE, ILO_UNEMPLOYED
from agewage.data.waves import WaveId
from agewage.errors import InsufficientData, Issue, record_issue

logger = logging.getLogger(__name__)

PANEL_COLUMNS = [
    "person_id",
    "wave",
    "quarter",
    "relative_quarter",
    "period",
    "year",
    "date",
    "age",
    "emp_status",
    "unemployed",
    "inactive",
    "sex",
    "ethnicity",
    "region",
    "hi_qual",
    "weight",
]

# Time-invariant covariates carried onto every quarter row
COVARIATES = ["sex", "ethnicity", "region", "hi_qual", "weight"]


class DedupPolicy(Enum):
    """How to treat respondents observed in more than one wave."""

    NONE = "none"  # Concatenate; overlapping respondents are double-counted
    PERSON_PERIOD = "person_period"  # Keep the first (person_id, period) row


@dataclass
class PanelBuildResult:
    """Combined panel plus what happened to each wave."""

    panel: pd.DataFrame
    waves_used: list[str] = field(default_factory=list)
    waves_excluded: list[str] = field(default_factory=list)
    n_duplicates_dropped: int = 0
    issues: list[Issue] = field(default_factory=list)

    @property
    def n_obs(self) -> int:
        return len(self.panel)

    @property
    def n_persons(self) -> int:
        return int(self.panel["person_id"].nunique()) if len(self.panel) else 0


def derive_outcomes(status: pd.Series) -> tuple[pd.Series, pd.Series]:
    """
    Binary outcomes from ILO economic activity status.

    ``unemployed`` is defined over the economically active (1/2), so it is the
    unemployment rate once weighted; ``inactive`` over the population aged
    16+ (1/2/3). Other codes give missing.
    """
    unemployed = pd.Series(np.nan, index=status.index)
    unemployed[status == ILO_EMPLOYED] = 0.0
    unemployed[status == ILO_UNEMPLOYED] = 1.0

    inactive = pd.Series(np.nan, index=status.index)
    inactive[status.isin([ILO_EMPLOYED, ILO_UNEMPLOYED])] = 0.0
    inactive[status == ILO_INACTIVE] = 1.0
    return unemployed, inactive


class PanelBuilder:
    """Builds the individual-quarter panel from harmonized waves."""

    def __init__(
        self,
        dedup: DedupPolicy | str | None = None,
        period_freq: str | None = None,
        start_year: int | None = None,
        end_year: int | None = None,
    ):
        settings = get_settings()
        self.dedup = DedupPolicy(dedup or settings.dedup_policy)
        self.period_freq = (period_freq or settings.period_freq).upper()
        if self.period_freq not in ("Q", "M"):
            raise ValueError(f"period_freq must be Q or M, got {self.period_freq}")
        self.start_year = settings.survey_start_year if start_year is None else start_year
        self.end_year = settings.survey_end_year if end_year is None else end_year

    def build_wave(self, hw: HarmonizedWave) -> pd.DataFrame:
        """
        Reshape one harmonized wave to one row per (person, quarter).

        Rows whose quarter age or employment status is missing are dropped.

        Args:
            hw: Harmonized wave

        Returns:
            Long DataFrame (without relative_quarter)
        """
        data = hw.data
        # One row per respondent; generated ids are only unique within the wave
        row_ids = pd.Series(
            [f"{hw.wave.label}-{i}" for i in range(len(data))],
            index=data.index,
            dtype="string",
        )
        person_id = data["person_id"].fillna(row_ids) if hw.has("person_id") else row_ids

        frames = []
        for q in range(1, hw.n_quarters + 1):
            frame = pd.DataFrame({
                "person_id": person_id,
                "wave": hw.wave.label,
                "quarter": q,
                "age": data[f"age{q}"],
                "emp_status": data[f"emp_status{q}"],
                "ref_date": data[f"ref_date{q}"],
            })
            for col in COVARIATES:
                frame[col] = data[col]
            frame = frame.dropna(subset=["age", "emp_status"])
            if len(frame):
                frames.append(self._add_calendar(frame, hw.wave, q))

        if not frames:
            return pd.DataFrame(columns=[c for c in PANEL_COLUMNS if c != "relative_quarter"])

        long = pd.concat(frames, ignore_index=True)
        long["unemployed"], long["inactive"] = derive_outcomes(long["emp_status"])
        return long

    def build(self, waves: dict[WaveId, HarmonizedWave]) -> PanelBuildResult:
        """
        Build the combined panel from several waves.

        Args:
            waves: Harmonized waves keyed by identifier

        Returns:
            PanelBuildResult
        """
        result = PanelBuildResult(panel=pd.DataFrame(columns=PANEL_COLUMNS))
        frames = []

        for wave_id in sorted(waves):
            hw = waves[wave_id]
            result.issues.extend(hw.issues)
            long = self.build_wave(hw)
            if len(long):
                long = long[long["year"].between(self.start_year, self.end_year)]
            if long.empty:
                err = InsufficientData(
                    f"Wave {wave_id.label} produced no valid panel observations",
                    key=wave_id.label,
                )
                record_issue(result.issues, Issue(
                    kind=err.kind,
                    message=str(err),
                    details={"wave": wave_id.label},
                ), logger)
                result.waves_excluded.append(wave_id.label)
                continue
            frames.append(long)
            result.waves_used.append(wave_id.label)

        if not frames:
            logger.warning("No wave produced panel observations")
            return result

        panel = pd.concat(frames, ignore_index=True)

        if self.dedup is DedupPolicy.PERSON_PERIOD:
            before = len(panel)
            panel = panel.drop_duplicates(subset=["person_id", "period"], keep="first")
            result.n_duplicates_dropped = before - len(panel)
            if result.n_duplicates_dropped:
                record_issue(result.issues, Issue(
                    kind="duplicate_observations",
                    message="Dropped repeated (person_id, period) rows across waves",
                    count=result.n_duplicates_dropped,
                    severity="INFO",
                ), logger)

        panel["relative_quarter"] = (
            panel["quarter"] - panel.groupby("person_id")["quarter"].transform("min")
        ).astype(int)

        result.panel = panel[PANEL_COLUMNS].reset_index(drop=True)
        logger.info(
            f"Built panel: {result.n_obs:,} observations, {result.n_persons:,} persons, "
            f"{len(result.waves_used)} waves"
        )
        return result

    def _add_calendar(self, frame: pd.DataFrame, wave: WaveId, quarter: int) -> pd.DataFrame:
        """Calendar period and interview date, from ref_date or wave position."""
        fallback_period = wave.quarter_period(quarter)
        if self.period_freq == "M":
            fallback_period = fallback_period.asfreq("M", how="start")

        has_date = frame["ref_date"].notna()
        frame = frame.copy()
        frame["date"] = frame["ref_date"].where(has_date, fallback_period.start_time)
        frame["date"] = pd.to_datetime(frame["date"])
        frame["period"] = frame["date"].dt.to_period(self.period_freq)
        frame["year"] = frame["period"].dt.year
        return frame.drop(columns=["ref_date"])


def filter_ages(panel: pd.DataFrame, min_age: int | None = None,
                max_age: int | None = None) -> pd.DataFrame:
    """Restrict a panel or cell table to an age window (inclusive)."""
    settings = get_settings()
    lo = settings.min_age if min_age is None else min_age
    hi = settings.max_age if max_age is None else max_age
    return panel[panel["age"].between(lo, hi)]

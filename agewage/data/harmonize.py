"""
Schema harmonization across survey vintages.

Projects each raw wave through the VariableMap onto the canonical variable
set. Renaming is an exact passthrough of the selected raw column; the only
value transformations are:

- negative numeric codes (survey "does not apply" / "no answer") -> missing
- day-month-year text dates -> datetime, unparseable -> NaT

Per-quarter variables become ``<name><q>`` columns (``age1``..``age5``).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from config.settings import get_settings
from agewage.data.variable_map import CanonicalVariable, Resolution, VariableMap
from agewage.data.waves import RawWave, WaveId
from agewage.errors import Issue, MissingVariable, record_issue

logger = logging.getLogger(__name__)


@dataclass
class HarmonizedWave:
    """One wave restricted to canonical columns."""

    wave: WaveId
    data: pd.DataFrame
    resolutions: dict[str, Resolution]
    n_quarters: int
    issues: list[Issue] = field(default_factory=list)

    @property
    def missing_variables(self) -> list[str]:
        return [name for name, r in self.resolutions.items() if not r.found]

    def has(self, name: str) -> bool:
        res = self.resolutions.get(name)
        return res is not None and res.found

    def __len__(self) -> int:
        return len(self.data)


def coerce_numeric(values: pd.Series) -> pd.Series:
    """Numeric view of a raw column with negative sentinel codes set missing."""
    out = pd.to_numeric(values, errors="coerce").astype(float)
    return out.mask(out < 0)


def parse_dates(values: pd.Series, date_format: str) -> pd.Series:
    """Parse day-month-year text dates; anything unparseable becomes NaT."""
    if pd.api.types.is_datetime64_any_dtype(values):
        return values
    text = values.astype("string").str.strip()
    return pd.to_datetime(text, format=date_format, errors="coerce")


class SchemaHarmonizer:
    """Maps heterogeneous per-wave columns onto the canonical variable set."""

    def __init__(
        self,
        variable_map: VariableMap | None = None,
        date_format: str | None = None,
        n_quarters: int | None = None,
    ):
        settings = get_settings()
        self.variable_map = variable_map or VariableMap.default()
        self.date_format = date_format or settings.date_format
        self.n_quarters = n_quarters

    def harmonize(self, raw: RawWave) -> HarmonizedWave:
        """
        Harmonize one wave.

        Every canonical variable appears in the output. Variables with no
        synonym present are all-missing and listed in a single
        MissingVariable issue for the wave.

        Args:
            raw: Raw wave as loaded

        Returns:
            HarmonizedWave
        """
        n_quarters = self.n_quarters or raw.wave.n_quarters
        resolutions = self.variable_map.resolve(raw.columns, n_quarters)
        issues: list[Issue] = []

        columns: dict[str, pd.Series] = {}
        index = raw.data.index

        for var in self.variable_map:
            res = resolutions[var.name]
            if var.per_quarter:
                for q in range(1, n_quarters + 1):
                    raw_col = res.columns.get(q)
                    columns[f"{var.name}{q}"] = self._convert(var, raw, raw_col, index)
            else:
                columns[var.name] = self._convert(var, raw, res.columns.get(0), index)

        missing = [name for name, r in resolutions.items() if not r.found]
        if missing:
            err = MissingVariable(missing, context=f"wave {raw.wave.label}")
            record_issue(issues, Issue(
                kind=err.kind,
                message=str(err),
                count=len(missing),
                details={"wave": raw.wave.label, "names": missing},
            ), logger)

        data = pd.DataFrame(columns, index=index).reset_index(drop=True)
        data["wave"] = raw.wave.label

        logger.info(
            f"Harmonized wave {raw.wave.label}: {len(data):,} rows, "
            f"{len(self.variable_map.names) - len(missing)}/{len(self.variable_map.names)} variables"
        )

        return HarmonizedWave(
            wave=raw.wave,
            data=data,
            resolutions=resolutions,
            n_quarters=n_quarters,
            issues=issues,
        )

    def harmonize_all(
        self,
        waves: dict[WaveId, RawWave],
        max_workers: int | None = None,
    ) -> dict[WaveId, HarmonizedWave]:
        """
        Harmonize waves independently; a failing wave does not block others.

        Args:
            waves: Raw waves keyed by identifier
            max_workers: Thread pool size (None or 1 runs sequentially)

        Returns:
            Harmonized waves keyed by identifier, in wave order
        """
        ordered = sorted(waves)

        if max_workers and max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                futures = {w: pool.submit(self.harmonize, waves[w]) for w in ordered}
                outcomes = {}
                for w, fut in futures.items():
                    try:
                        outcomes[w] = fut.result()
                    except Exception as e:
                        logger.exception(f"Harmonization failed for wave {w.label}: {e}")
                return outcomes

        outcomes = {}
        for w in ordered:
            try:
                outcomes[w] = self.harmonize(waves[w])
            except Exception as e:
                logger.exception(f"Harmonization failed for wave {w.label}: {e}")
        return outcomes

    def _convert(
        self,
        var: CanonicalVariable,
        raw: RawWave,
        raw_col: str | None,
        index: pd.Index,
    ) -> pd.Series:
        if raw_col is None:
            if var.kind == "date":
                return pd.Series(pd.NaT, index=index, dtype="datetime64[ns]")
            if var.kind == "text":
                return pd.Series(pd.NA, index=index, dtype="string")
            return pd.Series(np.nan, index=index, dtype=float)

        values = raw.data[raw_col]
        if var.kind == "numeric":
            return coerce_numeric(values)
        if var.kind == "date":
            return parse_dates(values, self.date_format)
        return values.astype("string")

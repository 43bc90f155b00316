"""
Survey-weighted aggregation of panel observations to cells.

A cell is one combination of grouping keys (e.g. age x sex x period). Each
outcome's rate is ``sum(w * y) / sum(w)`` over observations where both the
weight and that outcome are present. Empty cells are never reported as a
zero rate.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np
import pandas as pd

from agewage.errors import InsufficientData, Issue, MissingVariable, record_issue

logger = logging.getLogger(__name__)


def weighted_rate(values: Iterable[float], weights: Iterable[float]) -> float:
    """
    Weighted mean over pairs where both value and weight are present.

    Raises:
        InsufficientData: nothing left, or zero total weight
    """
    y = np.asarray(values, dtype=float)
    w = np.asarray(weights, dtype=float)
    if y.shape != w.shape:
        raise ValueError(f"values and weights differ in length: {y.shape} vs {w.shape}")
    keep = ~(np.isnan(y) | np.isnan(w))
    total = w[keep].sum()
    if not keep.any() or total <= 0:
        raise InsufficientData("No observations with positive weight in group")
    return float((w[keep] * y[keep]).sum() / total)


@dataclass
class AggregationResult:
    """Cell table plus issues for cells that could not be computed."""

    cells: pd.DataFrame
    by: list[str]
    outcomes: list[str]
    issues: list[Issue] = field(default_factory=list)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def empty_cells(self) -> pd.DataFrame:
        return self.cells[self.cells["n_obs"] == 0]


class WeightedAggregator:
    """Collapses observation-level data to weighted outcome rates."""

    def __init__(self, weight_col: str = "weight"):
        self.weight_col = weight_col

    def aggregate(
        self,
        panel: pd.DataFrame,
        by: list[str],
        outcomes: list[str] | None = None,
        grid: pd.DataFrame | dict[str, Iterable[Any]] | None = None,
    ) -> AggregationResult:
        """
        Aggregate to one row per grouping key.

        Args:
            panel: Observation-level data
            by: Grouping keys, e.g. ["age", "period"]
            outcomes: Binary outcomes to rate (default: unemployed, inactive)
            grid: Explicit set of cells to report (DataFrame of key columns, or
                a dict of key -> levels expanded as a product). Cells in the
                grid with no contributing observations get missing rates and
                an InsufficientData issue.

        Returns:
            AggregationResult with columns: keys, <outcome>, <outcome>_weight,
            weight_sum, n_obs
        """
        outcomes = outcomes or ["unemployed", "inactive"]
        needed = list(by) + list(outcomes) + [self.weight_col]
        missing = [c for c in needed if c not in panel.columns]
        if missing:
            raise MissingVariable(missing, context="aggregation")

        df = panel[needed].copy()
        df["_w"] = pd.to_numeric(df[self.weight_col], errors="coerce")

        for outcome in outcomes:
            y = pd.to_numeric(df[outcome], errors="coerce")
            ok = y.notna() & df["_w"].notna()
            df[f"_wy_{outcome}"] = (df["_w"] * y).where(ok, 0.0)
            df[f"_w_{outcome}"] = df["_w"].where(ok, 0.0)

        grouped = df.groupby(by, observed=True, sort=True)
        cells = grouped.agg(
            n_obs=("_w", "count"),
            weight_sum=("_w", "sum"),
            **{f"_wy_{o}": (f"_wy_{o}", "sum") for o in outcomes},
            **{f"{o}_weight": (f"_w_{o}", "sum") for o in outcomes},
        ).reset_index()

        if grid is not None:
            cells = self._expand_to_grid(cells, by, grid)

        issues: list[Issue] = []
        for outcome in outcomes:
            denom = cells[f"{outcome}_weight"]
            cells[outcome] = (cells[f"_wy_{outcome}"] / denom).where(denom > 0)
            cells = cells.drop(columns=[f"_wy_{outcome}"])

            n_empty = int((~(denom > 0)).sum())
            if n_empty:
                err = InsufficientData(
                    f"{n_empty} cell(s) have no weighted observations for '{outcome}'"
                )
                record_issue(issues, Issue(
                    kind=err.kind,
                    message=str(err),
                    count=n_empty,
                    details={
                        "outcome": outcome,
                        "cells": cells.loc[~(denom > 0), by].to_dict("records")[:20],
                    },
                ), logger)

        cols = list(by) + list(outcomes) + [f"{o}_weight" for o in outcomes] + ["weight_sum", "n_obs"]
        cells = cells[cols]

        logger.info(f"Aggregated {len(panel):,} observations to {len(cells):,} cells by {by}")
        return AggregationResult(cells=cells, by=list(by), outcomes=list(outcomes), issues=issues)

    @staticmethod
    def _expand_to_grid(
        cells: pd.DataFrame,
        by: list[str],
        grid: pd.DataFrame | dict[str, Iterable[Any]],
    ) -> pd.DataFrame:
        """Left-join the observed cells onto the requested key grid."""
        if isinstance(grid, dict):
            levels = [list(grid[k]) for k in by]
            grid = pd.DataFrame(list(itertools.product(*levels)), columns=by)
        grid = grid[by].drop_duplicates().copy()
        for key in by:
            if key in cells.columns:
                grid[key] = grid[key].astype(cells[key].dtype)
        out = grid.merge(cells, on=by, how="left")
        fill = {c: 0 for c in out.columns if c not in by}
        out = out.fillna(fill)
        out["n_obs"] = out["n_obs"].astype(int)
        return out

"""
Threshold pipeline: raw waves to per-reform estimates.

    load -> harmonize -> panel -> for each reform, isolated:
        aggregate (age x period) -> treatment -> DiD
                                             -> event study -> pre-trend Wald
        panel (post-reform window) -> sharp RDD at the age threshold

Each reform only sees observations dated inside its isolation window (from
the previous reform's implementation to the day before the next one), and a
failure in one reform's estimation is recorded on its ReformRun without
stopping the others.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd

from agewage.data.harmonize import HarmonizedWave, SchemaHarmonizer
from agewage.data.panel import PanelBuilder, PanelBuildResult, filter_ages
from agewage.data.policy_events import PolicyCalendar, PolicyEvent, get_policy_calendar
from agewage.data.waves import RawWave, WaveId, WaveLoader
from agewage.errors import AgewageError, InsufficientData, Issue, record_issue
from agewage.model.aggregate import AggregationResult, WeightedAggregator
from agewage.model.fixed_effects import EstimationResult, EventStudyResult, FixedEffectsEstimator
from agewage.model.rdd import RDDEstimator, RDDResult
from agewage.model.treatment import TreatmentAssigner
from agewage.model.wald import WaldResult, WaldTester

logger = logging.getLogger(__name__)

OUTCOMES = ("unemployed", "inactive")


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------

@dataclass
class ReformRun:
    """Everything estimated for one policy event."""

    event: PolicyEvent
    window: tuple
    cells: AggregationResult | None = None
    did: dict[str, EstimationResult] = field(default_factory=dict)
    event_study: dict[str, EventStudyResult] = field(default_factory=dict)
    pre_trends: dict[str, WaldResult] = field(default_factory=dict)
    rdd: dict[str, RDDResult] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def rows(self) -> list[dict]:
        """Flat result rows for this reform."""
        base = {"reform": self.event.slug, "age_threshold": self.event.age_threshold}
        rows = []
        for outcome, res in self.did.items():
            term = res.term(self.event.treat_col)
            rows.append({**base, "outcome": outcome, "model": "did",
                         "term": self.event.treat_col, **term,
                         "n_obs": res.n_obs, "reliable": res.reliable})
        for outcome, es in self.event_study.items():
            frame = es.to_dataframe()
            for rec in frame.itertuples(index=False):
                rows.append({**base, "outcome": outcome, "model": "event_study",
                             "term": rec.term, "estimate": rec.coefficient,
                             "std_error": rec.std_error, "t_stat": np.nan,
                             "pvalue": rec.pvalue, "n_obs": es.estimation.n_obs,
                             "reliable": es.estimation.reliable})
        for outcome, wald in self.pre_trends.items():
            rows.append({**base, "outcome": outcome, "model": "pre_trend_wald",
                         "term": f"{len(wald.terms)} leads", "estimate": wald.statistic,
                         "std_error": np.nan, "t_stat": np.nan, "pvalue": wald.pvalue,
                         "n_obs": np.nan, "reliable": wald.reliable})
        for outcome, rdd in self.rdd.items():
            rows.append({**base, "outcome": outcome, "model": "rdd",
                         "term": "above", "estimate": rdd.estimate,
                         "std_error": rdd.std_error, "t_stat": rdd.t_stat,
                         "pvalue": rdd.pvalue, "n_obs": rdd.n_obs, "reliable": rdd.reliable})
        return rows


@dataclass
class PipelineResult:
    """Panel plus one ReformRun per policy event."""

    panel: PanelBuildResult
    reforms: dict[str, ReformRun] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)

    def results_table(self) -> pd.DataFrame:
        """Tidy table of every estimate, one row per (reform, outcome, model, term)."""
        columns = ["reform", "age_threshold", "outcome", "model", "term", "estimate",
                   "std_error", "t_stat", "pvalue", "n_obs", "reliable"]
        rows = [row for run in self.reforms.values() for row in run.rows()]
        return pd.DataFrame(rows, columns=columns)

    def issues_table(self) -> pd.DataFrame:
        records = [{"reform": "", **i.to_dict()} for i in self.issues]
        for slug, run in self.reforms.items():
            records += [{"reform": slug, **i.to_dict()} for i in run.issues]
        return pd.DataFrame(records)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ThresholdPipeline:
    """Runs harmonization, panel construction and per-reform estimation."""

    def __init__(
        self,
        calendar: PolicyCalendar | None = None,
        harmonizer: SchemaHarmonizer | None = None,
        builder: PanelBuilder | None = None,
        estimator: FixedEffectsEstimator | None = None,
        rdd: RDDEstimator | None = None,
        tester: WaldTester | None = None,
        outcomes: Sequence[str] = OUTCOMES,
        age_span: int | None = None,
        cluster: Sequence[str] = ("period",),
        rdd_cluster: str | None = None,
        max_workers: int | None = None,
    ):
        """
        Args:
            calendar: Policy events (default: configured calendar)
            harmonizer: Schema harmonizer
            builder: Panel builder
            estimator: DiD/event-study estimator
            rdd: RDD estimator
            tester: Wald tester for pre-trends
            outcomes: Binary outcomes to estimate
            age_span: Keep ages within threshold +/- span per reform
                (default: the configured min/max age)
            cluster: Cluster key(s) for DiD and event study, at most two
            rdd_cluster: Cluster key for RDD standard errors (default HC1)
            max_workers: Threads for harmonization and per-reform estimation
        """
        self.calendar = get_policy_calendar() if calendar is None else calendar
        self.harmonizer = harmonizer or SchemaHarmonizer()
        self.builder = builder or PanelBuilder()
        self.estimator = estimator or FixedEffectsEstimator()
        self.rdd = rdd or RDDEstimator()
        self.tester = tester or WaldTester()
        self.aggregator = WeightedAggregator()
        self.outcomes = list(outcomes)
        self.age_span = age_span
        self.cluster = list(cluster)
        self.rdd_cluster = rdd_cluster
        self.max_workers = max_workers

    def harmonize(self, raw: dict[WaveId, RawWave]) -> dict[WaveId, HarmonizedWave]:
        return self.harmonizer.harmonize_all(raw, max_workers=self.max_workers)

    def build_panel(self, raw: dict[WaveId, RawWave]) -> PanelBuildResult:
        """Harmonize raw waves and build the combined panel."""
        harmonized = self.harmonize(raw)
        failed = [w.label for w in raw if w not in harmonized]
        result = self.builder.build(harmonized)
        result.waves_excluded.extend(failed)
        return result

    def run(
        self,
        loader: WaveLoader,
        start_year: int | None = None,
        end_year: int | None = None,
        events: Sequence[str] | None = None,
    ) -> PipelineResult:
        """
        Run the whole pipeline from a wave source.

        Args:
            loader: Wave source
            start_year: First survey year (default: settings)
            end_year: Last survey year (default: settings)
            events: Slugs of the reforms to estimate (default: all)

        Returns:
            PipelineResult
        """
        raw = loader.load_all(start_year=start_year, end_year=end_year)
        panel = self.build_panel(raw)
        return self.run_panel(panel, events=events)

    def run_panel(
        self,
        panel: PanelBuildResult,
        events: Sequence[str] | None = None,
    ) -> PipelineResult:
        """Estimate every selected reform on an already-built panel."""
        result = PipelineResult(panel=panel, issues=list(panel.issues))
        selected = [self.calendar.get(e) for e in events] if events else list(self.calendar)

        if panel.panel.empty:
            record_issue(result.issues, Issue(
                kind="insufficient_data",
                message="Panel is empty; no reform estimated",
                severity="ERROR",
            ), logger)
            return result

        if self.max_workers and self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {e.slug: pool.submit(self.run_reform, panel.panel, e) for e in selected}
                for slug, fut in futures.items():
                    result.reforms[slug] = fut.result()
        else:
            for event in selected:
                result.reforms[event.slug] = self.run_reform(panel.panel, event)

        n_ok = sum(run.succeeded for run in result.reforms.values())
        logger.info(f"Estimated {n_ok}/{len(selected)} reforms without errors")
        return result

    def reform_sample(self, panel: pd.DataFrame, event: PolicyEvent) -> pd.DataFrame:
        """Observations inside the reform's isolation window and age range."""
        start, end = self.calendar.isolation_window(event)
        dates = pd.to_datetime(panel["date"])
        keep = pd.Series(True, index=panel.index)
        if start is not None:
            keep &= dates >= pd.Timestamp(start)
        if end is not None:
            keep &= dates <= pd.Timestamp(end)
        sample = panel[keep]
        if self.age_span is None:
            return filter_ages(sample)
        return filter_ages(sample, event.age_threshold - self.age_span,
                           event.age_threshold + self.age_span)

    def run_reform(self, panel: pd.DataFrame, event: PolicyEvent) -> ReformRun:
        """Estimate one reform; every failure is recorded, never raised."""
        window = self.calendar.isolation_window(event)
        run = ReformRun(event=event, window=window)
        try:
            self._estimate_reform(run, panel)
        except Exception as e:
            logger.exception(f"Reform {event.slug} failed")
            run.errors["reform"] = str(e)
            record_issue(run.issues, Issue(
                kind=getattr(e, "kind", type(e).__name__),
                message=f"{event.slug} failed: {e}",
                severity="ERROR",
            ), logger)
        return run

    def _estimate_reform(self, run: ReformRun, panel: pd.DataFrame) -> None:
        event, window = run.event, run.window
        sample = self.reform_sample(panel, event)
        logger.info(
            f"Reform {event.slug} (age {event.age_threshold}, {event.implementation_date}): "
            f"{len(sample):,} observations in window {window}"
        )
        if sample.empty:
            err = InsufficientData(f"No observations for {event.slug} in window {window}",
                                   key=event.slug)
            run.errors["sample"] = str(err)
            record_issue(run.issues, Issue.from_error(err), logger)
            return

        run.cells = self._attempt(run, "aggregate", self.aggregator.aggregate,
                                  sample, by=["age", "period"], outcomes=self.outcomes)
        if run.cells is None:
            return
        run.issues.extend(run.cells.issues)

        assigner = TreatmentAssigner(self.calendar, freq=self.builder.period_freq)
        cells = assigner.assign(run.cells.cells, date_col=None, period_col="period",
                                events=[event])

        for outcome in self.outcomes:
            weights = f"{outcome}_weight"
            did = self._attempt(run, f"did:{outcome}", self.estimator.fit_did,
                                cells, outcome, event, weights=weights, cluster=self.cluster)
            if did is not None:
                run.did[outcome] = did
                run.issues.extend(did.issues)

            es = self._attempt(run, f"event_study:{outcome}", self.estimator.fit_event_study,
                               cells, outcome, event, weights=weights, cluster=self.cluster)
            if es is not None:
                run.event_study[outcome] = es
                run.issues.extend(es.estimation.issues)
                wald = self._attempt(run, f"pre_trends:{outcome}", es.pre_trend_test, self.tester)
                if wald is not None:
                    run.pre_trends[outcome] = wald

            rdd = self._attempt(
                run, f"rdd:{outcome}", self.rdd.estimate,
                sample, outcome, "age",
                cutoff=event.age_threshold,
                weights="weight",
                date_col="date",
                date_range=(event.implementation_date, window[1]),
                cluster=self.rdd_cluster,
            )
            if rdd is not None:
                run.rdd[outcome] = rdd
                run.issues.extend(rdd.issues)

    @staticmethod
    def _attempt(run: ReformRun, stage: str, func, *args, **kwargs):
        """Call one estimation step, recording a failure on the run."""
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not isinstance(e, AgewageError):
                logger.exception(f"Unexpected failure in {run.event.slug} {stage}")
            run.errors[stage] = str(e)
            record_issue(run.issues, Issue(
                kind=getattr(e, "kind", type(e).__name__),
                message=f"{run.event.slug} {stage} failed: {e}",
                severity="ERROR",
            ), logger)
            return None

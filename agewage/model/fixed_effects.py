"""
Weighted least squares with absorbed fixed effects.

Model families:
- DiD: y = beta * (post x age_flag) + controls + FE(age) + FE(period)
- Event study: y = sum_k beta_k * 1[rel = k] x age_flag + ... , one or more
  reference buckets omitted

Fixed effects are absorbed by the within transformation (see absorb.py);
coefficients come from statsmodels WLS on the demeaned arrays and the
covariance from VarianceEstimator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from config.settings import get_settings
from agewage.data.policy_events import PolicyEvent
from agewage.errors import (
    CapacityExceeded,
    InsufficientData,
    Issue,
    MissingVariable,
    RankDeficientDesign,
    record_issue,
)
from agewage.model.absorb import demean, factorize, find_degenerate_levels
from agewage.model.variance import VarianceEstimator

logger = logging.getLogger(__name__)


def _as_float(series: pd.Series) -> np.ndarray:
    return pd.to_numeric(series, errors="coerce").to_numpy(dtype=float, na_value=np.nan)


@dataclass
class RegressionDesign:
    """Inputs of one estimation call. Built fresh per call, never persisted."""

    outcome: str
    regressors: list[str]
    data: pd.DataFrame
    absorb: list[str] = field(default_factory=list)
    weights: str | None = None
    clusters: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)

    @property
    def n_obs(self) -> int:
        return len(self.data)

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        outcome: str,
        regressors: Sequence[str],
        absorb: Sequence[str] = (),
        weights: str | None = None,
        clusters: Sequence[str] = (),
    ) -> "RegressionDesign":
        """
        Select and validate the columns of a regression.

        A required column that is absent, or present but entirely missing
        (a canonical variable the wave never had), raises MissingVariable.
        So does a fixed-effect or cluster key that is missing on rows where
        everything else is observed, such as ``region`` in a wave that never
        recorded it. Other incomplete rows and rows with negative weights
        are dropped and reported.
        """
        regressors = list(dict.fromkeys(regressors))
        absorb = list(absorb)
        clusters = list(clusters)
        needed = list(dict.fromkeys(
            [outcome] + regressors + absorb + clusters + ([weights] if weights else [])
        ))

        missing = [c for c in needed if c not in frame.columns or frame[c].isna().all()]
        if missing:
            raise MissingVariable(missing, context=f"regression of {outcome}")

        keys = list(dict.fromkeys(absorb + clusters))
        others = [c for c in needed if c not in keys]
        observed = frame[others].notna().all(axis=1)
        partial = [c for c in keys if (frame[c].isna() & observed).any()]
        if partial:
            affected = frame[partial].isna().any(axis=1) & observed
            waves = (
                sorted(frame.loc[affected, "wave"].dropna().astype(str).unique())
                if "wave" in frame.columns else []
            )
            raise MissingVariable(
                partial,
                context=f"regression of {outcome}",
                waves=waves,
                count=int(affected.sum()),
            )

        data = frame[needed].copy()
        issues: list[Issue] = []

        complete = data.notna().all(axis=1)
        if weights:
            w = pd.to_numeric(data[weights], errors="coerce")
            complete &= w >= 0
        n_incomplete = int((~complete).sum())
        if n_incomplete:
            record_issue(issues, Issue(
                kind="incomplete_rows",
                message=f"Dropped rows with missing values or negative weights "
                        f"in regression of {outcome}",
                count=n_incomplete,
            ), logger)
        data = data[complete].reset_index(drop=True)

        return cls(
            outcome=outcome,
            regressors=regressors,
            data=data,
            absorb=absorb,
            weights=weights,
            clusters=clusters,
            issues=issues,
        )


@dataclass(frozen=True)
class EstimationResult:
    """Fitted coefficients, covariance and diagnostics. Immutable once returned."""

    params: pd.Series
    cov: pd.DataFrame
    outcome: str
    n_obs: int
    cov_type: str
    reliable: bool
    absorbed: tuple[str, ...] = ()
    cluster_vars: tuple[str, ...] = ()
    n_clusters: dict[str, int] = field(default_factory=dict)
    condition_number: float | None = None
    resid: np.ndarray | None = None
    weight_sum: float = 0.0
    r2_within: float | None = None
    absorb_iterations: int = 0
    issues: tuple[Issue, ...] = ()
    metadata: dict = field(default_factory=dict)

    @property
    def std_errors(self) -> pd.Series:
        diag = np.diag(self.cov.to_numpy()).copy()
        diag[diag < 0] = np.nan
        return pd.Series(np.sqrt(diag), index=self.params.index, name="std_error")

    @property
    def tstats(self) -> pd.Series:
        return (self.params / self.std_errors).rename("t_stat")

    @property
    def pvalues(self) -> pd.Series:
        return pd.Series(
            2 * stats.norm.sf(np.abs(self.tstats.to_numpy())),
            index=self.params.index,
            name="pvalue",
        )

    def conf_int(self, alpha: float = 0.05) -> pd.DataFrame:
        z = stats.norm.ppf(1 - alpha / 2)
        se = self.std_errors
        return pd.DataFrame({"lower": self.params - z * se, "upper": self.params + z * se})

    def term(self, name: str) -> dict[str, float]:
        """Estimate, SE, t and p for one coefficient."""
        if name not in self.params.index:
            raise KeyError(f"Term '{name}' not in fitted model")
        return {
            "estimate": float(self.params[name]),
            "std_error": float(self.std_errors[name]),
            "t_stat": float(self.tstats[name]),
            "pvalue": float(self.pvalues[name]),
        }

    def summary_frame(self) -> pd.DataFrame:
        ci = self.conf_int()
        return pd.DataFrame({
            "estimate": self.params,
            "std_error": self.std_errors,
            "t_stat": self.tstats,
            "pvalue": self.pvalues,
            "conf_lower": ci["lower"],
            "conf_upper": ci["upper"],
        })

    def summary(self) -> str:
        lines = [
            "=" * 60,
            f"WLS with absorbed fixed effects: {self.outcome}",
            "=" * 60,
            f"Observations: {self.n_obs:,}",
            f"Absorbed: {', '.join(self.absorbed) or 'none'}",
            f"Covariance: {self.cov_type}"
            + (f" ({', '.join(self.cluster_vars)})" if self.cluster_vars else ""),
        ]
        if not self.reliable:
            lines.append("WARNING: covariance flagged as numerically unreliable")
        lines.append("")
        lines.append(self.summary_frame().to_string(float_format=lambda x: f"{x:.4f}"))
        for issue in self.issues:
            lines.append(str(issue))
        return "\n".join(lines)


class FixedEffectsEstimator:
    """Weighted least squares with fixed effects absorbed by demeaning."""

    def __init__(
        self,
        variance: VarianceEstimator | None = None,
        max_fe_levels: int | None = None,
        max_design_cells: int | None = None,
        tol: float | None = None,
        max_iter: int | None = None,
    ):
        settings = get_settings()
        self.variance = variance or VarianceEstimator()
        self.max_fe_levels = settings.max_fe_levels if max_fe_levels is None else max_fe_levels
        self.max_design_cells = (
            settings.max_design_cells if max_design_cells is None else max_design_cells
        )
        self.tol = settings.absorb_tol if tol is None else tol
        self.max_iter = settings.absorb_max_iter if max_iter is None else max_iter

    def fit(self, design: RegressionDesign, metadata: dict | None = None) -> EstimationResult:
        """
        Fit a RegressionDesign.

        Raises:
            InsufficientData: no observations survive filtering
            CapacityExceeded: too many fixed-effect levels or design cells
            RankDeficientDesign: no identified regressor remains
        """
        issues = list(design.issues)
        data = design.data
        n = len(data)
        if n == 0:
            raise InsufficientData(f"No complete observations for {design.outcome}")

        cells = n * max(len(design.regressors), 1)
        if cells > self.max_design_cells:
            raise CapacityExceeded("Design matrix too large", cells, self.max_design_cells)

        codes = {}
        total_levels = 0
        for name in design.absorb:
            codes[name], n_levels = factorize(data[name])
            total_levels += n_levels
        if total_levels > self.max_fe_levels:
            raise CapacityExceeded("Too many fixed-effect levels", total_levels, self.max_fe_levels)

        w = _as_float(data[design.weights]) if design.weights else np.ones(n)

        # Degenerate fixed-effect levels
        degenerate = find_degenerate_levels(codes, w, _as_float(data[design.outcome]))
        if degenerate.n_dropped:
            record_issue(issues, Issue(
                kind="degenerate_levels",
                message=f"Dropped {degenerate.singleton_rows} singleton, "
                        f"{degenerate.zero_weight_rows} zero-weight and "
                        f"{degenerate.constant_outcome_rows} constant-outcome fixed-effect rows",
                count=degenerate.n_dropped,
                details={
                    "by_factor": degenerate.by_factor,
                    "singleton_rows": degenerate.singleton_rows,
                    "zero_weight_rows": degenerate.zero_weight_rows,
                    "constant_outcome_rows": degenerate.constant_outcome_rows,
                },
            ), logger)
        zero_weight = degenerate.keep & (w <= 0)
        if zero_weight.any():
            record_issue(issues, Issue(
                kind="zero_weight_rows",
                message="Dropped observations with zero survey weight",
                count=int(zero_weight.sum()),
            ), logger)
        keep = degenerate.keep & (w > 0)
        if not keep.any():
            raise InsufficientData(f"No observations with positive weight for {design.outcome}")
        data = data[keep].reset_index(drop=True)
        w = w[keep]
        codes = {name: factorize(data[name])[0] for name in design.absorb}

        y = _as_float(data[design.outcome])
        X = np.column_stack([_as_float(data[c]) for c in design.regressors]) \
            if design.regressors else np.empty((len(data), 0))
        names = list(design.regressors)
        if not design.absorb:
            X = np.column_stack([np.ones(len(data)), X])
            names = ["const"] + names

        demeaned = demean(
            np.column_stack([y, X]),
            list(codes.values()),
            w,
            tol=self.tol,
            max_iter=self.max_iter,
        )
        if not demeaned.converged:
            record_issue(issues, Issue(
                kind="absorption_not_converged",
                message=f"Within transformation stopped after {demeaned.iterations} iterations",
                count=demeaned.iterations,
            ), logger)
        y_dm = demeaned.values[:, 0]
        X_dm = demeaned.values[:, 1:]

        X_dm, names = self._drop_collinear(X_dm, w, names, issues)

        model = sm.WLS(y_dm, X_dm, weights=w)
        res = model.fit()

        cluster_codes = {c: factorize(data[c])[0] for c in design.clusters}
        cov = self.variance.compute(
            model.wexog,
            res.wresid,
            clusters=cluster_codes,
            hessian_inv=res.normalized_cov_params,
        )
        issues.extend(cov.issues)

        tss = float(np.sum(w * y_dm ** 2))
        r2_within = 1.0 - float(np.sum(w * res.resid ** 2)) / tss if tss > 0 else None

        result = EstimationResult(
            params=pd.Series(np.asarray(res.params), index=names, name="estimate"),
            cov=pd.DataFrame(cov.cov, index=names, columns=names),
            outcome=design.outcome,
            n_obs=len(data),
            cov_type=cov.cov_type,
            reliable=cov.reliable,
            absorbed=tuple(design.absorb),
            cluster_vars=cov.cluster_vars,
            n_clusters=dict(cov.n_clusters),
            condition_number=cov.condition.condition_number if cov.condition else None,
            resid=np.asarray(res.resid),
            weight_sum=float(w.sum()),
            r2_within=r2_within,
            absorb_iterations=demeaned.iterations,
            issues=tuple(issues),
            metadata=dict(metadata or {}),
        )
        logger.info(
            f"Fitted {design.outcome} on {len(names)} term(s), {result.n_obs:,} obs, "
            f"absorbing {design.absorb or 'nothing'}"
        )
        return result

    def fit_did(
        self,
        frame: pd.DataFrame,
        outcome: str,
        event: PolicyEvent,
        absorb: Sequence[str] = ("age", "period"),
        controls: Sequence[str] = (),
        weights: str | None = "weight",
        cluster: Sequence[str] = ("period",),
    ) -> EstimationResult:
        """
        Difference-in-differences: one ``treat_post_<slug>`` coefficient.

        The post and age-flag main effects are collinear with the period and
        age fixed effects and are only added when those are not absorbed.
        """
        regressors = [event.treat_col]
        if "period" not in absorb:
            regressors.append(event.post_col)
        if "age" not in absorb:
            regressors.append(event.age_col)
        regressors += list(controls)

        design = RegressionDesign.from_frame(
            frame, outcome, regressors, absorb=absorb, weights=weights, clusters=cluster,
        )
        result = self.fit(design, metadata={"family": "did", "event": event.slug})
        if event.treat_col not in result.params.index:
            raise RankDeficientDesign(
                f"Treatment term {event.treat_col} is not identified",
                dropped=[event.treat_col],
                count=1,
            )
        return result

    def fit_event_study(
        self,
        frame: pd.DataFrame,
        outcome: str,
        event: PolicyEvent,
        reference: int | Sequence[int] | None = None,
        window: tuple[int, int] | None = None,
        absorb: Sequence[str] = ("age", "period"),
        controls: Sequence[str] = (),
        weights: str | None = "weight",
        cluster: Sequence[str] = ("period",),
    ) -> "EventStudyResult":
        """
        Event study: one coefficient per relative-time bucket x age flag.

        Relative time outside ``window`` is binned into the end buckets. The
        reference bucket(s) are omitted and never appear in the output.

        Args:
            frame: Data carrying the event's rel_ and age_ columns
            outcome: Outcome column
            event: Policy event
            reference: Omitted bucket, or several (default: settings, -1)
            window: (first, last) bucket (default: settings, -8..8)
            absorb: Fixed-effect factors
            controls: Continuous controls
            weights: Weight column
            cluster: Cluster keys (at most two)

        Returns:
            EventStudyResult
        """
        settings = get_settings()
        if reference is None:
            reference = settings.event_reference
        if window is None:
            window = (settings.event_window_min, settings.event_window_max)
        references = sorted({int(reference)} if np.isscalar(reference) else {int(r) for r in reference})
        lo, hi = int(window[0]), int(window[1])
        if not references:
            raise ValueError("Event study needs at least one reference period")
        if lo >= hi:
            raise ValueError(f"Invalid event window {window}")
        bad = [r for r in references if not lo <= r <= hi]
        if bad:
            raise ValueError(f"Reference period(s) {bad} outside window {window}")

        for col in (event.rel_col, event.age_col):
            if col not in frame.columns:
                raise MissingVariable([col], context="event study")

        df = frame.copy()
        rel = pd.Series(_as_float(df[event.rel_col]), index=df.index).clip(lower=lo, upper=hi)
        treated = pd.Series(_as_float(df[event.age_col]), index=df.index)

        periods = [k for k in range(lo, hi + 1) if k not in references]
        terms = {}
        for k in periods:
            name = event_term(k)
            df[name] = ((rel == k).astype(float) * treated).where(rel.notna() & treated.notna())
            terms[name] = k

        regressors = list(terms) + list(controls)
        if "age" not in absorb:
            regressors.append(event.age_col)

        design = RegressionDesign.from_frame(
            df, outcome, regressors, absorb=absorb, weights=weights, clusters=cluster,
        )
        estimation = self.fit(design, metadata={
            "family": "event_study",
            "event": event.slug,
            "reference": references,
            "window": (lo, hi),
        })

        fitted = {name: k for name, k in terms.items() if name in estimation.params.index}
        return EventStudyResult(
            estimation=estimation,
            event=event,
            terms=fitted,
            reference=references,
            window=(lo, hi),
        )

    def _drop_collinear(
        self,
        X: np.ndarray,
        w: np.ndarray,
        names: list[str],
        issues: list[Issue],
        rtol: float = 1e-7,
    ) -> tuple[np.ndarray, list[str]]:
        """Greedily drop regressors that add no rank after absorption."""
        if X.shape[1] == 0:
            raise RankDeficientDesign("Design has no regressors", count=0)

        wx = X * np.sqrt(w)[:, None]
        norms = np.sqrt((wx ** 2).sum(axis=0))
        scale = max(float(norms.max()), 1.0)
        kept: list[int] = []
        dropped: list[str] = []
        for j in range(X.shape[1]):
            if norms[j] <= rtol * scale:
                dropped.append(names[j])
                continue
            candidate = wx[:, kept + [j]] / norms[kept + [j]]
            if np.linalg.matrix_rank(candidate, tol=1e-8) < len(kept) + 1:
                dropped.append(names[j])
            else:
                kept.append(j)

        if dropped:
            err = RankDeficientDesign(
                f"Dropped {len(dropped)} collinear term(s): {', '.join(dropped)}",
                dropped=dropped,
                count=len(dropped),
            )
            record_issue(issues, Issue(
                kind=err.kind,
                message=str(err),
                count=len(dropped),
                details={"dropped": dropped},
            ), logger)
        if not kept:
            raise RankDeficientDesign("No identified regressors remain", dropped=dropped,
                                      count=len(dropped))
        return X[:, kept], [names[j] for j in kept]


def event_term(k: int) -> str:
    """Coefficient name for event-time bucket k (es_m2, es_p0, ...)."""
    return f"es_m{-k}" if k < 0 else f"es_p{k}"


@dataclass
class EventStudyResult:
    """Event-study coefficients by relative period."""

    estimation: EstimationResult
    event: PolicyEvent
    terms: dict[str, int]
    reference: list[int]
    window: tuple[int, int]

    @property
    def lead_terms(self) -> list[str]:
        return [name for name, k in self.terms.items() if k < 0]

    @property
    def coefficients(self) -> pd.Series:
        """Estimates indexed by relative period (reference excluded)."""
        params = self.estimation.params
        return pd.Series(
            {k: float(params[name]) for name, k in self.terms.items()},
            name="coefficient",
        ).sort_index()

    def to_dataframe(self, include_reference: bool = False) -> pd.DataFrame:
        """
        Tidy table for plotting or export.

        With ``include_reference`` the omitted bucket(s) are appended as
        normalized zeros marked ``reference=True``.
        """
        summary = self.estimation.summary_frame()
        rows = []
        for name, k in self.terms.items():
            row = summary.loc[name]
            rows.append({
                "period": k,
                "term": name,
                "coefficient": row["estimate"],
                "std_error": row["std_error"],
                "conf_lower": row["conf_lower"],
                "conf_upper": row["conf_upper"],
                "pvalue": row["pvalue"],
                "reference": False,
            })
        if include_reference:
            for k in self.reference:
                rows.append({
                    "period": k, "term": event_term(k), "coefficient": 0.0,
                    "std_error": 0.0, "conf_lower": 0.0, "conf_upper": 0.0,
                    "pvalue": np.nan, "reference": True,
                })
        return pd.DataFrame(rows).sort_values("period").reset_index(drop=True)

    def pre_trend_test(self, tester=None):
        """Joint Wald test that all lead coefficients are zero."""
        from agewage.model.wald import WaldTester

        tester = tester or WaldTester()
        if not self.lead_terms:
            raise InsufficientData("Event study has no lead coefficients to test")
        return tester.test(self.estimation, self.lead_terms)

    def passes_pre_trends(self, alpha: float = 0.10) -> tuple[bool, str]:
        """
        Check the joint pre-trend test.

        Returns:
            Tuple of (passes, reason)
        """
        wald = self.pre_trend_test()
        if not wald.reliable:
            return False, "Pre-trend test unreliable: covariance flagged near-singular"
        if wald.pvalue < alpha:
            return False, f"Joint Wald test rejects (p={wald.pvalue:.3f} < {alpha})"
        return True, f"Pre-trends test passed (p={wald.pvalue:.3f})"

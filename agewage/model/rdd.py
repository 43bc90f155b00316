"""
Sharp regression discontinuity at an age cutoff.

Local polynomial regressions are fitted separately on each side of the
cutoff, written as one fully interacted WLS:

    y = a + tau * D + sum_p b_p x^p + sum_p g_p D x^p,   D = 1[x >= 0]

so tau is the jump in fitted intercepts at x = 0. Observations are weighted
by kernel(x / h) times the survey weight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm

from config.settings import get_settings
from agewage.errors import InsufficientData, Issue, MissingVariable, record_issue
from agewage.model.absorb import factorize

logger = logging.getLogger(__name__)

KERNELS = ("triangular", "epanechnikov", "uniform")


def kernel_weights(u: np.ndarray, kernel: str) -> np.ndarray:
    """Kernel weights for scaled distances u = x / h."""
    u = np.asarray(u, dtype=float)
    if kernel == "triangular":
        return np.maximum(0, 1 - np.abs(u))
    elif kernel == "epanechnikov":
        return np.maximum(0, 0.75 * (1 - u ** 2))
    elif kernel == "uniform":
        return (np.abs(u) <= 1).astype(float)
    raise ValueError(f"Unknown kernel '{kernel}', expected one of {KERNELS}")


def rule_of_thumb_bandwidth(x: np.ndarray) -> float:
    """Silverman-style rule of thumb, 2.702 * sd * n^(-1/5)."""
    n = len(x)
    if n < 2:
        return 1.0
    return max(0.5, 2.702 * float(np.std(x, ddof=1)) * n ** (-1 / 5))


def min_support_bandwidth(x: np.ndarray, order: int) -> float:
    """
    Smallest bandwidth giving each side ``order + 2`` distinct running values
    with positive kernel weight.

    Raises:
        InsufficientData: a side has too few distinct values
    """
    needed = order + 2
    bounds = []
    for side, dist in (("below", -x[x < 0]), ("above", x[x >= 0])):
        support = np.unique(dist)
        if len(support) < needed:
            raise InsufficientData(
                f"Only {len(support)} distinct running values {side} the cutoff, "
                f"need {needed} for order {order}",
                key=side,
            )
        bounds.append(float(support[needed - 1]))
    # Triangular weight vanishes at |u| = 1, so stay strictly outside the last point
    return max(bounds) * 1.5 if max(bounds) > 0 else 1.0


def _design(x: np.ndarray, order: int) -> np.ndarray:
    d = (x >= 0).astype(float)
    cols = [np.ones_like(x), d]
    for p in range(1, order + 1):
        cols.append(x ** p)
    for p in range(1, order + 1):
        cols.append(d * x ** p)
    return np.column_stack(cols)


def _design_names(order: int) -> list[str]:
    return (["const", "above"]
            + [f"x{p}" for p in range(1, order + 1)]
            + [f"above_x{p}" for p in range(1, order + 1)])


def cv_bandwidth(
    x: np.ndarray,
    y: np.ndarray,
    w: np.ndarray,
    order: int,
    kernel: str,
    grid: np.ndarray | None = None,
    inner_share: float = 0.5,
    max_eval: int = 200,
) -> float:
    """
    Leave-one-side-out cross-validation bandwidth (Ludwig-Miller).

    Each evaluation point is predicted from observations strictly further
    from the cutoff on its own side, mimicking estimation at a boundary. Only
    points in the inner share of each side are evaluated.
    """
    if grid is None:
        span = float(np.abs(x).max())
        grid = np.linspace(span * 0.1, span, 15)

    eval_points = []
    for side in (x[x < 0], x[x >= 0]):
        support = np.unique(side)
        if len(support) == 0:
            continue
        dist = np.abs(support)
        inner = support[dist <= np.quantile(dist, inner_share)]
        if len(inner) > max_eval:
            inner = inner[np.linspace(0, len(inner) - 1, max_eval).astype(int)]
        eval_points.extend(inner.tolist())

    best_h, best_score = None, np.inf
    for h in grid:
        sse, count = 0.0, 0.0
        for x0 in eval_points:
            if x0 < 0:
                mask = (x < x0) & (x >= x0 - h)
            else:
                mask = (x > x0) & (x <= x0 + h)
            if len(np.unique(x[mask])) < order + 1:
                continue
            k = kernel_weights((x[mask] - x0) / h, kernel) * w[mask]
            if k.sum() <= 0:
                continue
            Z = np.vander(x[mask] - x0, order + 1, increasing=True)
            sk = np.sqrt(k)
            coef, *_ = np.linalg.lstsq(Z * sk[:, None], y[mask] * sk, rcond=None)
            at = x == x0
            sse += float(np.sum(w[at] * (y[at] - coef[0]) ** 2))
            count += float(w[at].sum())
        if count > 0 and sse / count < best_score:
            best_h, best_score = float(h), sse / count

    if best_h is None:
        raise InsufficientData("Cross-validation found no usable bandwidth")
    return best_h


@dataclass(frozen=True)
class RDDResult:
    """Sharp RDD estimate at one cutoff."""

    estimate: float
    std_error: float
    t_stat: float
    pvalue: float
    conf_int: tuple[float, float]
    bandwidth: float
    bandwidth_method: str
    kernel: str
    order: int
    n_obs: int
    n_below: int
    n_above: int
    cutoff: float
    outcome: str
    running: str
    cov_type: str = "HC1"
    params: pd.Series | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
    issues: tuple[Issue, ...] = ()

    @property
    def reliable(self) -> bool:
        """Finite positive standard error and no ERROR issue."""
        if not (np.isfinite(self.std_error) and self.std_error > 0):
            return False
        return not any(i.severity == "ERROR" for i in self.issues)

    def summary(self) -> str:
        lines = [
            "=" * 60,
            f"SHARP RDD: {self.outcome} at {self.running} = {self.cutoff:g}",
            "=" * 60,
            f"Estimate:    {self.estimate:.4f} (SE {self.std_error:.4f}, p={self.pvalue:.3f})",
            f"95% CI:      [{self.conf_int[0]:.4f}, {self.conf_int[1]:.4f}]",
            f"Bandwidth:   {self.bandwidth:.3f} ({self.bandwidth_method}), kernel {self.kernel}, "
            f"order {self.order}",
            f"Obs:         {self.n_obs:,} ({self.n_below:,} below, {self.n_above:,} above)",
        ]
        if not self.diagnostics.get("density_test_pass", True):
            lines.append(f"WARNING: density ratio {self.diagnostics['density_ratio']:.2f} "
                         "suggests sorting at the cutoff")
        return "\n".join(lines)


class RDDEstimator:
    """Local polynomial sharp RDD with automatic bandwidth selection."""

    def __init__(
        self,
        bandwidth: float | str | None = None,
        kernel: str | None = None,
        order: int | None = None,
    ):
        settings = get_settings()
        self.bandwidth = settings.rdd_bandwidth if bandwidth is None else bandwidth
        self.kernel = kernel or settings.rdd_kernel
        self.order = settings.rdd_order if order is None else order
        if self.kernel not in KERNELS:
            raise ValueError(f"Unknown kernel '{self.kernel}', expected one of {KERNELS}")
        if self.order < 0:
            raise ValueError("Polynomial order must be non-negative")
        if isinstance(self.bandwidth, str) and self.bandwidth not in ("rot", "cv"):
            raise ValueError(f"Unknown bandwidth rule '{self.bandwidth}'")

    def estimate(
        self,
        frame: pd.DataFrame,
        outcome: str,
        running: str,
        cutoff: float = 0.0,
        weights: str | None = None,
        date_col: str | None = None,
        date_range: tuple[date | None, date | None] | None = None,
        cluster: str | None = None,
    ) -> RDDResult:
        """
        Estimate the discontinuity in ``outcome`` at ``running == cutoff``.

        Args:
            frame: Observation-level data
            outcome: Outcome column
            running: Running variable column (e.g. age)
            cutoff: Threshold; the running variable is centered on it
            weights: Survey weight column (multiplies kernel weights)
            date_col: Date or period column used by ``date_range``
            date_range: Inclusive (start, end) restriction, either end open
            cluster: Cluster key for standard errors (default: HC1)

        Returns:
            RDDResult
        """
        issues: list[Issue] = []
        needed = [outcome, running] + [c for c in (weights, cluster) if c]
        if date_range is not None:
            if not date_col:
                raise ValueError("date_range requires date_col")
            needed.append(date_col)
        missing = [c for c in needed if c not in frame.columns or frame[c].isna().all()]
        if missing:
            raise MissingVariable(missing, context=f"RDD of {outcome}")

        df = frame[list(dict.fromkeys(needed))].dropna()
        if date_range is not None:
            df = df[self._in_range(df[date_col], date_range)]
        if df.empty:
            raise InsufficientData(f"No observations for RDD of {outcome}")

        x = pd.to_numeric(df[running], errors="coerce").to_numpy(dtype=float) - float(cutoff)
        y = pd.to_numeric(df[outcome], errors="coerce").to_numpy(dtype=float)
        sw = (pd.to_numeric(df[weights], errors="coerce").to_numpy(dtype=float)
              if weights else np.ones(len(df)))

        floor = min_support_bandwidth(x, self.order)
        if isinstance(self.bandwidth, (int, float)):
            h, method = float(self.bandwidth), "fixed"
            if h < floor:
                raise InsufficientData(
                    f"Bandwidth {h} leaves fewer than {self.order + 2} running values per side"
                )
        else:
            method = self.bandwidth
            h = (cv_bandwidth(x, y, sw, self.order, self.kernel) if method == "cv"
                 else rule_of_thumb_bandwidth(x))
            if h < floor:
                record_issue(issues, Issue(
                    kind="bandwidth_widened",
                    message=f"Bandwidth {h:.3f} widened to {floor:.3f} for support",
                    severity="INFO",
                ), logger)
                h = floor

        kw = kernel_weights(x / h, self.kernel) * sw
        inside = kw > 0
        x_in, y_in, w_in = x[inside], y[inside], kw[inside]

        X = pd.DataFrame(_design(x_in, self.order), columns=_design_names(self.order))
        model = sm.WLS(y_in, X, weights=w_in)
        if cluster:
            groups, _ = factorize(df.loc[inside, cluster].reset_index(drop=True))
            res = model.fit(cov_type="cluster", cov_kwds={"groups": groups})
            cov_type = f"cluster({cluster})"
        else:
            res = model.fit(cov_type="HC1")
            cov_type = "HC1"

        ci = res.conf_int().loc["above"]
        n_above = int((x_in >= 0).sum())
        n_below = int((x_in < 0).sum())
        ratio = n_above / max(n_below, 1)

        result = RDDResult(
            estimate=float(res.params["above"]),
            std_error=float(res.bse["above"]),
            t_stat=float(res.tvalues["above"]),
            pvalue=float(res.pvalues["above"]),
            conf_int=(float(ci.iloc[0]), float(ci.iloc[1])),
            bandwidth=h,
            bandwidth_method=method,
            kernel=self.kernel,
            order=self.order,
            n_obs=int(inside.sum()),
            n_below=n_below,
            n_above=n_above,
            cutoff=float(cutoff),
            outcome=outcome,
            running=running,
            cov_type=cov_type,
            params=res.params.copy(),
            diagnostics={
                "density_ratio": ratio,
                "density_test_pass": 0.5 <= ratio <= 2.0,
            },
            issues=tuple(issues),
        )
        logger.info(
            f"RDD {outcome} at {running}={cutoff:g}: {result.estimate:.4f} "
            f"(SE {result.std_error:.4f}), h={h:.3f}, n={result.n_obs:,}"
        )
        return result

    @staticmethod
    def _in_range(values: pd.Series, date_range: tuple) -> pd.Series:
        if isinstance(values.dtype, pd.PeriodDtype):
            values = values.dt.start_time
        values = pd.to_datetime(values)
        start, end = date_range
        keep = pd.Series(True, index=values.index)
        if start is not None:
            keep &= values >= pd.Timestamp(start)
        if end is not None:
            keep &= values <= pd.Timestamp(end)
        return keep

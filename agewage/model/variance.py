"""
Cluster-robust covariance of fitted coefficients.

V1: heteroskedasticity-robust (HC1), when no cluster key is given
V2: one-way cluster-robust
V3: two-way cluster-robust, V_a + V_b - V_{a∩b} (Cameron-Gelbach-Miller)

Every covariance is checked for near-singularity. An unreliable matrix is
returned as computed, flagged, never regularized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from statsmodels.stats import sandwich_covariance as sw

from config.settings import get_settings
from agewage.errors import Issue, UnreliableVariance, record_issue
from agewage.model.absorb import combine_codes

logger = logging.getLogger(__name__)


@dataclass
class MatrixCondition:
    """Numerical health of a symmetric matrix."""

    rank: int
    dim: int
    condition_number: float
    finite: bool

    def reliable(self, max_condition_number: float) -> bool:
        return (
            self.finite
            and self.rank == self.dim
            and self.condition_number <= max_condition_number
        )


def matrix_condition(cov: np.ndarray) -> MatrixCondition:
    """
    Rank and condition number of a covariance matrix.

    The condition number is taken on the correlation scaling so that it does
    not depend on the units of the regressors.
    """
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    dim = cov.shape[0]
    if dim == 0:
        return MatrixCondition(rank=0, dim=0, condition_number=1.0, finite=True)
    if not np.isfinite(cov).all():
        return MatrixCondition(rank=0, dim=dim, condition_number=float("inf"), finite=False)

    diag = np.diag(cov)
    if (diag <= 0).any():
        rank = int(np.linalg.matrix_rank(cov))
        return MatrixCondition(rank=min(rank, dim - 1), dim=dim,
                               condition_number=float("inf"), finite=True)

    scale = 1.0 / np.sqrt(diag)
    corr = cov * np.outer(scale, scale)
    rank = int(np.linalg.matrix_rank(corr))
    cond = float(np.linalg.cond(corr))
    if not np.isfinite(cond):
        cond = float("inf")
    return MatrixCondition(rank=rank, dim=dim, condition_number=cond, finite=True)


@dataclass
class CovarianceResult:
    """Covariance of the fitted coefficients plus its diagnostics."""

    cov: np.ndarray
    cov_type: str
    cluster_vars: tuple[str, ...] = ()
    n_clusters: dict[str, int] = field(default_factory=dict)
    condition: MatrixCondition | None = None
    reliable: bool = True
    components: dict[str, np.ndarray] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)

    @property
    def std_errors(self) -> np.ndarray:
        diag = np.diag(self.cov).copy()
        diag[diag < 0] = np.nan
        return np.sqrt(diag)

    def require_reliable(self) -> None:
        """Raise UnreliableVariance if the matrix was flagged."""
        if not self.reliable:
            cond = self.condition
            raise UnreliableVariance(
                f"{self.cov_type} covariance is near-singular",
                condition_number=cond.condition_number if cond else None,
                rank=cond.rank if cond else None,
                dim=cond.dim if cond else None,
            )


class VarianceEstimator:
    """Sandwich covariance for weighted least squares fits."""

    def __init__(self, max_condition_number: float | None = None):
        settings = get_settings()
        self.max_condition_number = (
            settings.max_condition_number if max_condition_number is None
            else max_condition_number
        )

    def compute(
        self,
        wexog: np.ndarray,
        wresid: np.ndarray,
        clusters: dict[str, np.ndarray] | None = None,
        hessian_inv: np.ndarray | None = None,
    ) -> CovarianceResult:
        """
        Covariance from weighted regressors and residuals.

        Args:
            wexog: sqrt(w) * X, shape (n, k)
            wresid: sqrt(w) * residuals, shape (n,)
            clusters: Up to two cluster keys as integer codes, by name
            hessian_inv: (X'WX)^-1; computed from wexog when omitted

        Returns:
            CovarianceResult
        """
        wexog = np.asarray(wexog, dtype=float)
        wresid = np.asarray(wresid, dtype=float)
        if hessian_inv is None:
            hessian_inv = np.linalg.pinv(wexog.T @ wexog)
        xu = wexog * wresid[:, None]
        clusters = dict(clusters or {})
        issues: list[Issue] = []

        if len(clusters) > 2:
            raise ValueError(f"At most two cluster keys supported, got {list(clusters)}")

        if not clusters:
            # Each observation its own cluster: n/(n-k) scaling, i.e. HC1
            cov = self._cluster(xu, hessian_inv, np.arange(len(wresid)), "obs", issues)
            result = CovarianceResult(cov=cov, cov_type="HC1")
        elif len(clusters) == 1:
            (name, codes), = clusters.items()
            cov = self._cluster(xu, hessian_inv, codes, name, issues)
            result = CovarianceResult(
                cov=cov,
                cov_type="cluster",
                cluster_vars=(name,),
                n_clusters={name: _n_groups(codes)},
            )
        else:
            (name_a, a), (name_b, b) = clusters.items()
            ab = combine_codes(a, b)
            v_a = self._cluster(xu, hessian_inv, a, name_a, issues)
            v_b = self._cluster(xu, hessian_inv, b, name_b, issues)
            v_ab = self._cluster(xu, hessian_inv, ab, f"{name_a}&{name_b}", issues)
            result = CovarianceResult(
                cov=v_a + v_b - v_ab,
                cov_type="two-way cluster",
                cluster_vars=(name_a, name_b),
                n_clusters={
                    name_a: _n_groups(a),
                    name_b: _n_groups(b),
                    f"{name_a}&{name_b}": _n_groups(ab),
                },
                components={name_a: v_a, name_b: v_b, f"{name_a}&{name_b}": v_ab},
            )

        result.issues = issues
        self.diagnose(result)
        return result

    def diagnose(self, result: CovarianceResult) -> CovarianceResult:
        """Flag a near-singular covariance on the result."""
        result.condition = matrix_condition(result.cov)
        if not result.condition.reliable(self.max_condition_number) or result.issues:
            result.reliable = False
            cond = result.condition
            err = UnreliableVariance(
                f"{result.cov_type} covariance is near-singular "
                f"(rank {cond.rank}/{cond.dim}, condition number {cond.condition_number:.3g})",
                condition_number=cond.condition_number,
                rank=cond.rank,
                dim=cond.dim,
            )
            record_issue(result.issues, Issue(
                kind=err.kind,
                message=str(err),
                details={
                    "rank": cond.rank,
                    "dim": cond.dim,
                    "condition_number": cond.condition_number,
                },
            ), logger)
        return result

    @staticmethod
    def _cluster(
        xu: np.ndarray,
        hessian_inv: np.ndarray,
        codes: np.ndarray,
        name: str,
        issues: list[Issue],
    ) -> np.ndarray:
        codes = np.asarray(codes, dtype=np.int64)
        n, k = xu.shape
        n_groups = _n_groups(codes)
        use_correction = n_groups > 1 and n > k
        if not use_correction:
            record_issue(issues, Issue(
                kind="too_few_clusters",
                message=f"Cannot apply small-sample correction for '{name}' "
                        f"({n_groups} clusters, {n} obs, {k} params)",
                count=n_groups,
            ), logger)
        return sw.cov_cluster((xu, hessian_inv), codes, use_correction=use_correction)


def _n_groups(codes: np.ndarray) -> int:
    return int(len(np.unique(codes)))

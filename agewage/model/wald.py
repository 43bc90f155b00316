"""
Joint Wald tests on coefficient subsets.

W = c' V^-1 c ~ chi2(q), with c the coefficient sub-vector and V its
covariance block. A block that cannot be inverted reliably raises
SingularSubcovariance instead of producing a p-value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import stats

from config.settings import get_settings
from agewage.errors import SingularSubcovariance
from agewage.model.fixed_effects import EstimationResult
from agewage.model.variance import matrix_condition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaldResult:
    """Outcome of a joint significance test."""

    terms: tuple[str, ...]
    statistic: float
    df: int
    pvalue: float
    condition_number: float
    reliable: bool = True

    def rejects(self, alpha: float = 0.05) -> bool:
        return self.pvalue < alpha

    def to_dict(self) -> dict:
        return {
            "terms": list(self.terms),
            "statistic": self.statistic,
            "df": self.df,
            "pvalue": self.pvalue,
            "condition_number": self.condition_number,
            "reliable": self.reliable,
        }


class WaldTester:
    """Tests that a subset of coefficients is jointly zero."""

    def __init__(self, max_condition_number: float | None = None):
        settings = get_settings()
        self.max_condition_number = (
            settings.max_condition_number if max_condition_number is None
            else max_condition_number
        )

    def test(self, result: EstimationResult, terms: list[str]) -> WaldResult:
        """
        Joint test of ``terms`` against zero.

        Args:
            result: Fitted model
            terms: Coefficient names to test

        Returns:
            WaldResult; ``reliable`` is False when the full covariance was
            flagged unreliable but this block still inverts

        Raises:
            KeyError: a term is not in the fitted model
            SingularSubcovariance: the covariance block is rank-deficient or
                ill-conditioned
        """
        terms = list(dict.fromkeys(terms))
        if not terms:
            raise ValueError("Wald test needs at least one term")
        missing = [t for t in terms if t not in result.params.index]
        if missing:
            raise KeyError(f"Terms not in fitted model: {missing}")

        c = result.params[terms].to_numpy(dtype=float)
        V = result.cov.loc[terms, terms].to_numpy(dtype=float)

        condition = matrix_condition(V)
        if not condition.reliable(self.max_condition_number):
            logger.warning(
                f"Wald block for {terms} is singular (rank {condition.rank}/{condition.dim})"
            )
            raise SingularSubcovariance(
                terms,
                condition_number=condition.condition_number,
                rank=condition.rank,
            )

        statistic = float(c @ np.linalg.solve(V, c))
        q = len(terms)
        pvalue = float(stats.chi2.sf(statistic, q))

        if not result.reliable:
            logger.warning(
                "Wald test computed from a covariance flagged unreliable; "
                "treat the p-value with caution"
            )

        return WaldResult(
            terms=tuple(terms),
            statistic=statistic,
            df=q,
            pvalue=pvalue,
            condition_number=condition.condition_number,
            reliable=result.reliable,
        )

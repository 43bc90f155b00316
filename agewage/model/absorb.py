"""
Weighted fixed-effect absorption (within transformation).

Fixed effects are swept out by weighted group demeaning rather than
expanded into dummy columns. One factor is exact in a single sweep; two or
more factors use alternating projections until the largest change falls
below tolerance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def factorize(values: pd.Series) -> tuple[np.ndarray, int]:
    """Integer codes 0..G-1 for a factor column, and G."""
    codes, uniques = pd.factorize(values, sort=True)
    if (codes < 0).any():
        raise ValueError(f"Factor '{values.name}' has missing levels")
    return codes.astype(np.int64), len(uniques)


def combine_codes(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Codes of the intersection of two factors."""
    combined = a.astype(np.int64) * (int(b.max()) + 1) + b.astype(np.int64)
    codes, _ = pd.factorize(combined, sort=True)
    return codes.astype(np.int64)


@dataclass
class DegenerateLevels:
    """Rows removed because their fixed-effect level cannot be identified."""

    keep: np.ndarray
    singleton_rows: int = 0
    zero_weight_rows: int = 0
    constant_outcome_rows: int = 0
    rounds: int = 0
    by_factor: dict[str, int] = field(default_factory=dict)

    @property
    def n_dropped(self) -> int:
        return int((~self.keep).sum())


def _level_range(y: np.ndarray, c: np.ndarray, keep: np.ndarray, n_levels: int) -> np.ndarray:
    lo = np.full(n_levels, np.inf)
    hi = np.full(n_levels, -np.inf)
    np.minimum.at(lo, c[keep], y[keep])
    np.maximum.at(hi, c[keep], y[keep])
    return hi - lo


def find_degenerate_levels(
    codes: dict[str, np.ndarray],
    weights: np.ndarray,
    y: np.ndarray | None = None,
) -> DegenerateLevels:
    """
    Iteratively flag rows in degenerate fixed-effect levels.

    A level is degenerate when it is observed only once, when its total
    weight is zero, or (given ``y``) when every observation in it has the
    same outcome. Its fixed effect then absorbs the outcome entirely.
    Dropping rows can make levels of other factors degenerate, hence the
    iteration.
    """
    n = len(weights)
    keep = np.ones(n, dtype=bool)
    result = DegenerateLevels(keep=keep)
    if not codes:
        return result

    changed = True
    while changed:
        changed = False
        result.rounds += 1
        for name, c in codes.items():
            n_levels = int(c.max()) + 1 if len(c) else 0
            counts = np.bincount(c[keep], minlength=n_levels)
            wsum = np.bincount(c[keep], weights=weights[keep], minlength=n_levels)

            zero_w = keep & (wsum[c] <= 0)
            single = keep & (counts[c] == 1) & ~zero_w
            bad = zero_w | single
            if y is not None:
                constant = keep & (_level_range(y, c, keep, n_levels)[c] == 0) & ~bad
                result.constant_outcome_rows += int(constant.sum())
                bad |= constant
            if bad.any():
                result.zero_weight_rows += int(zero_w.sum())
                result.singleton_rows += int(single.sum())
                result.by_factor[name] = result.by_factor.get(name, 0) + int(bad.sum())
                keep &= ~bad
                changed = True

    result.keep = keep
    return result


def _group_means(arr: np.ndarray, c: np.ndarray, w: np.ndarray, n_levels: int) -> np.ndarray:
    wsum = np.bincount(c, weights=w, minlength=n_levels)
    wsum[wsum == 0] = 1.0
    means = np.empty((n_levels, arr.shape[1]))
    for j in range(arr.shape[1]):
        means[:, j] = np.bincount(c, weights=w * arr[:, j], minlength=n_levels) / wsum
    return means[c]


@dataclass
class Demeaned:
    values: np.ndarray
    iterations: int
    converged: bool


def demean(
    arr: np.ndarray,
    codes: list[np.ndarray],
    weights: np.ndarray,
    tol: float = 1e-10,
    max_iter: int = 1000,
) -> Demeaned:
    """
    Weighted within transformation of every column of ``arr``.

    Args:
        arr: (n, k) array
        codes: Integer codes per absorbed factor, each length n
        weights: Observation weights
        tol: Convergence tolerance on the max absolute update
        max_iter: Iteration cap for two or more factors

    Returns:
        Demeaned array with iteration diagnostics
    """
    out = np.array(arr, dtype=float, copy=True)
    if out.ndim == 1:
        out = out[:, None]
    if not codes:
        return Demeaned(values=out, iterations=0, converged=True)

    levels = [int(c.max()) + 1 for c in codes]

    if len(codes) == 1:
        out -= _group_means(out, codes[0], weights, levels[0])
        return Demeaned(values=out, iterations=1, converged=True)

    scale = max(1.0, float(np.abs(out).max()) if out.size else 1.0)
    for it in range(1, max_iter + 1):
        delta = 0.0
        for c, g in zip(codes, levels):
            step = _group_means(out, c, weights, g)
            out -= step
            delta = max(delta, float(np.abs(step).max()) if step.size else 0.0)
        if delta <= tol * scale:
            return Demeaned(values=out, iterations=it, converged=True)

    logger.warning(f"Fixed-effect absorption did not converge in {max_iter} iterations")
    return Demeaned(values=out, iterations=max_iter, converged=False)

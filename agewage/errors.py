"""
Error taxonomy and recoverable issue records.

Recoverable conditions (a wave missing a variable, an empty aggregation cell,
dropped fixed-effect levels) are recorded as ``Issue`` objects attached to the
returned result. Conditions that invalidate one estimation call are raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)


class AgewageError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"


class MissingVariable(AgewageError):
    """A canonical variable required by a step is absent."""

    kind = "missing_variable"

    def __init__(
        self,
        names: list[str],
        context: str = "",
        waves: list[str] | None = None,
        count: int = 0,
    ):
        self.names = list(names)
        self.context = context
        self.waves = list(waves or [])
        self.count = count
        where = f" in {context}" if context else ""
        message = f"Missing variable(s){where}: {', '.join(self.names)}"
        if self.waves:
            message += f" (wave(s) {', '.join(self.waves)})"
        if count:
            message += f", {count:,} rows"
        super().__init__(message)


class InsufficientData(AgewageError):
    """A group or cell has no usable observations or zero total weight."""

    kind = "insufficient_data"

    def __init__(self, message: str, key: Any = None):
        self.key = key
        super().__init__(message)


class RankDeficientDesign(AgewageError):
    """Absorption or interaction terms collapse the rank of the design."""

    kind = "rank_deficient_design"

    def __init__(self, message: str, dropped: list[str] | None = None, count: int = 0):
        self.dropped = list(dropped or [])
        self.count = count
        super().__init__(message)


class UnreliableVariance(AgewageError):
    """A covariance matrix is numerically near-singular."""

    kind = "unreliable_variance"

    def __init__(
        self,
        message: str,
        condition_number: float | None = None,
        rank: int | None = None,
        dim: int | None = None,
    ):
        self.condition_number = condition_number
        self.rank = rank
        self.dim = dim
        super().__init__(message)


class SingularSubcovariance(UnreliableVariance):
    """The covariance sub-block of a Wald test cannot be inverted."""

    kind = "singular_subcovariance"

    def __init__(self, terms: list[str], condition_number: float | None = None,
                 rank: int | None = None):
        self.terms = list(terms)
        super().__init__(
            f"Covariance block for {', '.join(self.terms)} is not invertible "
            f"(rank={rank}, dim={len(self.terms)}, cond={condition_number})",
            condition_number=condition_number,
            rank=rank,
            dim=len(self.terms),
        )


class CapacityExceeded(AgewageError):
    """Fixed-effect cardinality or design size is beyond configured limits."""

    kind = "capacity_exceeded"

    def __init__(self, message: str, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"{message}: {size:,} > {limit:,}")


@dataclass
class Issue:
    """A recoverable problem attached to a result."""

    kind: str
    message: str
    count: int = 0
    details: dict[str, Any] = field(default_factory=dict)
    severity: Literal["INFO", "WARNING", "ERROR"] = "WARNING"

    def __str__(self) -> str:
        suffix = f" (n={self.count})" if self.count else ""
        return f"[{self.severity}] {self.kind}: {self.message}{suffix}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "count": self.count,
            "details": self.details,
            "severity": self.severity,
        }

    @classmethod
    def from_error(cls, error: AgewageError, severity: str = "ERROR") -> "Issue":
        details = {
            k: v for k, v in vars(error).items()
            if not k.startswith("_") and k != "args"
        }
        return cls(
            kind=error.kind,
            message=str(error),
            count=int(getattr(error, "count", 0) or 0),
            details=details,
            severity=severity,
        )


def record_issue(issues: list[Issue], issue: Issue, log: logging.Logger | None = None) -> Issue:
    """Append an issue and log it at the matching level."""
    issues.append(issue)
    level = {"INFO": logging.INFO, "WARNING": logging.WARNING}.get(issue.severity, logging.ERROR)
    (log or logger).log(level, str(issue))
    return issue

"""
Estimation engine: treatment assignment, weighted aggregation, fixed-effects
DiD and event-study models, cluster-robust variance, Wald tests and sharp RDD.
"""

from agewage.model.treatment import TreatmentAssigner
from agewage.model.aggregate import WeightedAggregator, AggregationResult, weighted_rate
from agewage.model.fixed_effects import (
    EstimationResult,
    EventStudyResult,
    FixedEffectsEstimator,
    RegressionDesign,
)
from agewage.model.variance import CovarianceResult, VarianceEstimator
from agewage.model.wald import WaldResult, WaldTester
from agewage.model.rdd import RDDEstimator, RDDResult

__all__ = [
    "TreatmentAssigner",
    "WeightedAggregator",
    "AggregationResult",
    "weighted_rate",
    "EstimationResult",
    "EventStudyResult",
    "FixedEffectsEstimator",
    "RegressionDesign",
    "CovarianceResult",
    "VarianceEstimator",
    "WaldResult",
    "WaldTester",
    "RDDEstimator",
    "RDDResult",
]

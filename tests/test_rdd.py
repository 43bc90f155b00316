"""
Tests for the sharp RDD estimator.
"""

from dataclasses import replace
from datetime import date

import numpy as np
import pandas as pd
import pytest

from agewage.errors import InsufficientData, Issue, MissingVariable
from agewage.model.rdd import (
    RDDEstimator,
    kernel_weights,
    min_support_bandwidth,
    rule_of_thumb_bandwidth,
)
from tests.fixtures.synthetic_dgp import make_sharp_rdd_dgp


@pytest.fixture
def sharp():
    return make_sharp_rdd_dgp(n=6000, tau=0.10, seed=42)


@pytest.fixture
def integer_ages():
    rng = np.random.default_rng(11)
    age = rng.integers(20, 31, 5000).astype(float)
    y = 0.3 + 0.005 * (age - 25) + 0.08 * (age >= 25) + rng.normal(0, 0.05, len(age))
    return pd.DataFrame({"age": age, "y": y})


class TestKernels:
    def test_triangular(self):
        np.testing.assert_allclose(kernel_weights([-1.0, -0.5, 0.0, 0.5, 1.5], "triangular"),
                                   [0.0, 0.5, 1.0, 0.5, 0.0])

    def test_epanechnikov(self):
        np.testing.assert_allclose(kernel_weights([0.0, 1.0], "epanechnikov"), [0.75, 0.0])

    def test_uniform(self):
        np.testing.assert_allclose(kernel_weights([-1.0, 0.3, 1.01], "uniform"), [1.0, 1.0, 0.0])

    def test_unknown(self):
        with pytest.raises(ValueError):
            kernel_weights([0.0], "gaussian")


class TestBandwidth:
    def test_rule_of_thumb_floor(self):
        assert rule_of_thumb_bandwidth(np.zeros(10)) == 0.5

    def test_min_support(self):
        x = np.array([-3.0, -2.0, -1.0, 0.0, 1.0, 2.0])
        # order 1 needs three distinct values per side: 3 below, 2 above
        assert min_support_bandwidth(x, 1) == pytest.approx(4.5)

    def test_min_support_too_few(self):
        with pytest.raises(InsufficientData) as exc:
            min_support_bandwidth(np.array([-1.0, 0.0, 1.0, 2.0]), 1)
        assert exc.value.key == "below"


class TestRDDEstimator:
    """Test the discontinuity estimate on simulated data."""

    def test_recovers_post_reform_jump(self, sharp):
        df, truth = sharp
        res = RDDEstimator().estimate(
            df, "y", "age", cutoff=truth["cutoff"], weights="weight",
            date_col="date", date_range=(truth["event_date"], None),
        )
        assert abs(res.estimate - truth["tau"]) < 0.03
        assert res.std_error > 0
        assert res.conf_int[0] < res.estimate < res.conf_int[1]
        assert res.bandwidth_method == "rot"
        assert res.kernel == "triangular"
        assert res.cov_type == "HC1"
        assert res.n_obs == res.n_below + res.n_above
        assert res.diagnostics["density_test_pass"]
        assert "SHARP RDD" in res.summary()
        assert res.reliable

    def test_unreliable_without_finite_error(self, sharp):
        df, truth = sharp
        res = RDDEstimator().estimate(df, "y", "age", cutoff=truth["cutoff"])
        assert res.reliable
        assert not replace(res, std_error=float("nan")).reliable
        assert not replace(res, std_error=0.0).reliable
        failed = Issue(kind="x", message="failed", severity="ERROR")
        assert not replace(res, issues=res.issues + (failed,)).reliable

    def test_no_jump_before_reform(self, sharp):
        df, truth = sharp
        res = RDDEstimator().estimate(
            df, "y", "age", cutoff=truth["cutoff"], weights="weight",
            date_col="date", date_range=(None, date(2016, 3, 31)),
        )
        assert abs(res.estimate) < 0.03

    def test_pooled_sample_attenuates(self, sharp):
        df, truth = sharp
        pooled = RDDEstimator().estimate(df, "y", "age", cutoff=truth["cutoff"])
        assert 0.0 < pooled.estimate < truth["tau"]

    def test_clustered_errors(self, sharp):
        df, truth = sharp
        res = RDDEstimator().estimate(
            df, "y", "age", cutoff=truth["cutoff"], date_col="date",
            date_range=(truth["event_date"], None), cluster="age_year",
        )
        assert res.cov_type == "cluster(age_year)"
        assert res.std_error > 0

    def test_quadratic(self, sharp):
        df, truth = sharp
        res = RDDEstimator(order=2).estimate(
            df, "y", "age", cutoff=truth["cutoff"], date_col="date",
            date_range=(truth["event_date"], None),
        )
        assert res.order == 2
        assert "above_x2" in res.params.index
        assert abs(res.estimate - truth["tau"]) < 0.05

    def test_cross_validated_bandwidth(self):
        df, truth = make_sharp_rdd_dgp(n=1500, seed=5)
        res = RDDEstimator(bandwidth="cv").estimate(
            df, "y", "age", cutoff=truth["cutoff"], date_col="date",
            date_range=(truth["event_date"], None),
        )
        assert res.bandwidth_method == "cv"
        assert 0 < res.bandwidth <= 9.0
        assert abs(res.estimate - truth["tau"]) < 0.08

    def test_fixed_bandwidth(self, integer_ages):
        res = RDDEstimator(bandwidth=6.0, kernel="uniform").estimate(
            integer_ages, "y", "age", cutoff=25,
        )
        assert res.bandwidth_method == "fixed"
        assert res.bandwidth == 6.0
        assert abs(res.estimate - 0.08) < 0.02

    def test_fixed_bandwidth_below_support_raises(self, integer_ages):
        with pytest.raises(InsufficientData):
            RDDEstimator(bandwidth=1.0).estimate(integer_ages, "y", "age", cutoff=25)

    def test_rule_of_thumb_widened_for_discrete_ages(self, integer_ages):
        res = RDDEstimator().estimate(integer_ages, "y", "age", cutoff=25)
        assert res.bandwidth == pytest.approx(4.5)
        assert any(i.kind == "bandwidth_widened" for i in res.issues)
        assert abs(res.estimate - 0.08) < 0.02

    def test_one_sided_support_raises(self, integer_ages):
        below = integer_ages[integer_ages["age"] < 25]
        with pytest.raises(InsufficientData):
            RDDEstimator().estimate(below, "y", "age", cutoff=25)

    def test_empty_range_raises(self, sharp):
        df, truth = sharp
        with pytest.raises(InsufficientData):
            RDDEstimator().estimate(df, "y", "age", cutoff=25, date_col="date",
                                    date_range=(date(2030, 1, 1), None))

    def test_missing_column(self, sharp):
        df, _ = sharp
        with pytest.raises(MissingVariable):
            RDDEstimator().estimate(df, "y", "age", weights="pwt")

    def test_date_range_needs_column(self, sharp):
        df, _ = sharp
        with pytest.raises(ValueError):
            RDDEstimator().estimate(df, "y", "age", date_range=(None, date(2016, 1, 1)))

    @pytest.mark.parametrize("kwargs", [{"kernel": "gaussian"}, {"order": -1},
                                        {"bandwidth": "ik"}])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RDDEstimator(**kwargs)

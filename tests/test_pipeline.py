"""
End-to-end tests: raw waves to per-reform estimates.
"""

import pandas as pd
import pytest

from agewage.data.waves import FrameWaveLoader
from agewage.engine import ThresholdPipeline
from agewage.model.rdd import RDDEstimator
from tests.fixtures.synthetic_dgp import make_survey_waves


@pytest.fixture(scope="module")
def waves():
    return make_survey_waves(seed=3, drop_region_in=1)


@pytest.fixture(scope="module")
def nlw2016(waves):
    frames, _ = waves
    return ThresholdPipeline().run(
        FrameWaveLoader(frames), start_year=2000, end_year=2100, events=["nlw2016"],
    )


class TestThresholdPipeline:
    """Test the full chain on simulated survey waves."""

    def test_panel_uses_every_wave(self, nlw2016):
        assert nlw2016.panel.waves_used == ["2014Q1", "2015Q2", "2016Q3", "2017Q4"]
        assert nlw2016.panel.waves_excluded == []

    def test_did_recovers_effect(self, waves, nlw2016):
        _, truth = waves
        run = nlw2016.reforms["nlw2016"]
        did = run.did["unemployed"]

        assert abs(did.params["treat_post_nlw2016"] - truth["effect"]) < 0.005
        assert did.cluster_vars == ("period",)
        assert did.n_clusters["period"] == 20
        assert did.std_errors["treat_post_nlw2016"] > 0

    def test_no_effect_on_inactivity(self, nlw2016):
        did = nlw2016.reforms["nlw2016"].did["inactive"]
        assert abs(did.params["treat_post_nlw2016"]) < 0.01

    def test_event_study_lags(self, waves, nlw2016):
        _, truth = waves
        es = nlw2016.reforms["nlw2016"].event_study["unemployed"]
        coefs = es.coefficients
        assert (coefs[coefs.index >= 0] - truth["effect"]).abs().max() < 0.02
        assert coefs[coefs.index < 0].abs().max() < 0.02

    def test_rdd_at_threshold(self, waves, nlw2016):
        _, truth = waves
        rdd = nlw2016.reforms["nlw2016"].rdd["unemployed"]
        assert rdd.cutoff == 25.0
        assert abs(rdd.estimate - truth["effect"]) < 0.02
        assert any(i.kind == "bandwidth_widened" for i in rdd.issues)

    def test_missing_region_recorded_not_fatal(self, nlw2016):
        missing = [i for i in nlw2016.issues
                   if i.kind == "missing_variable" and "region" in i.details["names"]]
        assert [i.details["wave"] for i in missing] == ["2015Q2"]
        assert "2015Q2" in nlw2016.panel.waves_used

    def test_results_table(self, nlw2016):
        table = nlw2016.results_table()
        assert list(table.columns) == [
            "reform", "age_threshold", "outcome", "model", "term", "estimate",
            "std_error", "t_stat", "pvalue", "n_obs", "reliable",
        ]
        assert set(table["model"]) >= {"did", "event_study", "rdd"}
        assert (table["reform"] == "nlw2016").all()
        rdd = table[table["model"] == "rdd"]
        assert rdd["reliable"].all()
        assert (rdd["std_error"] > 0).all()

    def test_reform_failures_do_not_abort(self, waves):
        frames, _ = waves
        result = ThresholdPipeline().run(FrameWaveLoader(frames), start_year=2000, end_year=2100)

        assert list(result.reforms) == ["nlw2016", "nlw2021", "nlw2024"]
        assert result.reforms["nlw2016"].did
        # No post-reform observations for the later reforms
        assert not result.reforms["nlw2021"].succeeded
        assert "did:unemployed" in result.reforms["nlw2021"].errors
        assert "rdd:unemployed" in result.reforms["nlw2021"].errors
        assert "sample" in result.reforms["nlw2024"].errors
        issues = result.issues_table()
        assert (issues.loc[issues["reform"] == "nlw2024", "severity"] == "ERROR").any()

    def test_threaded_matches_sequential(self, waves, nlw2016):
        frames, _ = waves
        threaded = ThresholdPipeline(max_workers=2).run(
            FrameWaveLoader(frames), start_year=2000, end_year=2100, events=["nlw2016"],
        )
        pd.testing.assert_frame_equal(threaded.results_table(), nlw2016.results_table())

    def test_age_span_restricts_sample(self, waves):
        frames, _ = waves
        result = ThresholdPipeline(age_span=3).run(
            FrameWaveLoader(frames), start_year=2000, end_year=2100, events=["nlw2016"],
        )
        cells = result.reforms["nlw2016"].cells.cells
        assert cells["age"].min() == 22 and cells["age"].max() == 28

    def test_empty_panel(self, waves):
        frames, _ = waves
        result = ThresholdPipeline().run(FrameWaveLoader(frames), start_year=1990, end_year=1991)
        assert result.reforms == {}
        assert any(i.severity == "ERROR" for i in result.issues)

    def test_unexpected_stage_error_recorded(self, waves):
        frames, _ = waves

        class BrokenRDD(RDDEstimator):
            def estimate(self, *args, **kwargs):
                raise TypeError("unsupported dtype")

        result = ThresholdPipeline(rdd=BrokenRDD()).run(
            FrameWaveLoader(frames), start_year=2000, end_year=2100, events=["nlw2016"],
        )
        run = result.reforms["nlw2016"]
        assert run.errors["rdd:unemployed"] == "unsupported dtype"
        assert run.rdd == {}
        assert "unemployed" in run.did

    def test_unexpected_reform_error_isolated(self, waves):
        frames, _ = waves

        class FailingPipeline(ThresholdPipeline):
            def reform_sample(self, panel, event):
                if event.slug == "nlw2021":
                    raise IndexError("bad window")
                return super().reform_sample(panel, event)

        result = FailingPipeline().run(
            FrameWaveLoader(frames), start_year=2000, end_year=2100,
            events=["nlw2016", "nlw2021"],
        )
        assert result.reforms["nlw2021"].errors == {"reform": "bad window"}
        assert any(i.kind == "IndexError" and i.severity == "ERROR"
                   for i in result.reforms["nlw2021"].issues)
        assert result.reforms["nlw2016"].did

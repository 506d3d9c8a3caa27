"""
Unit tests for the RMST effect estimators
"""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf
from conftest import L, canonical, simulate_pilot
from statsmodels.gam.api import BSplines

from rmst_power.censoring import cause_specific_weights, km_censoring_weights, pseudo_observations
from rmst_power.estimators import (
    AdditiveStratifiedEstimator,
    DependentCensoringEstimator,
    GAMPseudoObservationEstimator,
    LinearEstimator,
    MultiplicativeStratifiedEstimator,
    center_within_strata,
    get_estimator,
)
from rmst_power.exceptions import DataValidationError, EstimationFailure


def weighted_complete_frame(frame):
    weights = km_censoring_weights(frame, L)
    complete = frame.loc[weights.used].copy()
    complete["y"] = np.minimum(complete["time"], L)
    complete["w"] = weights.weights[weights.used]
    return complete


class TestLinearEstimator:
    """Test IPCW linear regression"""

    def test_no_censoring_is_difference_in_means(self):
        rng = np.random.default_rng(5)
        frame = pd.DataFrame(
            {"time": rng.exponential(300, 80), "status": 1, "arm": np.repeat([0, 1], 40)}
        )
        estimate = LinearEstimator(L=200.0).fit(frame)
        y = np.minimum(frame["time"], 200.0)
        expected = y[frame["arm"] == 1].mean() - y[frame["arm"] == 0].mean()
        assert np.isclose(estimate.coefficient, expected)

    def test_matches_weighted_regression(self, pilot_data):
        frame = canonical(pilot_data, linear_terms=["age"])
        estimate = LinearEstimator(L=L, covariates=["lin_1"]).fit(frame)

        complete = weighted_complete_frame(frame)
        results = smf.wls("y ~ arm + lin_1", data=complete, weights=complete["w"]).fit(cov_type="HC0")

        assert np.isclose(estimate.coefficient, results.params["arm"])
        assert np.isclose(estimate.variance, results.cov_params().loc["arm", "arm"] * len(frame))
        assert estimate.n_used == len(complete)
        assert estimate.n_subjects == len(frame)
        assert estimate.size_unit == "per_arm"
        assert estimate.n_units == 2

    def test_treatment_benefit_is_positive(self, pilot_data):
        estimate = LinearEstimator(L=L).fit(canonical(pilot_data))
        assert estimate.coefficient > 0
        assert estimate.variance > 0
        assert 0 <= estimate.pvalue <= 1

    def test_fit_is_deterministic(self, pilot_data):
        frame = canonical(pilot_data)
        assert LinearEstimator(L=L).fit(frame) == LinearEstimator(L=L).fit(frame)

    def test_collinear_covariate_fails(self, pilot_data):
        data = pilot_data.assign(arm_copy=pilot_data["treatment"] * 2.0)
        frame = canonical(data, linear_terms=["arm_copy"])
        with pytest.raises(EstimationFailure):
            LinearEstimator(L=L, covariates=["lin_1"]).fit(frame)

    def test_too_few_events_fails(self):
        frame = pd.DataFrame(
            {"time": [5.0, 6.0, 7.0, 8.0, 9.0, 10.0], "status": [1, 1, 0, 1, 0, 0], "arm": [0, 0, 0, 1, 1, 1]}
        )
        # a single observed outcome in arm 1
        with pytest.raises(EstimationFailure):
            LinearEstimator(L=10.5).fit(frame)


class TestStratifiedEstimators:
    """Test stratum-centered estimators"""

    def test_each_stratum_has_events_in_both_arms(self, pilot_data):
        complete = weighted_complete_frame(canonical(pilot_data, model="additive", strata_col="site"))
        counts = complete.groupby(["stratum", "arm"]).size()
        assert len(counts) == 8
        assert (counts >= 5).all()

    def test_additive_matches_stratum_intercept_regression(self, pilot_data):
        frame = canonical(pilot_data, model="additive", strata_col="site")
        estimate = AdditiveStratifiedEstimator(L=L).fit(frame)

        complete = weighted_complete_frame(frame)
        results = smf.wls("y ~ arm + C(stratum)", data=complete, weights=complete["w"]).fit()

        assert np.isclose(estimate.coefficient, results.params["arm"])
        assert estimate.size_unit == "per_stratum"
        assert estimate.n_units == 4

    def test_additive_matches_explicit_demeaning(self, pilot_data):
        frame = canonical(pilot_data, model="additive", strata_col="site", linear_terms=["age"])
        estimate = AdditiveStratifiedEstimator(L=L, covariates=["lin_1"]).fit(frame)

        complete = weighted_complete_frame(frame)
        demeaned = {}
        for col in ["y", "arm", "lin_1"]:
            values = complete[col].to_numpy(dtype=float).copy()
            for _, idx in complete.groupby("stratum").indices.items():
                w = complete["w"].to_numpy()[idx]
                values[idx] -= np.sum(w * values[idx]) / np.sum(w)
            demeaned[col] = values
        sqrt_w = np.sqrt(complete["w"].to_numpy())
        X = np.column_stack([demeaned["arm"], demeaned["lin_1"]]) * sqrt_w[:, None]
        beta, *_ = np.linalg.lstsq(X, demeaned["y"] * sqrt_w, rcond=None)

        assert np.isclose(estimate.coefficient, beta[0])

    def test_center_within_strata_removes_weighted_means(self):
        frame = pd.DataFrame({"stratum": ["a", "a", "b", "b"], "x": [1.0, 3.0, 5.0, 9.0], "w": [1.0, 3.0, 1.0, 1.0]})
        centered = center_within_strata(frame, ["x"], "w")
        np.testing.assert_allclose(centered["x"], [-1.5, 0.5, -2.0, 2.0])

    def test_multiplicative_matches_log_regression(self, pilot_data):
        frame = canonical(pilot_data, model="multiplicative", strata_col="site")
        estimate = MultiplicativeStratifiedEstimator(L=L).fit(frame)

        complete = weighted_complete_frame(frame)
        complete["log_y"] = np.log(complete["y"])
        results = smf.wls("log_y ~ arm + C(stratum)", data=complete, weights=complete["w"]).fit()

        assert np.isclose(estimate.coefficient, results.params["arm"])
        assert estimate.model == "multiplicative"

    def test_stratum_with_single_arm_fails(self, pilot_data):
        data = pilot_data[~((pilot_data["site"] == "site_0") & (pilot_data["treatment"] == 1))]
        frame = canonical(data, model="additive", strata_col="site")
        with pytest.raises(EstimationFailure):
            AdditiveStratifiedEstimator(L=L).fit(frame)


class TestGAMEstimator:
    """Test pseudo-observation regression"""

    def test_without_smooth_terms_is_ols_on_pseudo_values(self, pilot_data):
        frame = canonical(pilot_data, model="gam")
        estimate = GAMPseudoObservationEstimator(L=L).fit(frame)

        frame["y"] = pseudo_observations(frame["time"].to_numpy(), frame["status"].to_numpy(), L)
        results = smf.ols("y ~ arm", data=frame).fit(cov_type="HC0")

        assert np.isclose(estimate.coefficient, results.params["arm"])
        assert estimate.n_used == len(frame)
        assert estimate.n_dropped == 0

    def test_with_smooth_terms(self, pilot_data):
        frame = canonical(pilot_data, model="gam", smooth_terms=["age"])
        estimate = GAMPseudoObservationEstimator(L=L, smooth_terms=["sm_1"]).fit(frame)

        assert np.isfinite(estimate.coefficient)
        assert estimate.variance > 0
        assert estimate.coefficient > 0

    def test_smooth_terms_use_cubic_splines_with_four_df(self, pilot_data):
        frame = canonical(pilot_data, model="gam", smooth_terms=["age"])
        with patch("rmst_power.estimators.BSplines", wraps=BSplines) as splines:
            GAMPseudoObservationEstimator(L=L, smooth_terms=["sm_1"]).fit(frame)
        assert splines.call_args.kwargs["df"] == [4]
        assert splines.call_args.kwargs["degree"] == [3]


class TestDependentCensoringEstimator:
    """Test IPCW regression with cause-specific censoring weights"""

    def test_coefficient_matches_weighted_regression(self, dependent_pilot_data):
        frame = canonical(dependent_pilot_data, model="dependent", dep_cens_cols=["dep_cens"])
        estimate = DependentCensoringEstimator(L=L, dep_cols=["dep_1"]).fit(frame)

        weights = cause_specific_weights(frame, L, ["dep_1"])
        complete = frame.loc[weights.used].copy()
        complete["y"] = np.minimum(complete["time"], L)
        results = smf.wls("y ~ arm", data=complete, weights=weights.weights[weights.used]).fit()

        assert np.isclose(estimate.coefficient, results.params["arm"])
        assert estimate.variance > 0
        assert np.isfinite(estimate.standard_error)

    def test_with_covariates(self, dependent_pilot_data):
        frame = canonical(
            dependent_pilot_data, model="dependent", dep_cens_cols=["dep_cens"], linear_terms=["age"]
        )
        estimate = DependentCensoringEstimator(L=L, covariates=["lin_1"], dep_cols=["dep_1"]).fit(frame)
        assert estimate.variance > 0
        assert 0 <= estimate.pvalue <= 1

    def test_sandwich_close_to_naive_robust_variance(self, dependent_pilot_data):
        frame = canonical(dependent_pilot_data, model="dependent", dep_cens_cols=["dep_cens"])
        estimate = DependentCensoringEstimator(L=L, dep_cols=["dep_1"]).fit(frame)

        weights = cause_specific_weights(frame, L, ["dep_1"])
        complete = frame.loc[weights.used].copy()
        complete["y"] = np.minimum(complete["time"], L)
        naive = smf.wls("y ~ arm", data=complete, weights=weights.weights[weights.used]).fit(cov_type="HC0")
        naive_variance = naive.cov_params().loc["arm", "arm"] * len(frame)

        assert 0.2 < estimate.variance / naive_variance < 5

    def test_sandwich_is_mildly_conservative(self):
        coefficients = []
        variances = []
        for seed in range(300):
            data = simulate_pilot(dependent=True, seed=1000 + seed)
            frame = canonical(data, model="dependent", dep_cens_cols=["dep_cens"])
            estimate = DependentCensoringEstimator(L=L, dep_cols=["dep_1"]).fit(frame)
            coefficients.append(estimate.coefficient)
            variances.append(estimate.variance)

        empirical = np.var(coefficients, ddof=1) * len(frame)
        ratio = np.mean(variances) / empirical
        assert 0.9 < ratio < 1.6


class TestEstimatorRegistry:
    """Test model tag lookup"""

    @pytest.mark.parametrize(
        "model,cls",
        [
            ("linear", LinearEstimator),
            ("additive", AdditiveStratifiedEstimator),
            ("multiplicative", MultiplicativeStratifiedEstimator),
            ("gam", GAMPseudoObservationEstimator),
            ("dependent", DependentCensoringEstimator),
        ],
    )
    def test_known_models(self, model, cls):
        assert isinstance(get_estimator(model, L=L), cls)

    def test_unknown_model(self):
        with pytest.raises(DataValidationError):
            get_estimator("cox", L=L)


def test_small_pilot_estimate_is_reproducible():
    frame = canonical(simulate_pilot(n_per_arm=40, seed=11))
    first = LinearEstimator(L=L).fit(frame)
    second = LinearEstimator(L=L).fit(frame.copy())
    assert first.coefficient == second.coefficient
    assert first.variance == second.variance

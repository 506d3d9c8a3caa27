"""This module contains the RMST effect estimators used to size trials from pilot data."""

from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy.stats import norm
from statsmodels.gam.api import BSplines, GLMGam

from .censoring import CensoringWeights, cause_specific_weights, km_censoring_weights, pseudo_observations
from .exceptions import EstimationFailure
from .utils import ARM, STATUS, STRATUM, TIME, get_logger, log_and_raise_error


@dataclass(frozen=True)
class EffectEstimate:
    """
    Treatment effect on the RMST scale estimated from one dataset.

    ``variance`` is the asymptotic variance of the coefficient for a single
    subject (N = 1); the variance for a trial of N subjects is variance / N.
    ``n_units`` converts a design size to N: 2 for per-arm designs, the number
    of strata for per-stratum designs.
    """

    model: str
    coefficient: float
    variance: float
    standard_error: float
    pvalue: float
    n_subjects: int
    n_used: int
    n_dropped: int
    n_units: int
    size_unit: str

    def to_dict(self) -> dict[str, str | int | float]:
        return {
            "model": self.model,
            "effect": self.coefficient,
            "variance": self.variance,
            "standard_error": self.standard_error,
            "pvalue": self.pvalue,
            "n_subjects": self.n_subjects,
            "n_used": self.n_used,
            "n_dropped": self.n_dropped,
        }


class EffectEstimator:
    """
    Base estimator. Subclasses implement ``_estimate`` and, when they use IPCW,
    ``compute_weights``.

    Parameters
    ----------
    L : float
        Truncation horizon.
    covariates : list[str], optional
        Canonical names of the linear covariates.
    smooth_terms : list[str], optional
        Canonical names of the smooth covariates (GAM only).
    dep_cols : list[str], optional
        Canonical names of the dependent censoring causes (dependent model only).
    """

    model = None
    size_unit = "per_arm"

    def __init__(
        self,
        L: float,
        covariates: list[str] | None = None,
        smooth_terms: list[str] | None = None,
        dep_cols: list[str] | None = None,
    ) -> None:
        self._L = L
        self._covariates = covariates or []
        self._smooth_terms = smooth_terms or []
        self._dep_cols = dep_cols or []

    def compute_weights(self, data: pd.DataFrame) -> CensoringWeights:
        return km_censoring_weights(data, self._L)

    def n_units(self, data: pd.DataFrame) -> int:
        return 2

    def fit(self, data: pd.DataFrame, weights: CensoringWeights | None = None) -> EffectEstimate:
        """
        Estimate the arm coefficient and its N = 1 variance.

        Parameters
        ----------
        data : pd.DataFrame
            Canonical pilot frame.
        weights : CensoringWeights, optional
            Precomputed censoring weights; computed from ``data`` when omitted.

        Returns
        -------
        EffectEstimate

        Raises
        ------
        EstimationFailure
            When the fit is degenerate.
        """
        if weights is None:
            weights = self.compute_weights(data)

        coefficient, variance, n_used = self._estimate(data, weights)
        if not np.isfinite(variance) or variance <= 0:
            raise EstimationFailure(f"Non-positive variance estimate ({variance}) for model '{self.model}'")

        n_subjects = len(data)
        standard_error = float(np.sqrt(variance / n_subjects))
        pvalue = float(2 * norm.sf(abs(coefficient) / standard_error))

        return EffectEstimate(
            model=self.model,
            coefficient=float(coefficient),
            variance=float(variance),
            standard_error=standard_error,
            pvalue=pvalue,
            n_subjects=n_subjects,
            n_used=int(n_used),
            n_dropped=int(weights.n_dropped) if weights is not None else 0,
            n_units=self.n_units(data),
            size_unit=self.size_unit,
        )

    def _estimate(self, data: pd.DataFrame, weights: CensoringWeights) -> tuple[float, float, int]:
        raise NotImplementedError

    def _create_formula(self, intercept: bool = True) -> str:
        formula = f"y ~ {'1' if intercept else '0'} + {ARM}"
        if self._covariates:
            formula += " + " + " + ".join(self._covariates)
        return formula

    def _complete_frame(self, data: pd.DataFrame, weights: CensoringWeights) -> pd.DataFrame:
        frame = data.loc[weights.used].copy()
        frame["y"] = np.minimum(frame[TIME].to_numpy(dtype=float), self._L)
        frame["w"] = weights.weights[weights.used]
        for arm in (0, 1):
            if (frame[ARM] == arm).sum() < 2:
                raise EstimationFailure(f"Fewer than two observed outcomes in arm {arm}")
        return frame

    def _fit_wls(self, formula: str, frame: pd.DataFrame) -> tuple[float, float]:
        """Weighted least squares with HC0 covariance, returning (coefficient, robust variance)."""
        model = smf.wls(formula, data=frame, weights=frame["w"])
        if np.linalg.matrix_rank(model.exog) < model.exog.shape[1]:
            raise EstimationFailure(f"Singular design matrix for formula '{formula}'")
        results = model.fit(cov_type="HC0")
        return results.params[ARM], results.cov_params().loc[ARM, ARM]


class LinearEstimator(EffectEstimator):
    """IPCW linear regression of min(T, L) on the arm and linear covariates."""

    model = "linear"

    def _estimate(self, data, weights):
        frame = self._complete_frame(data, weights)
        coefficient, robust_var = self._fit_wls(self._create_formula(), frame)
        return coefficient, robust_var * len(data), len(frame)


class AdditiveStratifiedEstimator(EffectEstimator):
    """
    IPCW linear regression after stratum centering.

    Subtracting the weighted stratum means of the outcome, arm and covariates
    removes the per-stratum intercepts while giving the same arm coefficient as
    the regression with one intercept per stratum.
    """

    model = "additive"
    size_unit = "per_stratum"

    def n_units(self, data):
        return int(data[STRATUM].nunique())

    def _outcome(self, frame: pd.DataFrame) -> pd.Series:
        return frame["y"]

    def _estimate(self, data, weights):
        frame = self._complete_frame(data, weights)
        frame["y"] = self._outcome(frame)
        self._check_strata(data, frame)
        centered = center_within_strata(frame, ["y", ARM] + self._covariates, "w")
        coefficient, robust_var = self._fit_wls(self._create_formula(intercept=False), centered)
        return coefficient, robust_var * len(data), len(frame)

    def _check_strata(self, data: pd.DataFrame, frame: pd.DataFrame) -> None:
        counts = frame.groupby(STRATUM, observed=True)[ARM].agg(["min", "max"])
        missing = set(pd.unique(data[STRATUM])) - set(counts.index)
        degenerate = counts.index[counts["min"] == counts["max"]].tolist()
        if missing or degenerate:
            raise EstimationFailure(
                f"Strata without an observed outcome in each arm: {sorted(map(str, missing))} "
                f"{sorted(map(str, degenerate))}"
            )


class MultiplicativeStratifiedEstimator(AdditiveStratifiedEstimator):
    """
    Stratum-centered IPCW regression of log(min(T, L)); the arm coefficient is
    a log RMST ratio.

    This is a weighted log-linear surrogate for the iterative score-equation
    estimator of the multiplicative model.
    """

    model = "multiplicative"

    def _outcome(self, frame):
        if (frame["y"] <= 0).any():
            raise EstimationFailure("Log model needs strictly positive truncated times")
        return np.log(frame["y"])


class GAMPseudoObservationEstimator(EffectEstimator):
    """
    Regression of jackknife RMST pseudo-values on the arm, linear covariates and
    B-spline smooth terms. Pseudo-values already account for censoring, so no
    weights are used.
    """

    model = "gam"
    spline_df = 4
    spline_degree = 3

    def compute_weights(self, data):
        return None

    def _estimate(self, data, weights):
        frame = data.copy()
        frame["y"] = pseudo_observations(
            frame[TIME].to_numpy(dtype=float), frame[STATUS].to_numpy(dtype=float), self._L
        )
        if frame[ARM].nunique() < 2:
            raise EstimationFailure("Only one arm present")

        formula = self._create_formula()
        if not self._smooth_terms:
            model = smf.ols(formula, data=frame)
            if np.linalg.matrix_rank(model.exog) < model.exog.shape[1]:
                raise EstimationFailure(f"Singular design matrix for formula '{formula}'")
            results = model.fit(cov_type="HC0")
        else:
            k = len(self._smooth_terms)
            smoother = BSplines(
                frame[self._smooth_terms], df=[self.spline_df] * k, degree=[self.spline_degree] * k
            )
            model = GLMGam.from_formula(formula, data=frame, smoother=smoother)
            if np.linalg.matrix_rank(model.exog) < model.exog.shape[1]:
                raise EstimationFailure("Singular design matrix for the additive model")
            results = model.fit()

        variance = results.cov_params().loc[ARM, ARM] * len(frame)
        return results.params[ARM], variance, len(frame)


class DependentCensoringEstimator(EffectEstimator):
    """
    IPCW linear regression with weights from cause-specific hazard models, and
    a sandwich variance that includes the estimation of each cause's baseline
    cumulative hazard.
    """

    model = "dependent"

    def compute_weights(self, data):
        return cause_specific_weights(data, self._L, self._dep_cols, self._covariates)

    def _estimate(self, data, weights):
        frame = self._complete_frame(data, weights)
        model = smf.wls(self._create_formula(), data=frame, weights=frame["w"])
        if np.linalg.matrix_rank(model.exog) < model.exog.shape[1]:
            raise EstimationFailure("Singular design matrix for the dependent censoring model")
        beta = model.fit().params.to_numpy()

        variance = dependent_sandwich(data, weights, beta, self._covariates, self._L)
        return beta[1], variance[1, 1], len(frame)


def center_within_strata(frame: pd.DataFrame, columns: list[str], weight_col: str) -> pd.DataFrame:
    """Subtract the weighted stratum mean from each column."""
    centered = frame.copy()
    w = frame[weight_col]
    w_total = w.groupby(frame[STRATUM], observed=True).transform("sum")
    for col in columns:
        mean = (frame[col] * w).groupby(frame[STRATUM], observed=True).transform("sum") / w_total
        centered[col] = frame[col] - mean
    return centered


def dependent_sandwich(
    data: pd.DataFrame, weights: CensoringWeights, beta: np.ndarray, covariates: list[str], L: float
) -> np.ndarray:
    """
    N = 1 covariance A^-1 B A^-1 of the weighted estimating equation, where each
    subject's influence adds the Breslow term of every cause model:
    sum_k integral G_k(s) / R_k(s) dM_jk(s).

    The cause coefficients gamma_k are held fixed, so their estimation is not
    credited against the weight variability. The result is conservative: on
    simulated pilots of 200 subjects it runs about 20% above the Monte Carlo
    variance of the coefficient.
    """
    n = len(data)
    time = data[TIME].to_numpy(dtype=float)
    truncated = np.minimum(time, L)
    X = np.column_stack([np.ones(n), data[[ARM] + covariates].to_numpy(dtype=float)])

    w = np.where(weights.used, weights.weights, 0.0)
    resid = np.where(weights.used, truncated - X @ beta, 0.0)

    A = (X * w[:, None]).T @ X / n
    u = X * (w * resid)[:, None]

    q = np.zeros_like(u)
    for hazard in weights.cause_hazards:
        v = u * hazard.risk[:, None]
        in_range = (truncated[:, None] >= hazard.times[None, :]).astype(float)
        ratio = (in_range.T @ v) / hazard.at_risk[:, None]
        pos = np.searchsorted(hazard.times, time)
        compensator = np.cumsum(ratio * hazard.increments[:, None], axis=0)
        q += hazard.event[:, None] * ratio[pos] - hazard.risk[:, None] * compensator[pos]

    psi = u + q
    B = psi.T @ psi / n
    A_inv = np.linalg.inv(A)
    return A_inv @ B @ A_inv


ESTIMATORS = {
    "linear": LinearEstimator,
    "additive": AdditiveStratifiedEstimator,
    "multiplicative": MultiplicativeStratifiedEstimator,
    "gam": GAMPseudoObservationEstimator,
    "dependent": DependentCensoringEstimator,
}


def get_estimator(model: str, **kwargs) -> EffectEstimator:
    """
    Returns the estimator for a model tag.
    Supported: 'linear', 'additive', 'multiplicative', 'gam', 'dependent'.
    """
    if model not in ESTIMATORS:
        log_and_raise_error(get_logger("Effect Estimator"), f"Unknown model: {model}")
    return ESTIMATORS[model](**kwargs)

"""
Inverse probability of censoring weights and Kaplan-Meier RMST helpers.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from statsmodels.duration.hazard_regression import PHReg
from statsmodels.duration.survfunc import SurvfuncRight

from .exceptions import EstimationFailure
from .utils import ARM, STATUS, TIME, get_logger

logger = get_logger("Censoring Weights")


@dataclass
class CensoringWeights:
    """
    Per-subject weights for one fit.

    ``weights`` is NaN for subjects that do not enter the weighted regression,
    either because their truncated outcome is unobserved or because the weight
    is undefined (dropped). ``cumulative_hazards`` holds one column per cause for
    the dependent censoring path and is ``None`` otherwise.
    """

    weights: np.ndarray
    used: np.ndarray
    n_dropped: int
    cumulative_hazards: np.ndarray | None = None
    cause_hazards: list["CauseHazard"] | None = None


@dataclass
class CauseHazard:
    """Breslow fit of one cause-specific proportional hazards model."""

    times: np.ndarray
    increments: np.ndarray
    at_risk: np.ndarray
    risk: np.ndarray
    event: np.ndarray
    params: np.ndarray

    def cumulative_hazard(self, t: np.ndarray) -> np.ndarray:
        """Baseline cumulative hazard at ``t`` (right-continuous)."""
        cumhaz = np.cumsum(self.increments)
        idx = np.searchsorted(self.times, t, side="right") - 1
        return np.where(idx >= 0, cumhaz[np.clip(idx, 0, None)], 0.0)


def complete_case(time: np.ndarray, status: np.ndarray, L: float) -> np.ndarray:
    """Subjects whose truncated outcome min(T, L) is observed."""
    return (status == 1) | (time >= L)


def km_censoring_weights(data: pd.DataFrame, L: float) -> CensoringWeights:
    """
    Weights 1 / G(min(T, L)-) where G is the Kaplan-Meier estimate of the
    censoring survival function.

    Parameters
    ----------
    data : pd.DataFrame
        Canonical pilot frame.
    L : float
        Truncation horizon.

    Returns
    -------
    CensoringWeights
    """
    time = data[TIME].to_numpy(dtype=float)
    status = data[STATUS].to_numpy(dtype=int)
    truncated = np.minimum(time, L)
    complete = complete_case(time, status, L)

    censored = 1 - status
    if censored.sum() == 0:
        weights = np.where(complete, 1.0, np.nan)
        return CensoringWeights(weights=weights, used=complete, n_dropped=0)

    sf = SurvfuncRight(time, censored)
    surv_times = np.asarray(sf.surv_times, dtype=float)
    surv_prob = np.asarray(sf.surv_prob, dtype=float)

    # left limit: a censoring tied with the event happens after it
    idx = np.searchsorted(surv_times, truncated, side="left") - 1
    g = np.where(idx >= 0, surv_prob[np.clip(idx, 0, None)], 1.0)

    undefined = complete & (g <= 0)
    n_dropped = int(undefined.sum())
    if n_dropped > 0:
        logger.warning(
            f"{n_dropped} subject(s) dropped: censoring survival probability is zero at their event time"
        )

    used = complete & ~undefined
    with np.errstate(divide="ignore"):
        weights = np.where(used, 1.0 / g, np.nan)

    return CensoringWeights(weights=weights, used=used, n_dropped=n_dropped)


def breslow_hazard(
    time: np.ndarray, event: np.ndarray, linpred: np.ndarray, params: np.ndarray | None = None
) -> CauseHazard:
    """
    Breslow baseline cumulative hazard for a fitted linear predictor.

    Increments are kept on the grid of distinct observed times so the
    influence terms of the sandwich variance can reuse them.
    """
    risk = np.exp(linpred)
    uniq, inv = np.unique(time, return_inverse=True)
    risk_by_time = np.bincount(inv, weights=risk, minlength=len(uniq))
    events_by_time = np.bincount(inv, weights=event, minlength=len(uniq))
    at_risk = np.cumsum(risk_by_time[::-1])[::-1]
    increments = np.where(events_by_time > 0, events_by_time / at_risk, 0.0)
    return CauseHazard(
        times=uniq,
        increments=increments,
        at_risk=at_risk,
        risk=risk,
        event=event.astype(float),
        params=np.zeros(0) if params is None else params,
    )


def cause_indicators(data: pd.DataFrame, dep_cols: list[str]) -> list[np.ndarray]:
    """
    One indicator per censoring cause: each dependent cause column, followed by
    the residual independent censoring (no event and no dependent cause).
    """
    status = data[STATUS].to_numpy(dtype=int)
    causes = [data[c].to_numpy(dtype=int) for c in dep_cols]
    flagged = np.zeros(len(data), dtype=int)
    for c in causes:
        flagged = flagged | c
    causes.append(((status == 0) & (flagged == 0)).astype(int))
    return causes


def fit_cause_hazard(data: pd.DataFrame, event: np.ndarray, covariates: list[str]) -> CauseHazard:
    """Fit a cause-specific Cox model on arm + covariates and return its Breslow hazard."""
    time = data[TIME].to_numpy(dtype=float)
    if event.sum() == 0:
        return breslow_hazard(time, event, np.zeros(len(time)), np.zeros(1 + len(covariates)))

    exog = data[[ARM] + covariates].to_numpy(dtype=float)
    if np.any(exog.std(axis=0) == 0):
        raise EstimationFailure("Cause-specific hazard model has a constant covariate")

    results = PHReg(time, exog, status=event, ties="breslow").fit(disp=False)
    params = np.asarray(results.params, dtype=float)
    if not np.all(np.isfinite(params)):
        raise EstimationFailure("Cause-specific hazard model did not converge")

    return breslow_hazard(time, event, exog @ params, params)


def cause_specific_weights(
    data: pd.DataFrame, L: float, dep_cols: list[str], covariates: list[str] | None = None
) -> CensoringWeights:
    """
    Weights exp(sum_k H_k(min(T, L) | x)) from one proportional hazards model per
    censoring cause.

    Parameters
    ----------
    data : pd.DataFrame
        Canonical pilot frame.
    L : float
        Truncation horizon.
    dep_cols : list[str]
        Canonical dependent censoring cause columns.
    covariates : list[str], optional
        Canonical covariates of the cause models, in addition to the arm.

    Returns
    -------
    CensoringWeights
        With ``cumulative_hazards`` of shape (n, K).
    """
    covariates = covariates or []
    time = data[TIME].to_numpy(dtype=float)
    status = data[STATUS].to_numpy(dtype=int)
    truncated = np.minimum(time, L)
    complete = complete_case(time, status, L)

    hazards = [fit_cause_hazard(data, event, covariates) for event in cause_indicators(data, dep_cols)]
    cumhaz = np.column_stack([h.cumulative_hazard(truncated) * h.risk for h in hazards])

    total = cumhaz.sum(axis=1)
    with np.errstate(over="ignore"):
        raw = np.exp(total)
    undefined = complete & ~np.isfinite(raw)
    n_dropped = int(undefined.sum())
    if n_dropped > 0:
        logger.warning(f"{n_dropped} subject(s) dropped: cumulative censoring hazard overflowed")

    used = complete & ~undefined
    weights = np.where(used, raw, np.nan)

    return CensoringWeights(
        weights=weights, used=used, n_dropped=n_dropped, cumulative_hazards=cumhaz, cause_hazards=hazards
    )


def km_rmst(time: np.ndarray, status: np.ndarray, L: float) -> float:
    """Area under the Kaplan-Meier curve on [0, L]."""
    n = len(time)
    uniq, inv = np.unique(time, return_inverse=True)
    deaths = np.bincount(inv, weights=status, minlength=len(uniq))
    counts = np.bincount(inv, minlength=len(uniq))
    at_risk = n - np.concatenate(([0], np.cumsum(counts)[:-1]))
    surv = np.cumprod(1.0 - deaths / at_risk)

    knots = np.concatenate(([0.0], uniq))
    values = np.concatenate(([1.0], surv))
    starts = np.minimum(knots, L)
    ends = np.minimum(np.append(uniq, np.inf), L)
    return float(np.sum(values * (ends - starts)))


def pseudo_observations(time: np.ndarray, status: np.ndarray, L: float) -> np.ndarray:
    """
    Jackknife pseudo-values of the RMST at L:
    n * theta - (n - 1) * theta_(-i).

    Removing subject i lowers the risk set by one at every distinct time up
    to T_i and its own event count by status_i, so each leave-one-out curve is
    a cumulative product of adjusted factors. Subjects sharing (time, status)
    share a curve, giving one row per distinct pair instead of n refits.
    """
    time = np.asarray(time, dtype=float)
    status = np.asarray(status, dtype=float)
    n = len(time)

    uniq, inv = np.unique(time, return_inverse=True)
    deaths = np.bincount(inv, weights=status, minlength=len(uniq))
    counts = np.bincount(inv, minlength=len(uniq))
    at_risk = n - np.concatenate(([0], np.cumsum(counts)[:-1]))
    knots = np.concatenate(([0.0], uniq))
    widths = np.minimum(np.append(uniq, np.inf), L) - np.minimum(knots, L)
    theta = widths[0] + np.cumprod(1.0 - deaths / at_risk) @ widths[1:]

    pairs, pair_index = np.unique(np.column_stack([inv, status]), axis=0, return_inverse=True)
    group = pairs[:, 0].astype(int)
    removed = pairs[:, 1]

    reduced = at_risk - 1
    with np.errstate(divide="ignore", invalid="ignore"):
        # an emptied risk set leaves the curve flat
        before = np.where(reduced > 0, 1.0 - deaths / reduced, 1.0)
        own = np.where(reduced[group] > 0, 1.0 - (deaths[group] - removed) / reduced[group], 1.0)
    after = 1.0 - deaths / at_risk

    positions = np.arange(len(uniq))
    factors = np.where(positions[None, :] < group[:, None], before[None, :], after[None, :])
    factors[np.arange(len(group)), group] = own
    loo = widths[0] + np.cumprod(factors, axis=1) @ widths[1:]

    return n * theta - (n - 1) * loo[np.ravel(pair_index)]

"""Bootstrap power simulation mixin for RMSTPowerSim."""

import warnings
from collections.abc import Callable

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .estimators import EffectEstimator
from .utils import ARM, STRATUM


def resample_groups(data: pd.DataFrame, group_col: str, n: int, rng: np.random.Generator) -> pd.DataFrame:
    """Draw n rows with replacement from each level of ``group_col``."""
    positions = []
    for _, idx in data.groupby(group_col, observed=True).indices.items():
        positions.append(rng.choice(idx, size=n, replace=True))
    return data.iloc[np.concatenate(positions)].reset_index(drop=True)


def run_replicate(
    data: pd.DataFrame,
    estimator: EffectEstimator,
    group_col: str,
    n: int,
    alpha: float,
    seed: int | None,
) -> tuple[bool | None, float | None, str | None]:
    """
    Execute a single bootstrap replicate: resample, refit, test the arm
    coefficient.

    Returns
    -------
    tuple[bool | None, float | None, str | None]
        (rejected, effect, error_info); the first two are ``None`` when the fit
        failed.
    """
    try:
        rng = np.random.default_rng(seed)
        boot_data = resample_groups(data, group_col, n, rng)
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            estimate = estimator.fit(boot_data)
        return bool(estimate.pvalue < alpha), estimate.coefficient, None
    except Exception as e:
        error_info = f"{type(e).__name__}: {str(e)[:100]}"
        return None, None, error_info


class BootstrapMixin:
    """Mixin providing resampled power estimation at fixed design sizes."""

    def _group_col(self) -> str:
        return STRATUM if self._estimator.size_unit == "per_stratum" else ARM

    def _replicate_seed(self, iteration: int) -> int | None:
        return self._seed + iteration if self._seed is not None else None

    def _bootstrap_power(self, n: int, should_stop: Callable[[], bool] | None = None) -> dict[str, float | int | bool]:
        """
        Estimate power at design size ``n`` from ``self._nsim`` replicates.

        Replicates are run in batches; ``should_stop`` is polled between
        batches and ends the simulation early when it returns True.

        Returns
        -------
        dict
            power, mean_effect, n_valid, n_failed, failure_rate, unreliable,
            cancelled
        """
        group_col = self._group_col()
        batch_size = self._batch_size or max(self._n_jobs * 10, 50)

        if self._n_jobs > 1:
            self._logger.info(
                f"Running {self._nsim} bootstrap replicates for n={n} with {self._n_jobs} workers..."
            )
        else:
            self._logger.info(f"Running {self._nsim} bootstrap replicates for n={n}...")

        results = []
        cancelled = False
        for start in range(0, self._nsim, batch_size):
            if should_stop is not None and should_stop():
                cancelled = True
                self._logger.warning(f"Bootstrap for n={n} cancelled after {len(results)} replicates")
                break

            iterations = range(start, min(start + batch_size, self._nsim))
            if self._n_jobs > 1:
                batch = Parallel(n_jobs=self._n_jobs, backend="loky")(
                    delayed(run_replicate)(
                        self._data, self._estimator, group_col, n, self._alpha, self._replicate_seed(i)
                    )
                    for i in iterations
                )
            else:
                batch = [
                    run_replicate(self._data, self._estimator, group_col, n, self._alpha, self._replicate_seed(i))
                    for i in iterations
                ]
            results.extend(batch)

        rejections = []
        effects = []
        error_counts = {}
        for rejected, effect, error_info in results:
            if rejected is not None:
                rejections.append(rejected)
                effects.append(effect)
            else:
                error_type = error_info.split(":")[0] if ":" in error_info else "UnknownError"
                error_message = error_info.split(":", 1)[1].strip() if ":" in error_info else error_info
                if error_type not in error_counts:
                    error_counts[error_type] = {"count": 0, "first_message": error_message}
                error_counts[error_type]["count"] += 1

        n_run = len(results)
        n_valid = len(rejections)
        n_failed = n_run - n_valid
        failure_rate = n_failed / n_run if n_run > 0 else 1.0
        unreliable = failure_rate > self._max_failure_rate or n_valid == 0

        if n_failed > 0:
            error_summary = "; ".join([f"{k} ({v['count']}x): {v['first_message']}" for k, v in error_counts.items()])
            message = f"{n_failed} of {n_run} bootstrap replicates failed for n={n}. Error summary: {error_summary}."
            if unreliable:
                self._logger.warning(
                    f"{message} Failure rate {failure_rate:.1%} exceeds {self._max_failure_rate:.0%}; "
                    "power estimate is unreliable. Consider a larger n or fewer covariates."
                )
            else:
                self._logger.info(message)

        return {
            "sample_size": n,
            "power": float(np.mean(rejections)) if n_valid > 0 else np.nan,
            "mean_effect": float(np.mean(effects)) if n_valid > 0 else np.nan,
            "n_valid": n_valid,
            "n_failed": n_failed,
            "failure_rate": failure_rate,
            "unreliable": unreliable,
            "cancelled": cancelled,
        }

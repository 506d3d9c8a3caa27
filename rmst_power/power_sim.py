"""
RMSTPowerSim class for power and sample size calculation from pilot survival data.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .analytic import analytic_power, power_table
from .bootstrap import BootstrapMixin
from .estimators import EffectEstimate, get_estimator
from .search import sample_size_search
from .utils import VariableRoles, ensure_list, get_logger, log_and_raise_error, validate_pilot_data


@dataclass
class RMSTPowerResult:
    """
    Output of every power or sample size call.

    ``results_summary`` has one row per design size for power calls and a
    single row for sample size searches. ``search_trace`` lists every design
    size evaluated by a search.
    """

    results_summary: pd.DataFrame
    effect: EffectEstimate | None = None
    search_trace: pd.DataFrame | None = None
    diagnostics: list[str] = field(default_factory=list)


class RMSTPowerSim(BootstrapMixin):
    """
    Power and sample size for trials comparing arms on the restricted mean
    survival time, using a pilot dataset to estimate the effect and its
    sampling variability.

    Parameters
    ----------
    data : pd.DataFrame
        Pilot dataset, one row per subject.
    time_col : str
        Observed time column.
    status_col : str
        Event indicator column (1 = event, 0 = censored).
    arm_col : str
        Treatment arm column (0/1).
    L : float
        Truncation horizon of the RMST.
    model : str
        'linear', 'additive', 'multiplicative', 'gam' or 'dependent', by default 'linear'
    strata_col : str, optional
        Stratum column, required by 'additive' and 'multiplicative'.
    dep_cens_cols : str or list[str], optional
        Dependent censoring cause indicator column(s), required by 'dependent'.
    linear_terms : list[str], optional
        Covariates entering linearly.
    smooth_terms : list[str], optional
        Covariates entering as spline terms ('gam' only).
    alpha : float
        Two-sided significance level, by default 0.05
    nsim : int
        Number of bootstrap replicates per design size, by default 500
    n_jobs : int
        Number of worker processes for bootstrap replicates, by default 1
    seed : int, optional
        Base seed; replicate i uses seed + i, by default None
    max_failure_rate : float
        Share of failed replicates above which a bootstrap power is flagged unreliable, by default 0.5
    batch_size : int, optional
        Replicates per batch between cancellation checks, by default max(10 * n_jobs, 50)
    """

    def __init__(
        self,
        data: pd.DataFrame,
        time_col: str,
        status_col: str,
        arm_col: str,
        L: float,
        model: str = "linear",
        strata_col: str | None = None,
        dep_cens_cols: str | list[str] | None = None,
        linear_terms: list[str] | None = None,
        smooth_terms: list[str] | None = None,
        alpha: float = 0.05,
        nsim: int = 500,
        n_jobs: int = 1,
        seed: int | None = None,
        max_failure_rate: float = 0.5,
        batch_size: int | None = None,
    ) -> None:
        self._logger = get_logger("RMST Power Simulator")
        self._roles = VariableRoles(
            time_col=time_col,
            status_col=status_col,
            arm_col=arm_col,
            strata_col=strata_col,
            dep_cens_cols=ensure_list(dep_cens_cols),
            linear_terms=ensure_list(linear_terms),
            smooth_terms=ensure_list(smooth_terms),
        )
        self._model = model
        self._L = L
        self._alpha = alpha
        self._nsim = nsim
        self._n_jobs = n_jobs
        self._seed = seed
        self._max_failure_rate = max_failure_rate
        self._batch_size = batch_size
        self.__check_input()
        self._data = validate_pilot_data(data, self._roles, L, model, self._logger)
        self._estimator = get_estimator(
            model,
            L=L,
            covariates=self._roles.linear_names,
            smooth_terms=self._roles.smooth_names,
            dep_cols=self._roles.dep_names,
        )
        self._effect = None

    def __check_input(self) -> None:
        if not 0 < self._alpha < 1:
            log_and_raise_error(self._logger, "alpha must be between 0 and 1")
        if self._nsim < 1:
            log_and_raise_error(self._logger, "nsim must be a positive integer")
        if self._n_jobs < 1:
            log_and_raise_error(self._logger, "n_jobs must be a positive integer")
        if not 0 <= self._max_failure_rate <= 1:
            log_and_raise_error(self._logger, "max_failure_rate must be between 0 and 1")
        if self._batch_size is not None and self._batch_size < 1:
            log_and_raise_error(self._logger, "batch_size must be a positive integer")

    def __check_sample_sizes(self, sample_sizes: list[int]) -> list[int]:
        sample_sizes = [sample_sizes] if np.isscalar(sample_sizes) else list(sample_sizes)
        if len(sample_sizes) == 0 or any(int(n) != n or n < 1 for n in sample_sizes):
            log_and_raise_error(self._logger, "sample_sizes must be positive integers")
        return [int(n) for n in sample_sizes]

    @property
    def effect(self) -> EffectEstimate:
        """Effect estimate from the pilot data, fitted on first access."""
        if self._effect is None:
            self._effect = self.estimate_effect()
        return self._effect

    def estimate_effect(self) -> EffectEstimate:
        """
        Fit the model on the pilot data.

        Returns
        -------
        EffectEstimate

        Raises
        ------
        EstimationFailure
            If the pilot fit is degenerate.
        """
        try:
            effect = self._estimator.fit(self._data)
        except Exception as e:
            self._logger.error(f"Estimation failed for model '{self._model}': {e}")
            raise
        self._logger.info(
            f"Model '{self._model}': effect={effect.coefficient:.4f}, "
            f"variance (N=1)={effect.variance:.4f}, used {effect.n_used} of {effect.n_subjects} subjects"
        )
        return effect

    def _diagnostics(self, effect: EffectEstimate | None) -> list[str]:
        messages = []
        if effect is not None and effect.n_dropped > 0:
            messages.append(f"{effect.n_dropped} subject(s) dropped for undefined censoring weights")
        return messages

    def get_power_analytical(self, sample_sizes: list[int]) -> RMSTPowerResult:
        """
        Closed-form power at each design size.

        Parameters
        ----------
        sample_sizes : list[int]
            Sizes per arm ('linear', 'gam', 'dependent') or per stratum
            ('additive', 'multiplicative').

        Returns
        -------
        RMSTPowerResult
        """
        sample_sizes = self.__check_sample_sizes(sample_sizes)
        effect = self.effect
        summary = power_table(effect, sample_sizes, self._alpha)
        summary.insert(0, "model", self._model)
        return RMSTPowerResult(results_summary=summary, effect=effect, diagnostics=self._diagnostics(effect))

    def get_power_boot(
        self, sample_sizes: list[int], should_stop: Callable[[], bool] | None = None
    ) -> RMSTPowerResult:
        """
        Bootstrap power at each design size.

        Parameters
        ----------
        sample_sizes : list[int]
            Sizes per arm or per stratum.
        should_stop : callable, optional
            Polled between replicate batches; returning True cancels the
            remaining replicates.

        Returns
        -------
        RMSTPowerResult
            ``effect`` is None; the pilot data is only resampled, never fitted.
        """
        sample_sizes = self.__check_sample_sizes(sample_sizes)
        n_units = self._estimator.n_units(self._data)
        rows = []
        for n in sample_sizes:
            row = self._bootstrap_power(n, should_stop)
            row["total_n"] = n * n_units
            rows.append(row)

        summary = pd.DataFrame(rows)
        summary.insert(0, "model", self._model)
        summary.insert(2, "size_unit", self._estimator.size_unit)

        diagnostics = []
        for row in rows:
            if row["unreliable"]:
                diagnostics.append(
                    f"n={row['sample_size']}: {row['failure_rate']:.1%} of replicates failed, power is unreliable"
                )
            if row["cancelled"]:
                n_run = row["n_valid"] + row["n_failed"]
                diagnostics.append(f"n={row['sample_size']}: simulation cancelled after {n_run} replicates")

        return RMSTPowerResult(results_summary=summary, diagnostics=diagnostics)

    def find_sample_size_analytical(
        self,
        target_power: float = 0.80,
        n_start: int = 50,
        n_step: int = 25,
        max_n_per_arm: int = 2000,
    ) -> RMSTPowerResult:
        """
        Smallest design size on the grid n_start + k * n_step whose analytic
        power reaches ``target_power``.

        Returns
        -------
        RMSTPowerResult
            Summary with required_n, achieved_power and status.
        """
        effect = self.effect

        def power_fn(n: int) -> float:
            return analytic_power(effect.coefficient, effect.variance, n * effect.n_units, self._alpha)

        search = sample_size_search(
            power_fn,
            target_power=target_power,
            n_start=n_start,
            n_step=n_step,
            max_n=max_n_per_arm,
            logger=self._logger,
        )
        return self.__search_result(search, target_power, "analytical", effect)

    def find_sample_size_boot(
        self,
        target_power: float = 0.80,
        n_start: int = 50,
        n_step: int = 25,
        max_n_per_arm: int = 2000,
        patience: int = 5,
        should_stop: Callable[[], bool] | None = None,
    ) -> RMSTPowerResult:
        """
        Smallest design size whose bootstrap power reaches ``target_power``.
        Stops early when the power has not improved for ``patience``
        consecutive design sizes.

        Returns
        -------
        RMSTPowerResult
            Summary with required_n, achieved_power and status; the trace
            carries the replicate diagnostics of every evaluated size. No pilot
            fit is made, so ``effect`` is None and the summary's effect and
            variance are NaN.
        """
        boot_rows = {}

        def power_fn(n: int) -> float:
            boot_rows[n] = self._bootstrap_power(n, should_stop)
            return boot_rows[n]["power"]

        search = sample_size_search(
            power_fn,
            target_power=target_power,
            n_start=n_start,
            n_step=n_step,
            max_n=max_n_per_arm,
            patience=patience,
            logger=self._logger,
        )
        result = self.__search_result(search, target_power, "bootstrap")
        result.search_trace = pd.DataFrame([boot_rows[n] for n in search.trace["n"]])
        for row in boot_rows.values():
            if row["unreliable"]:
                result.diagnostics.append(
                    f"n={row['sample_size']}: {row['failure_rate']:.1%} of replicates failed, power is unreliable"
                )
        return result

    def __search_result(
        self, search, target_power: float, method: str, effect: EffectEstimate | None = None
    ) -> RMSTPowerResult:
        summary = pd.DataFrame(
            [
                {
                    "model": self._model,
                    "method": method,
                    "required_n": search.n,
                    "size_unit": self._estimator.size_unit,
                    "total_n": search.n * self._estimator.n_units(self._data),
                    "achieved_power": search.power,
                    "target_power": target_power,
                    "status": search.status.value,
                    "effect": effect.coefficient if effect is not None else np.nan,
                    "variance": effect.variance if effect is not None else np.nan,
                }
            ]
        )
        diagnostics = self._diagnostics(effect)
        if not search.succeeded:
            diagnostics.append(search.message)
        return RMSTPowerResult(
            results_summary=summary, effect=effect, search_trace=search.trace, diagnostics=diagnostics
        )

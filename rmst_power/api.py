"""
Function-style entry points. Each call builds an ``RMSTPowerSim`` from the
pilot data and option names used by the graphical front-end and report
generator, and returns an ``RMSTPowerResult``.
"""

import pandas as pd

from .power_sim import RMSTPowerResult, RMSTPowerSim


def _simulator(
    pilot_data: pd.DataFrame,
    time_var: str,
    status_var: str,
    arm_var: str,
    L: float,
    model: str,
    strata_var: str | None,
    dep_cens_status_var: str | list[str] | None,
    linear_terms: list[str] | None,
    smooth_terms: list[str] | None,
    alpha: float,
    **kwargs,
) -> RMSTPowerSim:
    return RMSTPowerSim(
        data=pilot_data,
        time_col=time_var,
        status_col=status_var,
        arm_col=arm_var,
        L=L,
        model=model,
        strata_col=strata_var,
        dep_cens_cols=dep_cens_status_var,
        linear_terms=linear_terms,
        smooth_terms=smooth_terms,
        alpha=alpha,
        **kwargs,
    )


def power_analytical(
    pilot_data: pd.DataFrame,
    time_var: str,
    status_var: str,
    arm_var: str,
    L: float,
    sample_sizes: list[int],
    model: str = "linear",
    strata_var: str | None = None,
    dep_cens_status_var: str | list[str] | None = None,
    linear_terms: list[str] | None = None,
    smooth_terms: list[str] | None = None,
    alpha: float = 0.05,
) -> RMSTPowerResult:
    """Analytic power at each of ``sample_sizes``."""
    sim = _simulator(
        pilot_data, time_var, status_var, arm_var, L, model, strata_var, dep_cens_status_var,
        linear_terms, smooth_terms, alpha,
    )
    return sim.get_power_analytical(sample_sizes)


def power_boot(
    pilot_data: pd.DataFrame,
    time_var: str,
    status_var: str,
    arm_var: str,
    L: float,
    sample_sizes: list[int],
    model: str = "linear",
    strata_var: str | None = None,
    dep_cens_status_var: str | list[str] | None = None,
    linear_terms: list[str] | None = None,
    smooth_terms: list[str] | None = None,
    alpha: float = 0.05,
    n_sim: int = 500,
    parallel_cores: int = 1,
    seed: int | None = None,
) -> RMSTPowerResult:
    """Bootstrap power at each of ``sample_sizes``."""
    sim = _simulator(
        pilot_data, time_var, status_var, arm_var, L, model, strata_var, dep_cens_status_var,
        linear_terms, smooth_terms, alpha, nsim=n_sim, n_jobs=parallel_cores, seed=seed,
    )
    return sim.get_power_boot(sample_sizes)


def ss_analytical(
    pilot_data: pd.DataFrame,
    time_var: str,
    status_var: str,
    arm_var: str,
    L: float,
    model: str = "linear",
    strata_var: str | None = None,
    dep_cens_status_var: str | list[str] | None = None,
    linear_terms: list[str] | None = None,
    smooth_terms: list[str] | None = None,
    alpha: float = 0.05,
    target_power: float = 0.80,
    n_start: int = 50,
    n_step: int = 25,
    max_n_per_arm: int = 2000,
) -> RMSTPowerResult:
    """Sample size search with the analytic power."""
    sim = _simulator(
        pilot_data, time_var, status_var, arm_var, L, model, strata_var, dep_cens_status_var,
        linear_terms, smooth_terms, alpha,
    )
    return sim.find_sample_size_analytical(
        target_power=target_power, n_start=n_start, n_step=n_step, max_n_per_arm=max_n_per_arm
    )


def ss_boot(
    pilot_data: pd.DataFrame,
    time_var: str,
    status_var: str,
    arm_var: str,
    L: float,
    model: str = "linear",
    strata_var: str | None = None,
    dep_cens_status_var: str | list[str] | None = None,
    linear_terms: list[str] | None = None,
    smooth_terms: list[str] | None = None,
    alpha: float = 0.05,
    target_power: float = 0.80,
    n_start: int = 50,
    n_step: int = 25,
    max_n_per_arm: int = 2000,
    patience: int = 5,
    n_sim: int = 500,
    parallel_cores: int = 1,
    seed: int | None = None,
) -> RMSTPowerResult:
    """Sample size search with the bootstrap power."""
    sim = _simulator(
        pilot_data, time_var, status_var, arm_var, L, model, strata_var, dep_cens_status_var,
        linear_terms, smooth_terms, alpha, nsim=n_sim, n_jobs=parallel_cores, seed=seed,
    )
    return sim.find_sample_size_boot(
        target_power=target_power,
        n_start=n_start,
        n_step=n_step,
        max_n_per_arm=max_n_per_arm,
        patience=patience,
    )

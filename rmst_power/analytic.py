"""
Closed-form power from a pilot effect estimate.
"""

import numpy as np
import pandas as pd
from scipy.stats import norm

from .estimators import EffectEstimate


def analytic_power(coefficient: float, variance: float, n: float, alpha: float = 0.05) -> float:
    """
    Power of the two-sided Wald test of the arm coefficient for N subjects.

    Parameters
    ----------
    coefficient : float
        Effect estimate.
    variance : float
        Asymptotic variance of the estimate for N = 1.
    n : float
        Total number of subjects N.
    alpha : float
        Significance level.

    Returns
    -------
    float
        Phi(|coefficient| / sqrt(variance / N) - z_{1 - alpha / 2})
    """
    standard_error = np.sqrt(variance / n)
    return float(norm.cdf(abs(coefficient) / standard_error - norm.ppf(1 - alpha / 2)))


def power_table(effect: EffectEstimate, sample_sizes: list[int], alpha: float = 0.05) -> pd.DataFrame:
    """
    One row per design size. Design sizes are in the model's sizing unit
    (per arm or per stratum) and are converted to N with ``effect.n_units``.
    """
    rows = []
    for n in sample_sizes:
        total_n = n * effect.n_units
        rows.append(
            {
                "sample_size": n,
                "size_unit": effect.size_unit,
                "total_n": total_n,
                "power": analytic_power(effect.coefficient, effect.variance, total_n, alpha),
            }
        )
    return pd.DataFrame(rows)

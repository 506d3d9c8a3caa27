"""Shared simulated pilot datasets."""

import numpy as np
import pandas as pd
import pytest

from rmst_power.utils import VariableRoles, get_logger, validate_pilot_data

L = 365.0


def simulate_pilot(n_per_arm=100, log_hr=-0.5, n_strata=4, dependent=False, seed=1):
    """Exponential event times with administrative (and optionally dependent) censoring."""
    rng = np.random.default_rng(seed)
    n = 2 * n_per_arm
    arm = np.repeat([0, 1], n_per_arm)
    stratum = np.tile(np.arange(n_strata), n // n_strata + 1)[:n]
    age = rng.normal(60, 10, n)

    rate = np.exp(log_hr * arm + 0.02 * (age - 60) + 0.15 * stratum) / 300
    event_time = rng.exponential(1 / rate)
    admin_time = rng.uniform(200, 900, n)
    dep_time = rng.exponential(1500 * np.exp(-0.5 * arm)) if dependent else np.full(n, np.inf)

    time = np.minimum.reduce([event_time, admin_time, dep_time])
    return pd.DataFrame(
        {
            "os_time": np.round(time, 1),
            "os_event": (event_time == time).astype(int),
            "dep_cens": (dep_time == time).astype(int),
            "treatment": arm,
            "site": [f"site_{s}" for s in stratum],
            "age": age,
        }
    )


def canonical(data, model="linear", **roles):
    """Canonical frame the estimators consume."""
    roles = VariableRoles(time_col="os_time", status_col="os_event", arm_col="treatment", **roles)
    return validate_pilot_data(data, roles, L, model, get_logger("test"))


@pytest.fixture
def pilot_data():
    return simulate_pilot()


@pytest.fixture
def null_pilot_data():
    """Both arms carry the same subjects, so the pilot effect is exactly zero."""
    control = simulate_pilot(log_hr=0.0, seed=7)
    control = control[control["treatment"] == 0]
    return pd.concat([control, control.assign(treatment=1)], ignore_index=True)


@pytest.fixture
def dependent_pilot_data():
    return simulate_pilot(dependent=True, seed=3)

"""
Example: power and sample size for an RMST comparison from a pilot study
"""

import numpy as np
import pandas as pd

from rmst_power import RMSTPowerSim

# %% Simulate a pilot study
# Exponential survival, treatment lowers the hazard by 40%, uniform follow-up

rng = np.random.default_rng(42)
n = 120

pilot = pd.DataFrame(
    {
        "treatment": np.repeat([0, 1], n // 2),
        "age": rng.normal(62, 9, n),
        "center": rng.choice(["north", "south", "east"], n),
    }
)
hazard = np.exp(np.log(0.6) * pilot["treatment"] + 0.02 * (pilot["age"] - 62)) / 400
event_time = rng.exponential(1 / hazard)
follow_up = rng.uniform(300, 1000, n)
pilot["months"] = np.minimum(event_time, follow_up)
pilot["death"] = (event_time <= follow_up).astype(int)

# Example 1: analytic power curve
print("Example 1: Linear IPCW model, analytic power")
print("-" * 50)
sim = RMSTPowerSim(
    data=pilot,
    time_col="months",
    status_col="death",
    arm_col="treatment",
    L=365,
    linear_terms=["age"],
)
result = sim.get_power_analytical(sample_sizes=[50, 100, 200, 400])
print(result.results_summary)
print()

# Example 2: sample size for 80% power
print("Example 2: Analytic sample size search")
print("-" * 50)
result = sim.find_sample_size_analytical(target_power=0.80, n_start=50, n_step=10, max_n_per_arm=2000)
print(result.results_summary)
print()

# Example 3: bootstrap power stratified by center, 4 worker processes
print("Example 3: Additive stratified model, bootstrap power")
print("-" * 50)
sim_strat = RMSTPowerSim(
    data=pilot,
    time_col="months",
    status_col="death",
    arm_col="treatment",
    L=365,
    model="additive",
    strata_col="center",
    nsim=300,
    n_jobs=4,
    seed=2024,
)
result = sim_strat.find_sample_size_boot(target_power=0.80, n_start=40, n_step=20, max_n_per_arm=400, patience=4)
print(result.results_summary)
print(result.search_trace)
for message in result.diagnostics:
    print(message)

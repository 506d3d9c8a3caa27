"""
Iterative sample size search shared by the analytic and bootstrap calculators.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np
import pandas as pd

from .exceptions import DataValidationError
from .utils import get_logger, log_and_raise_error


class SearchStatus(Enum):
    SEARCHING = "searching"
    SUCCEEDED = "succeeded"
    EXHAUSTED_MAX_N = "exhausted_max_n"
    STALLED = "stalled"


@dataclass(frozen=True)
class SearchState:
    """
    Running state of one search. ``best_n``/``best_power`` track the highest
    power seen so far; ``stagnation_count`` counts consecutive evaluations that
    did not exceed it.
    """

    current_n: int
    best_n: int | None = None
    best_power: float = 0.0
    stagnation_count: int = 0
    status: SearchStatus = SearchStatus.SEARCHING


@dataclass
class SearchResult:
    status: SearchStatus
    n: int
    power: float
    message: str
    trace: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def succeeded(self) -> bool:
        return self.status is SearchStatus.SUCCEEDED


def advance(
    state: SearchState,
    power: float,
    target_power: float,
    n_step: int,
    max_n: int,
    patience: int | None = None,
) -> SearchState:
    """
    Apply one transition after evaluating ``power`` at ``state.current_n``.

    Order of checks: success, exhausted maximum, stagnation (only when
    ``patience`` is set), otherwise step forward.
    """
    n = state.current_n
    if power > state.best_power or state.best_n is None and not np.isnan(power):
        best_n, best_power, stagnation = n, power, 0
    else:
        best_n, best_power, stagnation = state.best_n, state.best_power, state.stagnation_count + 1

    updated = replace(state, best_n=best_n, best_power=best_power, stagnation_count=stagnation)

    if power >= target_power:
        return replace(updated, best_n=n, best_power=power, status=SearchStatus.SUCCEEDED)
    if n + n_step > max_n:
        return replace(updated, status=SearchStatus.EXHAUSTED_MAX_N)
    if patience is not None and stagnation >= patience:
        return replace(updated, status=SearchStatus.STALLED)
    return replace(updated, current_n=n + n_step)


def sample_size_search(
    power_fn: Callable[[int], float],
    target_power: float = 0.8,
    n_start: int = 50,
    n_step: int = 25,
    max_n: int = 2000,
    patience: int | None = None,
    logger: logging.Logger | None = None,
) -> SearchResult:
    """
    Find the smallest n in n_start, n_start + n_step, ... <= max_n whose power
    reaches ``target_power``.

    Parameters
    ----------
    power_fn : callable
        Returns the power for a design size n.
    target_power : float
        Power to reach; equality counts as success.
    n_start, n_step, max_n : int
        Grid of design sizes to try.
    patience : int, optional
        Consecutive non-improving evaluations tolerated before stopping
        (bootstrap searches). ``None`` disables the stagnation rule.

    Returns
    -------
    SearchResult
        Terminal status, chosen n and its power, and the evaluation trace.
    """
    logger = logger or get_logger("Sample Size Search")

    if not 0 < target_power < 1:
        log_and_raise_error(logger, "target_power must be between 0 and 1", DataValidationError)
    if n_start < 1 or n_step < 1:
        log_and_raise_error(logger, "n_start and n_step must be positive integers", DataValidationError)
    if max_n < n_start:
        log_and_raise_error(logger, f"max_n ({max_n}) is smaller than n_start ({n_start})", DataValidationError)
    if patience is not None and patience < 1:
        log_and_raise_error(logger, "patience must be a positive integer", DataValidationError)

    state = SearchState(current_n=n_start)
    trace = []
    while state.status is SearchStatus.SEARCHING:
        n = state.current_n
        power = power_fn(n)
        trace.append({"n": n, "power": power})
        logger.info(f"n={n}: power={power:.3f}")
        state = advance(state, power, target_power, n_step, max_n, patience)

    best_n = state.best_n if state.best_n is not None else state.current_n
    best_power = state.best_power if state.best_n is not None else np.nan

    if state.status is SearchStatus.SUCCEEDED:
        message = f"Target power {target_power} reached at n={best_n} (power={best_power:.3f})"
        logger.info(message)
    elif state.status is SearchStatus.EXHAUSTED_MAX_N:
        message = (
            f"Could not achieve target power {target_power} within max n {max_n}; "
            f"best n={best_n} with power {best_power:.3f}"
        )
        logger.warning(message)
    else:
        message = (
            f"Power did not improve for {patience} consecutive steps; "
            f"best n={best_n} with power {best_power:.3f}"
        )
        logger.warning(message)

    return SearchResult(
        status=state.status, n=best_n, power=best_power, message=message, trace=pd.DataFrame(trace)
    )

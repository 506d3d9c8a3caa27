"""
Collection of helper methods: logging, error reporting, and the mapping from
user column names to the canonical pilot frame used by every estimator.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .exceptions import DataValidationError

TIME = "time"
STATUS = "status"
ARM = "arm"
STRATUM = "stratum"

STRATIFIED_MODELS = ("additive", "multiplicative")
MODELS = ("linear", "additive", "multiplicative", "gam", "dependent")


def get_logger(name: str) -> logging.Logger:
    """ "
    Get a logger with the specified name.

    :param name: The name of the logger.
    :return: The logger.
    """

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    for handler in logger.handlers[::-1]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    formatter = logging.Formatter(fmt="%(asctime)s %(message)s", datefmt="%d/%m/%Y %I:%M:%S %p")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.propagate = False

    return logger


def log_and_raise_error(
    logger: logging.Logger, message: str, exception_type: type[Exception] = DataValidationError
) -> None:
    """ "
    Logs an error message and raises an exception of the specified type.

    :param message: The error message to log and raise.
    :param exception_type: The type of exception to raise (default is DataValidationError).
    """

    logger.error(message)
    raise exception_type(message)


def ensure_list(item: str | list[str] | None) -> list[str]:
    if item is None:
        return []
    if isinstance(item, str):
        return [item]
    return list(item)


@dataclass(frozen=True)
class VariableRoles:
    """
    Column roles of the pilot dataset.

    Parameters
    ----------
    time_col : str
        Observed follow-up time.
    status_col : str
        Primary event indicator (1 = event, 0 = censored).
    arm_col : str
        Treatment arm indicator (0/1).
    strata_col : str, optional
        Stratum label, required by the stratified models.
    dep_cens_cols : list[str]
        Dependent-censoring cause indicators, one column per cause.
    linear_terms : list[str]
        Covariates entering linearly.
    smooth_terms : list[str]
        Covariates entering through spline terms (GAM model only).
    """

    time_col: str
    status_col: str
    arm_col: str
    strata_col: str | None = None
    dep_cens_cols: list[str] = field(default_factory=list)
    linear_terms: list[str] = field(default_factory=list)
    smooth_terms: list[str] = field(default_factory=list)

    @property
    def dep_names(self) -> list[str]:
        return [f"dep_{i + 1}" for i in range(len(self.dep_cens_cols))]

    @property
    def linear_names(self) -> list[str]:
        return [f"lin_{i + 1}" for i in range(len(self.linear_terms))]

    @property
    def smooth_names(self) -> list[str]:
        return [f"sm_{i + 1}" for i in range(len(self.smooth_terms))]

    def required_columns(self) -> list[str]:
        return (
            [self.time_col, self.status_col, self.arm_col]
            + ([self.strata_col] if self.strata_col is not None else [])
            + self.dep_cens_cols
            + self.linear_terms
            + self.smooth_terms
        )


def _is_binary(series: pd.Series) -> bool:
    return set(pd.unique(series)).issubset({0, 1})


def validate_pilot_data(
    data: pd.DataFrame, roles: VariableRoles, L: float, model: str, logger: logging.Logger
) -> pd.DataFrame:
    """
    Check the pilot data against the model requirements and return the
    canonical frame (columns ``time``, ``status``, ``arm``, ``stratum``,
    ``dep_k``, ``lin_k``, ``sm_k``).

    Raises
    ------
    DataValidationError
        On any violation; nothing is repaired silently.
    """
    if model not in MODELS:
        log_and_raise_error(logger, f"Unknown model '{model}'. Choose one of {list(MODELS)}")

    if not isinstance(data, pd.DataFrame) or data.empty:
        log_and_raise_error(logger, "Pilot data must be a non-empty pandas DataFrame!")

    missing_columns = set(roles.required_columns()) - set(data.columns)
    if missing_columns:
        log_and_raise_error(
            logger, f"The following required columns are missing from the dataframe: {missing_columns}"
        )

    if model in STRATIFIED_MODELS and roles.strata_col is None:
        log_and_raise_error(logger, f"Model '{model}' requires strata_col")
    if model == "dependent" and len(roles.dep_cens_cols) == 0:
        log_and_raise_error(logger, "Model 'dependent' requires at least one dependent censoring status column")
    if model != "dependent" and len(roles.dep_cens_cols) > 0:
        log_and_raise_error(logger, "Dependent censoring columns are only used by model 'dependent'")
    if model != "gam" and len(roles.smooth_terms) > 0:
        log_and_raise_error(logger, "smooth_terms are only meaningful for model 'gam'")

    core = [roles.time_col, roles.status_col, roles.arm_col] + roles.dep_cens_cols
    if data[core].isna().any().any():
        log_and_raise_error(logger, f"Missing values found in columns {core}")

    covariates = roles.linear_terms + roles.smooth_terms
    if any(not pd.api.types.is_numeric_dtype(data[c]) for c in covariates):
        log_and_raise_error(logger, "Covariates should be numeric, for categorical columns use dummy variables!")
    if covariates and data[covariates].isna().any().any():
        log_and_raise_error(logger, f"Missing values found in covariates {covariates}")

    if not pd.api.types.is_numeric_dtype(data[roles.time_col]):
        log_and_raise_error(logger, f"Time column '{roles.time_col}' must be numeric")
    time = data[roles.time_col].astype(float)
    if (time < 0).any():
        log_and_raise_error(logger, "Observed times must be non-negative")

    for col in [roles.status_col, roles.arm_col] + roles.dep_cens_cols:
        if not _is_binary(data[col]):
            log_and_raise_error(logger, f"Column '{col}' must only contain 0/1 values")

    if data[roles.arm_col].nunique() < 2:
        log_and_raise_error(logger, "Both treatment arms must be present in the pilot data")

    if roles.dep_cens_cols:
        flags = data[[roles.status_col] + roles.dep_cens_cols].sum(axis=1)
        if (flags > 1).any():
            log_and_raise_error(logger, "Each subject must have at most one event or censoring cause flagged")

    if model in STRATIFIED_MODELS:
        if data[roles.strata_col].isna().any():
            log_and_raise_error(logger, f"Missing values found in strata column '{roles.strata_col}'")
        if data[roles.strata_col].nunique() < 2:
            log_and_raise_error(logger, "Stratified models need at least two strata")

    if not np.isfinite(L) or L <= 0:
        log_and_raise_error(logger, f"Truncation horizon L must be positive, got {L}")
    max_time = time.max()
    if L > max_time:
        log_and_raise_error(
            logger,
            f"Truncation horizon L={L} exceeds the largest observed time {max_time}; "
            "the RMST would be extrapolated beyond the pilot data",
        )

    frame = pd.DataFrame(
        {
            TIME: time.to_numpy(),
            STATUS: data[roles.status_col].astype(int).to_numpy(),
            ARM: data[roles.arm_col].astype(int).to_numpy(),
        }
    )
    if roles.strata_col is not None:
        frame[STRATUM] = data[roles.strata_col].to_numpy()
    for name, col in zip(roles.dep_names, roles.dep_cens_cols, strict=True):
        frame[name] = data[col].astype(int).to_numpy()
    for name, col in zip(roles.linear_names, roles.linear_terms, strict=True):
        frame[name] = data[col].astype(float).to_numpy()
    for name, col in zip(roles.smooth_names, roles.smooth_terms, strict=True):
        frame[name] = data[col].astype(float).to_numpy()

    return frame

from .api import power_analytical, power_boot, ss_analytical, ss_boot
from .estimators import EffectEstimate, get_estimator
from .exceptions import DataValidationError, EstimationFailure, RMSTPowerError
from .power_sim import RMSTPowerResult, RMSTPowerSim
from .search import SearchStatus, sample_size_search

__all__ = [
    "DataValidationError",
    "EffectEstimate",
    "EstimationFailure",
    "RMSTPowerError",
    "RMSTPowerResult",
    "RMSTPowerSim",
    "SearchStatus",
    "get_estimator",
    "power_analytical",
    "power_boot",
    "sample_size_search",
    "ss_analytical",
    "ss_boot",
]

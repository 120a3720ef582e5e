"""robustreg: robust linear regression fitted by IRLS.

M-, S-, MM-, tau- and generalized M-quantile estimators, with Cholesky or
conjugate gradient solvers, optional ridge penalty and a subsampling search
for the starting point of non-convex fits.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "ArctanLoss",
    "CapabilityError",
    "CauchyLoss",
    "ConvergenceError",
    "DimensionMismatch",
    "EstimationResult",
    "ExpectileEstimator",
    "FairLoss",
    "GeneralizedQuantileEstimator",
    "HuberLoss",
    "IRLSConfig",
    "L1L2Loss",
    "L2Loss",
    "LineSearchError",
    "LogcoshLoss",
    "MEstimator",
    "MMEstimator",
    "ResamplingConfig",
    "RobustLinearModel",
    "SEstimator",
    "ScaleConvergenceError",
    "TauEstimator",
    "TukeyLoss",
    "WelschLoss",
    "modelsummary",
    "rlm",
    "summary",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "RobustLinearModel": ("robustreg.estimators.rlm", "RobustLinearModel"),
    "rlm": ("robustreg.estimators.rlm", "rlm"),
    "MEstimator": ("robustreg.estimators.robust", "MEstimator"),
    "SEstimator": ("robustreg.estimators.robust", "SEstimator"),
    "MMEstimator": ("robustreg.estimators.robust", "MMEstimator"),
    "TauEstimator": ("robustreg.estimators.robust", "TauEstimator"),
    "GeneralizedQuantileEstimator": ("robustreg.estimators.robust", "GeneralizedQuantileEstimator"),
    "ExpectileEstimator": ("robustreg.estimators.robust", "ExpectileEstimator"),
    "EstimationResult": ("robustreg.estimators.base", "EstimationResult"),
    "IRLSConfig": ("robustreg.estimators.base", "IRLSConfig"),
    "ResamplingConfig": ("robustreg.estimators.base", "ResamplingConfig"),
    "L2Loss": ("robustreg.core.losses", "L2Loss"),
    "HuberLoss": ("robustreg.core.losses", "HuberLoss"),
    "L1L2Loss": ("robustreg.core.losses", "L1L2Loss"),
    "FairLoss": ("robustreg.core.losses", "FairLoss"),
    "LogcoshLoss": ("robustreg.core.losses", "LogcoshLoss"),
    "ArctanLoss": ("robustreg.core.losses", "ArctanLoss"),
    "CauchyLoss": ("robustreg.core.losses", "CauchyLoss"),
    "TukeyLoss": ("robustreg.core.losses", "TukeyLoss"),
    "WelschLoss": ("robustreg.core.losses", "WelschLoss"),
    "CapabilityError": ("robustreg.core.errors", "CapabilityError"),
    "ConvergenceError": ("robustreg.core.errors", "ConvergenceError"),
    "DimensionMismatch": ("robustreg.core.errors", "DimensionMismatch"),
    "LineSearchError": ("robustreg.core.errors", "LineSearchError"),
    "ScaleConvergenceError": ("robustreg.core.errors", "ScaleConvergenceError"),
    "summary": ("robustreg.output.summary", "summary"),
    "modelsummary": ("robustreg.output.summary", "modelsummary"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'robustreg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))

"""Estimator exports with lazy loading.

Robust estimator variants, the model class and result containers. Uses lazy
imports to avoid circular dependencies with :mod:`robustreg.core`.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "AbstractEstimator",
    "EstimationResult",
    "EstimatorKind",
    "ExpectileEstimator",
    "GeneralizedQuantileEstimator",
    "IRLSConfig",
    "MEstimator",
    "MMEstimator",
    "ResamplingConfig",
    "RobustLinearModel",
    "SEstimator",
    "TauEstimator",
    "rlm",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "AbstractEstimator": ("robustreg.estimators.base", "AbstractEstimator"),
    "EstimationResult": ("robustreg.estimators.base", "EstimationResult"),
    "EstimatorKind": ("robustreg.estimators.base", "EstimatorKind"),
    "IRLSConfig": ("robustreg.estimators.base", "IRLSConfig"),
    "ResamplingConfig": ("robustreg.estimators.base", "ResamplingConfig"),
    "MEstimator": ("robustreg.estimators.robust", "MEstimator"),
    "SEstimator": ("robustreg.estimators.robust", "SEstimator"),
    "MMEstimator": ("robustreg.estimators.robust", "MMEstimator"),
    "TauEstimator": ("robustreg.estimators.robust", "TauEstimator"),
    "GeneralizedQuantileEstimator": ("robustreg.estimators.robust", "GeneralizedQuantileEstimator"),
    "ExpectileEstimator": ("robustreg.estimators.robust", "ExpectileEstimator"),
    "RobustLinearModel": ("robustreg.estimators.rlm", "RobustLinearModel"),
    "rlm": ("robustreg.estimators.rlm", "rlm"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'robustreg.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))

"""Base types shared by robust estimators and models.

This module defines the estimator kind tag, the abstract estimator contract,
the IRLS and resampling configuration data structures, and the standardized
estimation results container.
"""

# robustreg/estimators/base.py
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from numpy.typing import ArrayLike

    from robustreg.core.losses import LossFunction

__all__ = [
    "AbstractEstimator",
    "EstimationResult",
    "EstimatorKind",
    "IRLSConfig",
    "ResamplingConfig",
]


class EstimatorKind(enum.Enum):
    """Tag selecting the fitting engine of an estimator."""

    M = "M"
    S = "S"
    MM = "MM"
    TAU = "tau"
    QUANTILE = "quantile"

    @property
    def scale_coupled(self) -> bool:
        """True for kinds whose engine re-estimates the scale."""
        return self in (EstimatorKind.S, EstimatorKind.MM, EstimatorKind.TAU)


class AbstractEstimator(ABC):
    """Capability set consumed by the response and the IRLS engines.

    All functions take residuals already divided by the scale.
    """

    kind: EstimatorKind

    @abstractmethod
    def rho(self, x: ArrayLike) -> Any: ...

    @abstractmethod
    def psi(self, x: ArrayLike) -> Any: ...

    @abstractmethod
    def psider(self, x: ArrayLike) -> Any: ...

    @abstractmethod
    def weight(self, x: ArrayLike) -> Any: ...

    @abstractmethod
    def is_bounded(self) -> bool: ...

    @abstractmethod
    def estimator_norm(self) -> float: ...

    @property
    def scale_loss(self) -> LossFunction:
        """Bounded loss used by the M-scale."""
        raise NotImplementedError(f"{type(self).__name__} does not estimate a scale")


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------
@dataclass
class IRLSConfig:
    """Convergence controls of the IRLS engines.

    Notes
    -----
    - ``rtol`` is relative to the previous deviance (or scale); ``atol`` is
      the absolute floor of the convergence band.
    - ``minstepfac``: the line search fails once the step factor drops to
      or under this value.
    - ``miniter``: S/MM/tau iterations up to this count may reset the scale
      to its upper bound once instead of failing the line search.

    """

    maxiter: int = 30
    minstepfac: float = 1e-3
    atol: float = 1e-6
    rtol: float = 1e-5
    miniter: int = 2

    def validate(self) -> IRLSConfig:
        if int(self.maxiter) < 1:
            raise ValueError("maxiter must be positive")
        if not (0.0 < float(self.minstepfac) < 1.0):
            raise ValueError("minstepfac must be in (0, 1)")
        if self.atol < 0 or self.rtol < 0:
            raise ValueError("atol and rtol must be nonnegative")
        if int(self.miniter) < 0:
            raise ValueError("miniter must be nonnegative")
        return self

    def updated(self, **overrides: Any) -> IRLSConfig:
        """Return a copy with the known fields in ``overrides`` replaced."""
        names = {f.name for f in fields(self)}
        unknown = set(overrides) - names
        if unknown:
            raise TypeError(f"unknown IRLS options: {sorted(unknown)}")
        return replace(self, **overrides).validate()


@dataclass
class ResamplingConfig:
    """Subsampling search for the starting point of S/MM/tau fits.

    Reproducibility:
        * Use `seed` (or pass an explicit ``numpy.random.Generator``) to make
          the subsample draws deterministic.

    """

    prop_outliers: float = 0.5
    alpha: float = 0.05
    # None: derived from the probabilistic guarantee (see resampling_min_n)
    n_samples: int | None = None
    n_subsamples: int = 10
    # None: the number of coefficients
    n_points: int | None = None
    n_steps_beta: int = 2
    n_steps_sigma: int = 1
    seed: int | None = None

    def validate(self) -> ResamplingConfig:
        if not (0.0 <= self.prop_outliers < 1.0):
            raise ValueError("prop_outliers must be in [0, 1)")
        if not (0.0 < self.alpha < 1.0):
            raise ValueError("alpha must be in (0, 1)")
        if self.n_samples is not None and self.n_samples < 1:
            raise ValueError("n_samples must be positive")
        if self.n_subsamples < 1:
            raise ValueError("n_subsamples must be positive")
        if self.n_steps_beta < 1 or self.n_steps_sigma < 1:
            raise ValueError("n_steps_beta and n_steps_sigma must be positive")
        return self

    @classmethod
    def from_options(cls, options: ResamplingConfig | dict[str, Any] | None) -> ResamplingConfig:
        if options is None:
            return cls().validate()
        if isinstance(options, ResamplingConfig):
            return options.validate()
        return cls(**options).validate()


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass
class EstimationResult:
    """Container for estimation results.

    Stores parameter estimates, standard errors, and fit diagnostics.
    """

    params: pd.Series
    se: pd.Series | None = None
    n_obs: int | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"EstimationResult(k={len(self.params)}, n={self.n_obs}, {head})"

    @property
    def tvalues(self) -> pd.Series | None:
        if self.se is None:
            return None
        return self.params / self.se.replace(0.0, np.nan)

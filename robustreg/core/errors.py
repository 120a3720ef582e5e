"""Exception types raised by the fitting engine.

Convergence problems inside the IRLS engines are reported through
:class:`robustreg.core.irls.IRLSResult`; the exceptions below are what the
public model surface raises once a result is known to be a failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

__all__ = [
    "CapabilityError",
    "ConvergenceError",
    "DimensionMismatch",
    "LineSearchError",
    "ScaleConvergenceError",
]


class DimensionMismatch(ValueError):
    """Lengths of y, weights, offset or X rows are inconsistent."""


class CapabilityError(TypeError):
    """The estimator or predictor does not support the requested operation."""


class ConvergenceError(RuntimeError):
    """An iterative procedure ran out of iterations without meeting tolerance.

    Attributes
    ----------
    n_iter : int
        Iterations performed before giving up.
    value : float
        Last value of the monitored quantity (deviance, scale or tau-scale).
    reason : str
        Human readable diagnostic.
    """

    def __init__(self, reason: str, *, n_iter: int = 0, value: float = float("nan")) -> None:
        super().__init__(reason)
        self.reason = reason
        self.n_iter = int(n_iter)
        self.value = float(value)


class ScaleConvergenceError(ConvergenceError):
    """The M-scale fixed point did not converge."""


class LineSearchError(ConvergenceError):
    """The damped step factor fell below the minimum step threshold."""

    def __init__(
        self,
        reason: str,
        *,
        n_iter: int = 0,
        value: float = float("nan"),
        coef: NDArray[np.float64] | None = None,
    ) -> None:
        super().__init__(reason, n_iter=n_iter, value=value)
        self.coef = coef

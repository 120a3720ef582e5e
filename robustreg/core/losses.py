"""Loss functions for robust M-type estimation.

Each loss is parameterized by a tuning constant ``c`` and exposes vectorized
``rho``, ``psi`` (= rho'), ``psider`` (= psi') and ``weight`` (= psi(x)/x,
with its limit psi'(0) at zero). Residuals passed in are already divided by
the scale.

Tuning constants
----------------
``efficient_c``
    95% asymptotic efficiency under Gaussian errors (location M-estimation).
``high_breakdown_c``
    50% breakdown point of the M-scale with delta = 1/2 (bounded losses only).
``tau_efficient_c``
    95% efficiency of the tau-estimator when used as its second loss.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
from scipy import integrate
from scipy.stats import norm

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

__all__ = [
    "ArctanLoss",
    "CauchyLoss",
    "FairLoss",
    "HuberLoss",
    "L1L2Loss",
    "L2Loss",
    "LogcoshLoss",
    "LossFunction",
    "TukeyLoss",
    "WelschLoss",
]


def _ret(x: ArrayLike, out: NDArray[np.float64]) -> Any:
    """Return a Python float for scalar input, an array otherwise."""
    if np.ndim(x) == 0:
        return float(out)
    return out


def _ratio_or_one(num: NDArray[np.float64], den: NDArray[np.float64]) -> NDArray[np.float64]:
    """num / den with the value 1 where den == 0 (limit of f(u)/u at 0)."""
    safe = np.where(den == 0.0, 1.0, den)
    return np.where(den == 0.0, 1.0, num / safe)


class LossFunction:
    """Base class of the loss catalogue."""

    efficient_c: ClassVar[float] = 1.0
    high_breakdown_c: ClassVar[float | None] = None
    tau_efficient_c: ClassVar[float | None] = None
    name: ClassVar[str] = "loss"

    def __init__(self, c: float | None = None) -> None:
        c = self.efficient_c if c is None else float(c)
        if not (np.isfinite(c) and c > 0.0):
            raise ValueError(f"tuning constant must be positive, got {c}")
        self.c = float(c)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.c:.4g})"

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.c == other.c  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.c))

    # -- constructors --------------------------------------------------
    @classmethod
    def efficient(cls) -> LossFunction:
        return cls(cls.efficient_c)

    @classmethod
    def high_breakdown(cls) -> LossFunction:
        if cls.high_breakdown_c is None:
            raise ValueError(f"{cls.__name__} has no high-breakdown tuning constant")
        return cls(cls.high_breakdown_c)

    @classmethod
    def tau_efficient(cls) -> LossFunction:
        if cls.tau_efficient_c is None:
            raise ValueError(f"{cls.__name__} has no tau-efficient tuning constant")
        return cls(cls.tau_efficient_c)

    # -- capability set ------------------------------------------------
    def rho(self, x: ArrayLike) -> Any:
        xa = np.asarray(x, dtype=np.float64)
        return _ret(x, self._rho(xa / self.c))

    def psi(self, x: ArrayLike) -> Any:
        xa = np.asarray(x, dtype=np.float64)
        return _ret(x, self._psi(xa / self.c))

    def psider(self, x: ArrayLike) -> Any:
        xa = np.asarray(x, dtype=np.float64)
        return _ret(x, self._psider(xa / self.c))

    def weight(self, x: ArrayLike) -> Any:
        xa = np.asarray(x, dtype=np.float64)
        return _ret(x, self._weight(xa / self.c))

    def is_bounded(self) -> bool:
        return False

    def bound(self) -> float:
        """Supremum of rho; ``inf`` for unbounded losses."""
        return float("inf")

    def rho_normalized(self, x: ArrayLike) -> Any:
        """rho scaled to take values in [0, 1] (bounded losses only)."""
        if not self.is_bounded():
            raise ValueError(f"{self!r} is unbounded and has no normalized rho")
        xa = np.asarray(x, dtype=np.float64)
        return _ret(x, self._rho(xa / self.c) / self.bound())

    def estimator_norm(self) -> float:
        """Normalizing constant of the density proportional to exp(-rho)."""
        if self.is_bounded():
            return float("inf")
        val, _ = integrate.quad(lambda t: float(np.exp(-self.rho(t))), -np.inf, np.inf)
        return float(val)

    # The private kernels receive u = x / c and return values for x.
    def _rho(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        raise NotImplementedError

    def _psi(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        raise NotImplementedError

    def _psider(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        raise NotImplementedError

    def _weight(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        raise NotImplementedError


class L2Loss(LossFunction):
    """Least squares, rho(x) = x^2 / 2."""

    name = "L2"

    def __init__(self, c: float | None = None) -> None:  # noqa: ARG002
        super().__init__(1.0)

    def __repr__(self) -> str:
        return "L2Loss()"

    def _rho(self, u):
        return 0.5 * u * u

    def _psi(self, u):
        return u

    def _psider(self, u):
        return np.ones_like(u)

    def _weight(self, u):
        return np.ones_like(u)

    def estimator_norm(self) -> float:
        return float(np.sqrt(2.0 * np.pi))


class HuberLoss(LossFunction):
    name = "Huber"
    efficient_c = 1.345

    def _rho(self, u):
        c2 = self.c * self.c
        au = np.abs(u)
        return np.where(au <= 1.0, 0.5 * c2 * u * u, c2 * (au - 0.5))

    def _psi(self, u):
        return self.c * np.clip(u, -1.0, 1.0)

    def _psider(self, u):
        return np.where(np.abs(u) <= 1.0, 1.0, 0.0)

    def _weight(self, u):
        au = np.abs(u)
        return np.where(au <= 1.0, 1.0, 1.0 / np.where(au == 0.0, 1.0, au))

    def estimator_norm(self) -> float:
        c = self.c
        return float(
            np.sqrt(2.0 * np.pi) * (2.0 * norm.cdf(c) - 1.0) + 2.0 * np.exp(-0.5 * c * c) / c,
        )


class L1L2Loss(LossFunction):
    name = "L1L2"
    efficient_c = 1.287

    def _rho(self, u):
        return self.c * self.c * (np.sqrt(1.0 + u * u) - 1.0)

    def _psi(self, u):
        return self.c * u / np.sqrt(1.0 + u * u)

    def _psider(self, u):
        return (1.0 + u * u) ** -1.5

    def _weight(self, u):
        return 1.0 / np.sqrt(1.0 + u * u)


class FairLoss(LossFunction):
    name = "Fair"
    efficient_c = 1.400

    def _rho(self, u):
        au = np.abs(u)
        return self.c * self.c * (au - np.log1p(au))

    def _psi(self, u):
        return self.c * u / (1.0 + np.abs(u))

    def _psider(self, u):
        return 1.0 / (1.0 + np.abs(u)) ** 2

    def _weight(self, u):
        return 1.0 / (1.0 + np.abs(u))


class LogcoshLoss(LossFunction):
    name = "Logcosh"
    efficient_c = 1.2047

    def _rho(self, u):
        au = np.abs(u)
        # log(cosh(u)) without overflow
        return self.c * self.c * (au + np.log1p(np.exp(-2.0 * au)) - np.log(2.0))

    def _psi(self, u):
        return self.c * np.tanh(u)

    def _psider(self, u):
        t = np.tanh(u)
        return 1.0 - t * t

    def _weight(self, u):
        return _ratio_or_one(np.tanh(u), u)


class ArctanLoss(LossFunction):
    name = "Arctan"
    efficient_c = 0.919

    def _rho(self, u):
        return self.c * self.c * (u * np.arctan(u) - 0.5 * np.log1p(u * u))

    def _psi(self, u):
        return self.c * np.arctan(u)

    def _psider(self, u):
        return 1.0 / (1.0 + u * u)

    def _weight(self, u):
        return _ratio_or_one(np.arctan(u), u)


class CauchyLoss(LossFunction):
    """Cauchy loss: redescending psi but unbounded rho."""

    name = "Cauchy"
    efficient_c = 2.385

    def _rho(self, u):
        return 0.5 * self.c * self.c * np.log1p(u * u)

    def _psi(self, u):
        return self.c * u / (1.0 + u * u)

    def _psider(self, u):
        u2 = u * u
        return (1.0 - u2) / (1.0 + u2) ** 2

    def _weight(self, u):
        return 1.0 / (1.0 + u * u)


class TukeyLoss(LossFunction):
    """Tukey bisquare loss."""

    name = "Tukey"
    efficient_c = 4.685
    high_breakdown_c = 1.5476
    tau_efficient_c = 6.08

    def is_bounded(self) -> bool:
        return True

    def bound(self) -> float:
        return self.c * self.c / 6.0

    def _rho(self, u):
        inside = np.abs(u) <= 1.0
        v = 1.0 - u * u
        return np.where(inside, self.bound() * (1.0 - v * v * v), self.bound())

    def _psi(self, u):
        inside = np.abs(u) <= 1.0
        v = 1.0 - u * u
        return np.where(inside, self.c * u * v * v, 0.0)

    def _psider(self, u):
        inside = np.abs(u) <= 1.0
        u2 = u * u
        return np.where(inside, (1.0 - u2) * (1.0 - 5.0 * u2), 0.0)

    def _weight(self, u):
        inside = np.abs(u) <= 1.0
        v = 1.0 - u * u
        return np.where(inside, v * v, 0.0)


class WelschLoss(LossFunction):
    """Welsch (Leclerc) loss, rho(x) = c^2/2 (1 - exp(-(x/c)^2))."""

    name = "Welsch"
    efficient_c = 2.985
    high_breakdown_c = 0.8165

    def is_bounded(self) -> bool:
        return True

    def bound(self) -> float:
        return 0.5 * self.c * self.c

    def _rho(self, u):
        return self.bound() * -np.expm1(-u * u)

    def _psi(self, u):
        return self.c * u * np.exp(-u * u)

    def _psider(self, u):
        u2 = u * u
        return (1.0 - 2.0 * u2) * np.exp(-u2)

    def _weight(self, u):
        return np.exp(-u * u)

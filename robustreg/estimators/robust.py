"""Robust estimator variants: M, S, MM, tau and generalized M-quantile.

An estimator wraps one or two loss functions from :mod:`robustreg.core.losses`
and exposes the capability set of :class:`AbstractEstimator`. Its ``kind``
tag selects the IRLS engine used by :class:`RobustLinearModel`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import integrate

from robustreg.core.errors import CapabilityError
from robustreg.core.losses import L2Loss, LossFunction, TukeyLoss
from robustreg.estimators.base import AbstractEstimator, EstimatorKind

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike

__all__ = [
    "ExpectileEstimator",
    "GeneralizedQuantileEstimator",
    "MEstimator",
    "MMEstimator",
    "SEstimator",
    "TauEstimator",
    "is_quantile_capable",
    "set_quantile",
]


def _as_loss(loss: LossFunction | type[LossFunction], which: str) -> LossFunction:
    """Instantiate a loss class at the tuning constant named by ``which``."""
    if isinstance(loss, LossFunction):
        return loss
    if isinstance(loss, type) and issubclass(loss, LossFunction):
        return getattr(loss, which)()
    raise TypeError(f"expected a LossFunction instance or subclass, got {loss!r}")


def _require_bounded(loss: LossFunction, variant: str) -> LossFunction:
    if not loss.is_bounded():
        raise CapabilityError(
            f"{variant} requires a bounded loss (e.g. TukeyLoss), got {loss!r}",
        )
    return loss


def _bounded_family(loss: LossFunction | type[LossFunction], variant: str) -> type[LossFunction]:
    """Loss class of ``loss``, checked to be bounded before any tuning lookup."""
    if isinstance(loss, LossFunction):
        loss = type(loss)
    if not (isinstance(loss, type) and issubclass(loss, LossFunction)):
        raise TypeError(f"expected a LossFunction instance or subclass, got {loss!r}")
    _require_bounded(loss.efficient(), variant)
    return loss


class MEstimator(AbstractEstimator):
    """M-estimator: minimizes sum(rho(r_i / sigma)) with sigma held fixed."""

    kind = EstimatorKind.M

    def __init__(self, loss: LossFunction | type[LossFunction] = L2Loss) -> None:
        self.loss = _as_loss(loss, "efficient")

    def __repr__(self) -> str:
        return f"M-Estimator({self.loss!r})"

    def rho(self, x):
        return self.loss.rho(x)

    def psi(self, x):
        return self.loss.psi(x)

    def psider(self, x):
        return self.loss.psider(x)

    def weight(self, x):
        return self.loss.weight(x)

    def is_bounded(self) -> bool:
        return self.loss.is_bounded()

    def estimator_norm(self) -> float:
        return self.loss.estimator_norm()

    @property
    def scale_loss(self) -> LossFunction:
        return _require_bounded(self.loss, "scale estimation")


class SEstimator(AbstractEstimator):
    """S-estimator: minimizes the M-scale of the residuals."""

    kind = EstimatorKind.S

    def __init__(self, loss: LossFunction | type[LossFunction] = TukeyLoss) -> None:
        if isinstance(loss, type):
            loss = _bounded_family(loss, "S-Estimator")
        self.loss = _require_bounded(_as_loss(loss, "high_breakdown"), "S-Estimator")

    def __repr__(self) -> str:
        return f"S-Estimator({self.loss!r})"

    def rho(self, x):
        return self.loss.rho(x)

    def psi(self, x):
        return self.loss.psi(x)

    def psider(self, x):
        return self.loss.psider(x)

    def weight(self, x):
        return self.loss.weight(x)

    def is_bounded(self) -> bool:
        return True

    def estimator_norm(self) -> float:
        return float("inf")

    @property
    def scale_loss(self) -> LossFunction:
        return self.loss


class MMEstimator(AbstractEstimator):
    """MM-estimator: S-estimate of (sigma, beta) refined by an efficient M-estimate.

    The S-component uses the high-breakdown tuning constant and the
    M-component the efficient one; both share the same rho family.
    """

    kind = EstimatorKind.MM

    def __init__(
        self,
        loss: type[LossFunction] = TukeyLoss,
        *,
        c_s: float | None = None,
        c_m: float | None = None,
    ) -> None:
        loss = _bounded_family(loss, "MM-Estimator")
        self.s_loss = _require_bounded(
            loss(c_s) if c_s is not None else loss.high_breakdown(), "MM-Estimator",
        )
        self.m_loss = loss(c_m) if c_m is not None else loss.efficient()
        self._active = "S"

    def __repr__(self) -> str:
        return f"MM-Estimator({self.s_loss!r}, {self.m_loss!r}, active={self._active})"

    @property
    def active(self) -> str:
        return self._active

    def use_s(self) -> MMEstimator:
        self._active = "S"
        return self

    def use_m(self) -> MMEstimator:
        self._active = "M"
        return self

    @property
    def loss(self) -> LossFunction:
        return self.s_loss if self._active == "S" else self.m_loss

    def rho(self, x):
        return self.loss.rho(x)

    def psi(self, x):
        return self.loss.psi(x)

    def psider(self, x):
        return self.loss.psider(x)

    def weight(self, x):
        return self.loss.weight(x)

    def is_bounded(self) -> bool:
        return True

    def estimator_norm(self) -> float:
        return float("inf")

    @property
    def scale_loss(self) -> LossFunction:
        return self.s_loss


class TauEstimator(AbstractEstimator):
    """tau-estimator (Yohai & Zamar 1988).

    ``loss1`` (high breakdown) defines the M-scale s, ``loss2`` (efficient)
    defines the tau-scale ``tau^2 = s^2 mean(rho2(r/s))``. The IRLS weight
    ``w * weight1 + weight2`` mixes both through the factor

        w = sum(2 rho2(u) - psi2(u) u) / sum(psi1(u) u)

    computed jointly from all scaled residuals u. Both losses are used in
    their normalized form (sup rho = 1).
    """

    kind = EstimatorKind.TAU

    def __init__(
        self,
        loss: type[LossFunction] = TukeyLoss,
        *,
        c1: float | None = None,
        c2: float | None = None,
    ) -> None:
        loss = _bounded_family(loss, "tau-Estimator")
        self.loss1 = _require_bounded(
            loss(c1) if c1 is not None else loss.high_breakdown(), "tau-Estimator",
        )
        self.loss2 = _require_bounded(
            loss(c2) if c2 is not None else loss.tau_efficient(), "tau-Estimator",
        )
        self.w = 0.0

    def __repr__(self) -> str:
        return f"tau-Estimator({self.loss1!r}, {self.loss2!r})"

    def update_weight(
        self,
        res: ArrayLike | float,
        *,
        wts: Sequence[float] | None = None,
    ) -> float:
        """Recompute the efficiency factor from scaled residuals.

        A scalar argument sets the factor directly (``update_weight(0)``
        resets it).
        """
        if np.ndim(res) == 0:
            self.w = float(res)
            return self.w
        u = np.asarray(res, dtype=np.float64).reshape(-1)
        b1, b2 = self.loss1.bound(), self.loss2.bound()
        t = 2.0 * self.loss2.rho(u) / b2 - self.loss2.psi(u) * u / b2
        b = self.loss1.psi(u) * u / b1
        if wts is not None and len(wts) > 0:
            w = np.asarray(wts, dtype=np.float64).reshape(-1)
            t, b = w * t, w * b
        den = float(np.sum(b))
        self.w = float(np.sum(t)) / den if den != 0.0 else 0.0
        return self.w

    def rho(self, x):
        return self.w * self.loss1.rho(x) / self.loss1.bound() + self.loss2.rho(x) / self.loss2.bound()

    def psi(self, x):
        return self.w * self.loss1.psi(x) / self.loss1.bound() + self.loss2.psi(x) / self.loss2.bound()

    def psider(self, x):
        return (
            self.w * self.loss1.psider(x) / self.loss1.bound()
            + self.loss2.psider(x) / self.loss2.bound()
        )

    def weight(self, x):
        return (
            self.w * self.loss1.weight(x) / self.loss1.bound()
            + self.loss2.weight(x) / self.loss2.bound()
        )

    def is_bounded(self) -> bool:
        return True

    def estimator_norm(self) -> float:
        return float("inf")

    @property
    def scale_loss(self) -> LossFunction:
        return self.loss1


class GeneralizedQuantileEstimator(AbstractEstimator):
    """Generalized M-quantile estimator.

    Every capability of ``loss`` is multiplied by the asymmetric factor
    ``2 * quantile`` for nonnegative residuals and ``2 * (1 - quantile)``
    for negative ones, so ``quantile = 0.5`` reproduces the symmetric
    M-estimator. With the L2 loss this is the expectile regression.
    """

    kind = EstimatorKind.QUANTILE

    def __init__(
        self,
        loss: LossFunction | type[LossFunction] = L2Loss,
        quantile: float = 0.5,
    ) -> None:
        self.loss = _as_loss(loss, "efficient")
        self.quantile = quantile

    def __repr__(self) -> str:
        return f"M-Quantile-Estimator({self.loss!r}, {self.quantile:.4g})"

    @property
    def quantile(self) -> float:
        return self._quantile

    @quantile.setter
    def quantile(self, value: float) -> None:
        value = float(value)
        if not (0.0 < value < 1.0):
            raise ValueError(f"quantile should be in the interval (0, 1), got {value}")
        self._quantile = value

    def _qweight(self, x: ArrayLike) -> Any:
        xa = np.asarray(x, dtype=np.float64)
        q = np.where(xa >= 0.0, 2.0 * self._quantile, 2.0 * (1.0 - self._quantile))
        return float(q) if np.ndim(x) == 0 else q

    def rho(self, x):
        return self._qweight(x) * self.loss.rho(x)

    def psi(self, x):
        return self._qweight(x) * self.loss.psi(x)

    def psider(self, x):
        return self._qweight(x) * self.loss.psider(x)

    def weight(self, x):
        return self._qweight(x) * self.loss.weight(x)

    def is_bounded(self) -> bool:
        return False

    def estimator_norm(self) -> float:
        if self.loss.is_bounded():
            return float("inf")
        if self._quantile == 0.5:
            return self.loss.estimator_norm()
        val, _ = integrate.quad(lambda t: float(np.exp(-self.rho(t))), -np.inf, np.inf)
        return float(val)


def ExpectileEstimator(quantile: float = 0.5) -> GeneralizedQuantileEstimator:  # noqa: N802
    """Expectile regression: generalized M-quantile with the L2 loss."""
    return GeneralizedQuantileEstimator(L2Loss(), quantile)


def is_quantile_capable(est: AbstractEstimator) -> bool:
    return isinstance(est, GeneralizedQuantileEstimator)


def set_quantile(est: AbstractEstimator, quantile: float) -> None:
    """Assign a new quantile level, only for quantile-capable estimators."""
    if not is_quantile_capable(est):
        raise CapabilityError(
            f"quantile can be changed only for a GeneralizedQuantileEstimator, got {est!r}",
        )
    est.quantile = quantile  # type: ignore[attr-defined]

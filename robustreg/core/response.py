"""Robust linear response: data, current mean, scale and IRLS working arrays.

The response solves the minimization problem

    min sum_i rho(r_i / sigma),   r_i = y_i - mu_i

and owns every array the IRLS engines update in place:

- ``y``: response vector
- ``mu``: mean response vector (linear predictor plus offset)
- ``offset``: offset added to ``X beta`` to form ``mu``; length 0 or n
- ``wts``: prior case weights; length 0 or n
- ``sigma``: current estimate of the scale, always positive
- ``devresid``: deviance residuals ``2 rho(r_i / sigma)`` (times weights)
- ``wrkwt``: working weights of the IRLS algorithm (times weights)
- ``wrkres``: working (raw) residuals
- ``wrkscaledres``: residuals divided by the scale
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.core import linalg as la
from robustreg.core.errors import DimensionMismatch
from robustreg.core.scale import mad_residual_scale, scale_estimate, tau_scale_estimate
from robustreg.estimators.base import EstimatorKind

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from robustreg.estimators.base import AbstractEstimator

__all__ = ["RobustLinResp"]

LOGGER = logging.getLogger(__name__)


def _as_vector(x: Any, name: str) -> NDArray[np.float64]:
    if x is None:
        return np.zeros(0, dtype=np.float64)
    arr = np.array(x, dtype=np.float64).reshape(-1)
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains NA/NaN/Inf; please drop/clean rows before fitting.")
    return arr


class RobustLinResp:
    """Robust linear response structure.

    Parameters
    ----------
    est : AbstractEstimator
        Estimator used for the model.
    y : array-like, shape (n,)
        Response vector (copied).
    offset : array-like, shape (n,) or empty, optional
    wts : array-like, shape (n,) or empty, optional
        Prior weights; must be nonnegative.
    sigma : float, default 1.0
        Initial scale, must be positive.

    """

    def __init__(
        self,
        est: AbstractEstimator,
        y: Any,
        offset: Any = None,
        wts: Any = None,
        sigma: float = 1.0,
    ) -> None:
        self.est = est
        self.y = _as_vector(y, "y")
        n = self.y.shape[0]
        self.offset = self._check_length(_as_vector(offset, "offset"), "offset")
        self.wts = self._check_length(_as_vector(wts, "wts"), "wts")
        if np.any(self.wts < 0):
            raise ValueError("weights must be nonnegative.")
        self.sigma = sigma
        self.mu = np.zeros(n, dtype=np.float64)
        self.devresid = np.zeros(n, dtype=np.float64)
        self.wrkwt = np.zeros(n, dtype=np.float64)
        self.wrkres = np.zeros(n, dtype=np.float64)
        self.wrkscaledres = np.zeros(n, dtype=np.float64)
        self.init_resp()

    def __repr__(self) -> str:
        return f"RobustLinResp(n={self.y.shape[0]}, est={self.est!r}, sigma={self._sigma:.6g})"

    def _check_length(self, v: NDArray[np.float64], name: str) -> NDArray[np.float64]:
        n = self.y.shape[0]
        if v.shape[0] not in (0, n):
            raise DimensionMismatch(f"length of {name} is {v.shape[0]}, must be {n} or 0")
        return v

    # -- scale -----------------------------------------------------------
    @property
    def sigma(self) -> float:
        return self._sigma

    @sigma.setter
    def sigma(self, value: float) -> None:
        value = float(value)
        if not (value > 0 and np.isfinite(value)):
            raise ValueError(f"scale/dispersion must be positive and finite, got {value}")
        self._sigma = value

    # -- updates ---------------------------------------------------------
    # The check_* methods validate without touching the state.
    def check_weights(self, wts: Any) -> NDArray[np.float64]:
        w = self._check_length(_as_vector(wts, "wts"), "wts")
        if np.any(w < 0):
            raise ValueError("weights must be nonnegative.")
        return w

    def check_offset(self, offset: Any) -> NDArray[np.float64]:
        return self._check_length(_as_vector(offset, "offset"), "offset")

    def check_response(self, y: Any) -> NDArray[np.float64]:
        y = _as_vector(y, "y")
        if y.shape[0] != self.y.shape[0]:
            raise DimensionMismatch(
                "the new response vector should have the same dimension: "
                f"{self.y.shape[0]} != {y.shape[0]}",
            )
        return y

    def set_weights(self, wts: Any) -> None:
        self.wts = self.check_weights(wts)

    def set_offset(self, offset: Any) -> None:
        self.offset = self.check_offset(offset)

    def set_response(self, y: Any) -> None:
        self.y[:] = self.check_response(y)

    # -- lifecycle -------------------------------------------------------
    def init_resp(self) -> None:
        """Reset mu, the tau factor, working residuals and working weights."""
        self.mu.fill(0.0)
        if self.est.kind is EstimatorKind.TAU:
            self.est.update_weight(0.0)  # type: ignore[attr-defined]
        np.subtract(self.y, self.mu, out=self.wrkres)
        if self.offset.shape[0]:
            self.wrkres -= self.offset
        if self.wts.shape[0]:
            self.wrkwt[:] = self.wts
        else:
            self.wrkwt.fill(1.0)

    def _apply_offset(self) -> None:
        # Subtract the offset because it is added back in the residual update
        if self.offset.shape[0] == self.y.shape[0]:
            self.mu -= self.offset

    def set_mu(self, value: float | Any | None = None) -> None:
        """Set mu to a constant, a vector, or the (weighted) mean of y."""
        if value is None:
            value = la.weighted_mean(self.y, self.wts if self.wts.shape[0] else None)
        if np.ndim(value) == 0:
            self.mu.fill(float(value))
        else:
            v = np.asarray(value, dtype=np.float64).reshape(-1)
            if v.shape != self.mu.shape:
                raise DimensionMismatch(f"mu must have length {self.mu.shape[0]}")
            self.mu[:] = v
        self._apply_offset()

    # -- residual updates ------------------------------------------------
    def update_residuals(self, *, update_scale: bool = False, **scale_kw: Any) -> RobustLinResp:
        if update_scale:
            self._update_res_and_scale(**scale_kw)
        else:
            self._update_res()
        return self

    def _finish_update(self) -> None:
        """Working weights and deviance residuals from the scaled residuals."""
        self.wrkwt[:] = self.est.weight(self.wrkscaledres)
        self.devresid[:] = 2.0 * self.est.rho(self.wrkscaledres)
        if self.wts.shape[0]:
            self.devresid *= self.wts
            self.wrkwt *= self.wts

    def _add_offset(self) -> None:
        if self.offset.shape[0]:
            self.mu += self.offset

    def _update_res(self) -> None:
        """Residuals, weights and deviance with the scale held fixed."""
        self._add_offset()
        np.subtract(self.y, self.mu, out=self.wrkres)
        np.multiply(self.wrkres, 1.0 / self._sigma, out=self.wrkscaledres)
        self._finish_update()

    def _update_res_and_scale(self, **scale_kw: Any) -> None:
        """Residuals, then the M-scale, then weights and deviance."""
        self._add_offset()
        np.subtract(self.y, self.mu, out=self.wrkres)
        if self.est.kind is EstimatorKind.TAU:
            # the tau factor depends jointly on all residuals
            scale_kw["sigma0"] = "mad"
            self.update_scale(**scale_kw)
            np.multiply(self.wrkres, 1.0 / self._sigma, out=self.wrkscaledres)
            self.est.update_weight(  # type: ignore[attr-defined]
                self.wrkscaledres, wts=self.wts if self.wts.shape[0] else None,
            )
        else:
            self.update_scale(**scale_kw)
            np.multiply(self.wrkres, 1.0 / self._sigma, out=self.wrkscaledres)
        self._finish_update()

    def update_scale(
        self,
        *,
        sigma0: float | str | None = None,
        fallback: float | None = None,
        verbose: bool = False,
        **kwargs: Any,
    ) -> RobustLinResp:
        """Refresh sigma with the M-scale of the working residuals.

        Parameters
        ----------
        sigma0 : float, 'mad' or None
            Starting value: the current scale (None), the MAD of the
            residuals ('mad') or an explicit value.
        fallback : float, optional
            Value used when the M-scale does not converge; without it a
            ``ScaleConvergenceError`` propagates.
        kwargs
            Passed to :func:`robustreg.core.scale.m_scale` (``nmax``,
            ``rtol``, ``approx``).

        """
        if not self.est.is_bounded():
            warnings.warn(
                f"scale/dispersion is not changed because the estimator ({self.est!r}) "
                "does not allow scale estimation; use a bounded estimator such as Tukey.",
                RuntimeWarning,
                stacklevel=2,
            )
            return self
        if sigma0 is None:
            s0 = self._sigma
        elif isinstance(sigma0, str):
            if sigma0 != "mad":
                raise ValueError(f"sigma0 must be a number or 'mad', got {sigma0!r}")
            s0 = self.mad_residual_scale()
            if not s0 > 0:
                s0 = self._sigma
        else:
            s0 = float(sigma0)
        self.sigma = scale_estimate(
            self.est.scale_loss,
            self.wrkres,
            sigma0=s0,
            wts=self.wts if self.wts.shape[0] else None,
            fallback=fallback,
            verbose=verbose,
            **kwargs,
        )
        return self

    def mad_residual_scale(self, factor: float = 1.0) -> float:
        return mad_residual_scale(
            self.wrkres, factor=factor, wts=self.wts if self.wts.shape[0] else None,
        )

    def tau_scale(
        self,
        sqr: bool = False,
        *,
        update_scale: bool = False,
        sigma0: float | str | None = None,
        verbose: bool = False,
        bound: float = 0.5,
    ) -> float:
        """tau-scale of the working residuals (tau-estimators only)."""
        if self.est.kind is not EstimatorKind.TAU:
            raise TypeError(f"tau-scale is only defined for tau-estimators, got {self.est!r}")
        if update_scale:
            self.update_scale(sigma0=sigma0, verbose=verbose)
        return tau_scale_estimate(
            self.est.loss2,  # type: ignore[attr-defined]
            self.wrkres,
            self._sigma,
            sqr=sqr,
            wts=self.wts if self.wts.shape[0] else None,
            bound=bound,
        )

    # -- summaries -------------------------------------------------------
    def deviance(self) -> float:
        return float(np.sum(self.devresid))

    def null_deviance(self, *, intercept: bool = True) -> float:
        mu = la.weighted_mean(self.y, self.wts if self.wts.shape[0] else None) if intercept else 0.0
        dev = 2.0 * np.asarray(self.est.rho((self.y - mu) / self._sigma), dtype=np.float64)
        if self.wts.shape[0]:
            dev = dev * self.wts
        return float(np.sum(dev))

    def full_loglikelihood(self) -> float:
        return -np.log(self._sigma) - np.log(self.est.estimator_norm())

    def loglikelihood(self) -> float:
        return float(self.full_loglikelihood() - self.deviance() / 2.0)

    def null_loglikelihood(self, *, intercept: bool = True) -> float:
        return float(self.full_loglikelihood() - self.null_deviance(intercept=intercept) / 2.0)

    def nobs(self) -> int:
        if self.wts.shape[0]:
            return int(np.count_nonzero(self.wts))
        return int(self.y.shape[0])

    def weights(self) -> NDArray[np.float64]:
        if self.wts.shape[0]:
            return self.wts
        return np.ones_like(self.y)

    def residuals(self) -> NDArray[np.float64]:
        return self.wrkres

    def fitted(self) -> NDArray[np.float64]:
        return self.mu

    def working_weights(self) -> NDArray[np.float64]:
        return self.wrkwt

    def dispersion(
        self, dof_residual: float | None = None, *, sqr: bool = False, robust: bool = True,
    ) -> float:
        """Weighted sum of squared residuals over the residual degrees of freedom."""
        dof = float(self.nobs() - 1) if dof_residual is None else float(dof_residual)
        if robust:
            s = self._sigma**2 * float(np.sum(self.wrkwt * self.wrkscaledres**2)) / dof
        else:
            s = float(np.sum(self.wrkwt * self.wrkres**2)) / dof
        return s if sqr else float(np.sqrt(s))

    def location_variance(self, dof_residual: float | None = None, *, sqr: bool = False) -> float:
        """Variance factor of the coefficients due to the location estimate.

        From Maronna et al., Robust Statistics: Theory and Methods, Eq. 4.49:
        ``sigma^2 E[psi^2] / E[psi']^2``, rescaled by ``n / dof``.
        """
        dof = float(self.nobs() - 1) if dof_residual is None else float(dof_residual)
        u = self.wrkscaledres
        w = self.wts if self.wts.shape[0] else None
        num = la.weighted_mean(np.asarray(self.est.psi(u)) ** 2, w)
        den = la.weighted_mean(np.asarray(self.est.psider(u)), w) ** 2
        if den == 0.0:
            warnings.warn(
                "coefficient variance is not defined: psi' averages to zero on the residuals.",
                RuntimeWarning,
                stacklevel=2,
            )
            return float("inf")
        v = num / den * self._sigma**2 * (self.nobs() / dof)
        return v if sqr else float(np.sqrt(v))

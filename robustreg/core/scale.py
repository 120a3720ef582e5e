"""Robust scale estimation: MAD, M-scale fixed point and tau-scale.

The M-scale s of residuals r solves

    (1/sum(w)) * sum_i w_i * rho_n(r_i / s) = delta

with rho_n a bounded loss normalized to [0, 1] and delta = 1/2 for a 50%
breakdown point. It is computed by the reweighting fixed point

    s_{k+1}^2 = s_k^2 * sum_i w_i rho_n(r_i / s_k) / (delta * sum_i w_i).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.stats import median_abs_deviation, norm

from robustreg.core.errors import ScaleConvergenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from robustreg.core.losses import LossFunction

__all__ = [
    "ScaleEstimate",
    "m_scale",
    "mad_residual_scale",
    "mad_scale",
    "scale_estimate",
    "tau_scale_estimate",
]

LOGGER = logging.getLogger(__name__)

# 1 / Phi^{-1}(3/4): makes the MAD consistent for the Gaussian standard deviation
MAD_CONSTANT = float(1.0 / norm.ppf(0.75))


@dataclass
class ScaleEstimate:
    """Outcome of the M-scale fixed point."""

    value: float
    converged: bool
    n_iter: int
    reason: str = ""


def _weights_or_none(wts: Sequence[float] | None, n: int) -> NDArray[np.float64] | None:
    if wts is None or len(wts) == 0:
        return None
    w = np.asarray(wts, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        raise ValueError(f"weights have length {w.shape[0]}, expected {n}")
    return w


def mad_scale(x: NDArray[np.float64], *, factor: float = 1.0) -> float:
    """Normalized median absolute deviation of ``x`` around its median."""
    if not factor > 0:
        raise ValueError("factor should be positive")
    return float(factor * median_abs_deviation(np.asarray(x, dtype=np.float64), scale="normal"))


def mad_residual_scale(
    res: NDArray[np.float64],
    *,
    factor: float = 1.0,
    wts: Sequence[float] | None = None,
) -> float:
    """Normalized MAD of the absolute residuals.

    The absolute residuals are centered at their own median. With prior
    weights they are multiplied by their weights first.
    """
    if not factor > 0:
        raise ValueError("factor should be positive")
    r = np.abs(np.asarray(res, dtype=np.float64).reshape(-1))
    w = _weights_or_none(wts, r.shape[0])
    if w is not None:
        r = w * r
    return float(factor * median_abs_deviation(r, scale="normal"))


def m_scale(  # noqa: PLR0913
    loss: LossFunction,
    res: NDArray[np.float64],
    *,
    sigma0: float = 1.0,
    wts: Sequence[float] | None = None,
    delta: float = 0.5,
    nmax: int = 100,
    rtol: float = 1e-7,
    approx: bool = False,
) -> ScaleEstimate:
    """Fixed-point M-scale of ``res`` for a bounded ``loss``.

    Parameters
    ----------
    loss : LossFunction
        Bounded loss; its normalized rho is used.
    res : ndarray
        Raw (unscaled) residuals.
    sigma0 : float
        Starting value of the iteration.
    wts : sequence of float, optional
        Prior observation weights.
    delta : float
        Breakdown constant, E[rho_n] at the target scale.
    nmax : int
        Maximum number of reweighting passes.
    rtol : float
        Relative change of the scale under which the iteration stops.
    approx : bool
        Accept the last iterate after ``nmax`` passes instead of reporting
        non-convergence.

    Returns
    -------
    ScaleEstimate
        ``value`` holds the last iterate even when ``converged`` is False.

    """
    if not loss.is_bounded():
        raise ValueError(f"M-scale requires a bounded loss, got {loss!r}")
    if not (sigma0 > 0 and np.isfinite(sigma0)):
        raise ValueError(f"initial scale must be positive and finite, got {sigma0}")
    r = np.asarray(res, dtype=np.float64).reshape(-1)
    n = r.shape[0]
    w = _weights_or_none(wts, n)

    # Too many exact zeros: the fixed point is s = 0
    nzero = int(np.sum(r == 0.0)) if w is None else float(np.sum(w[r == 0.0]))
    total = n if w is None else float(np.sum(w))
    if nzero >= total * (1.0 - delta):
        return ScaleEstimate(0.0, False, 0, "more than half of the residuals are exactly zero")

    sigma = float(sigma0)
    for k in range(1, nmax + 1):
        rn = loss.rho_normalized(r / sigma)
        mean_rho = float(np.mean(rn)) if w is None else float(np.sum(w * rn) / total)
        sigma_new = sigma * np.sqrt(mean_rho / delta)
        if not (np.isfinite(sigma_new) and sigma_new > 0):
            return ScaleEstimate(sigma, False, k, f"scale iteration degenerated to {sigma_new}")
        if abs(sigma_new - sigma) <= rtol * sigma:
            return ScaleEstimate(float(sigma_new), True, k)
        sigma = float(sigma_new)
    if approx:
        return ScaleEstimate(sigma, True, nmax, "approximate")
    reason = (
        f"the M-scale did not converge in nmax={nmax} iterations "
        f"(started at sigma0={sigma0:.6g}, last estimate {sigma:.6g})"
    )
    return ScaleEstimate(sigma, False, nmax, reason)


def scale_estimate(  # noqa: PLR0913
    loss: LossFunction,
    res: NDArray[np.float64],
    *,
    sigma0: float = 1.0,
    wts: Sequence[float] | None = None,
    fallback: float | None = None,
    verbose: bool = False,
    **kwargs,
) -> float:
    """M-scale value, or ``fallback`` when the fixed point fails.

    Raises
    ------
    ScaleConvergenceError
        When the iteration fails and no fallback is supplied.

    """
    est = m_scale(loss, res, sigma0=sigma0, wts=wts, **kwargs)
    if est.converged:
        if verbose:
            LOGGER.info("Update scale: %.6g -> %.6g", sigma0, est.value)
        return est.value
    if fallback is not None:
        if verbose:
            LOGGER.info("Update scale: %.6g -> fallback %.6g (%s)", sigma0, fallback, est.reason)
        return float(fallback)
    raise ScaleConvergenceError(est.reason, n_iter=est.n_iter, value=est.value)


def tau_scale_estimate(
    loss2: LossFunction,
    res: NDArray[np.float64],
    sigma: float,
    *,
    sqr: bool = False,
    wts: Sequence[float] | None = None,
    bound: float = 0.5,
) -> float:
    """tau-scale: sigma^2 * mean(rho2_n(r / sigma)) / bound, or its square root."""
    r = np.asarray(res, dtype=np.float64).reshape(-1)
    w = _weights_or_none(wts, r.shape[0])
    rn = loss2.rho_normalized(r / sigma)
    t = float(np.mean(rn)) if w is None else float(np.sum(w * rn) / np.sum(w))
    t /= bound
    return sigma * sigma * t if sqr else sigma * float(np.sqrt(t))

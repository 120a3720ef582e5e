"""Iteratively reweighted least squares engines.

All engines share one skeleton: solve the weighted normal equations for the
coefficient increment, evaluate the trial linear predictor, refresh the
response and halve the step factor while the monitored quantity increases.

- :func:`pirls`: M and generalized M-quantile fits, monitors the deviance
  with the scale held fixed.
- :func:`pirls_s`: S fits (and the first MM phase), monitors the M-scale.
- :func:`pirls_tau`: tau fits, monitors the tau-scale.
- :func:`pirls_mm`: S phase followed by an M phase at the S scale.

Engines never raise on convergence problems; they return an
:class:`IRLSResult` and leave the model at the last accepted coefficients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

import numpy as np

from robustreg.core.errors import ConvergenceError, LineSearchError
from robustreg.estimators.base import EstimatorKind, IRLSConfig

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from robustreg.core.response import RobustLinResp
    from robustreg.estimators.rlm import RobustLinearModel

__all__ = [
    "IRLSResult",
    "pirls",
    "pirls_mm",
    "pirls_s",
    "pirls_tau",
    "select_engine",
    "set_beta0",
    "set_eta",
    "set_init_eta",
]

LOGGER = logging.getLogger(__name__)


@dataclass
class IRLSResult:
    """Outcome of one IRLS run.

    Attributes
    ----------
    converged : bool
    n_iter : int
        Iterations performed (0 when no iteration ran).
    value : float
        Last accepted value of the monitored quantity.
    criterion : {'deviance', 'scale', 'tau_scale'}
    failure : {None, 'convergence', 'linesearch'}
    reason : str
    history : list of float
        Monitored quantity at start and after every accepted step.
    coef : ndarray
        Coefficients when the run stopped.
    s_phase : IRLSResult, optional
        For MM fits, the result of the S phase.

    """

    converged: bool
    n_iter: int
    value: float
    criterion: str = "deviance"
    failure: str | None = None
    reason: str = ""
    history: list[float] = field(default_factory=list)
    coef: NDArray[np.float64] | None = None
    s_phase: IRLSResult | None = None

    def raise_for_status(self) -> IRLSResult:
        """Raise the matching :class:`ConvergenceError` for a failed run."""
        if self.converged:
            return self
        if self.failure == "linesearch":
            raise LineSearchError(self.reason, n_iter=self.n_iter, value=self.value, coef=self.coef)
        raise ConvergenceError(self.reason, n_iter=self.n_iter, value=self.value)


def _finite_or_inf(value: float) -> float:
    return float(value) if np.isfinite(value) else float("inf")


def _max_scale(resp: RobustLinResp) -> float:
    """Half the range of the response, an upper bound for the scale."""
    maxsigma = float(np.ptp(resp.y)) / 2.0
    if not maxsigma > 0:
        raise ValueError("the response is constant, the scale cannot be estimated")
    return maxsigma


# ---------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------
def set_beta0(model: RobustLinearModel, beta0: Any | None = None) -> None:
    """Reset the response and install the starting coefficients.

    Without ``beta0`` the coefficients come from a (prior-weighted) least
    squares solve on the initial working residuals ``y - offset``.
    """
    resp, pred = model.resp, model.pred
    resp.init_resp()
    if beta0 is None or len(beta0) == 0:
        pred.solve_delta(resp.wrkwt, resp.wrkres)
        pred.install(1.0)
    else:
        pred.set_coefficients(beta0)


def set_init_eta(model: RobustLinearModel) -> None:
    """Linear predictor from beta0 alone, then residuals at fixed scale."""
    resp, pred = model.resp, model.pred
    pred.linear_predictor(0.0, out=resp.mu)
    resp.update_residuals(update_scale=False)


def set_eta(
    model: RobustLinearModel,
    f: float = 1.0,
    *,
    update_scale: bool = False,
    **scale_kw: Any,
) -> RobustLinResp:
    """Evaluate the step ``f``; the increment is solved only when ``f == 1``."""
    resp, pred = model.resp, model.pred
    if f == 1.0:
        pred.solve_delta(resp.wrkwt, resp.wrkres)
    pred.linear_predictor(f, out=resp.mu)
    return resp.update_residuals(update_scale=update_scale, **scale_kw)


def _restore(model: RobustLinearModel, sigma: float | None = None) -> None:
    """Drop the pending increment and recompute the response at beta0."""
    resp, pred = model.resp, model.pred
    pred.delbeta.fill(0.0)
    if sigma is not None:
        resp.sigma = sigma
    pred.linear_predictor(0.0, out=resp.mu)
    resp.update_residuals(update_scale=False)


def _linesearch_failure(
    model: RobustLinearModel, i: int, value: float, criterion: str, history: list[float],
    sigma: float | None = None,
) -> IRLSResult:
    coef = model.pred.coefficients().copy()
    _restore(model, sigma)
    return IRLSResult(
        converged=False,
        n_iter=i,
        value=value,
        criterion=criterion,
        failure="linesearch",
        reason=f"line search failed at iteration {i} with beta0 = {coef}",
        history=history,
        coef=coef,
    )


def _no_convergence(
    model: RobustLinearModel, maxiter: int, value: float, criterion: str, history: list[float],
) -> IRLSResult:
    return IRLSResult(
        converged=False,
        n_iter=maxiter,
        value=value,
        criterion=criterion,
        failure="convergence",
        reason=f"failure to converge after {maxiter} iterations",
        history=history,
        coef=model.pred.coefficients().copy(),
    )


# ---------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------
def pirls(
    model: RobustLinearModel,
    beta0: Any | None = None,
    sigma0: float | None = None,
    config: IRLSConfig | None = None,
    *,
    verbose: bool = False,
) -> IRLSResult:
    """IRLS for M and generalized M-quantile estimators.

    The scale is set to ``sigma0`` (when given) and then held fixed; the
    deviance ``sum(2 rho(r_i / sigma))`` is the monitored quantity.
    """
    cfg = (config or IRLSConfig()).validate()
    resp, pred = model.resp, model.pred

    if sigma0 is not None:
        resp.sigma = sigma0
    set_beta0(model, beta0)
    set_init_eta(model)

    devold = _finite_or_inf(resp.deviance())
    history = [devold]
    if verbose:
        LOGGER.info("initial deviance: %.4g", devold)

    for i in range(1, cfg.maxiter + 1):
        f = 1.0
        absdev = abs(devold)
        dev = _finite_or_inf(set_eta(model).deviance())
        if dev <= -cfg.atol:
            raise ArithmeticError(f"negative deviance {dev} at iteration {i}")
        if verbose:
            LOGGER.info("deviance at step %d: %.4g", i, dev)

        # Halve the step while the deviance increases beyond rounding;
        # a deviance under atol is already converged
        while dev > devold + cfg.rtol * absdev and dev >= cfg.atol:
            f /= 2.0
            if f <= cfg.minstepfac:
                return _linesearch_failure(model, i, devold, "deviance", history)
            dev = _finite_or_inf(set_eta(model, f).deviance())
        pred.install(f)
        history.append(dev)

        delta = devold - dev
        if verbose:
            LOGGER.info("Iteration: %d, deviance: %.6g, delta: %.3g", i, dev, delta)
        tol = max(cfg.rtol * absdev, cfg.atol)
        if -tol < delta < tol or dev < cfg.atol:
            return IRLSResult(True, i, dev, "deviance", history=history, coef=pred.coefficients().copy())
        devold = dev
    return _no_convergence(model, cfg.maxiter, devold, "deviance", history)


def pirls_s(
    model: RobustLinearModel,
    beta0: Any | None = None,
    sigma0: float | None = None,
    config: IRLSConfig | None = None,
    *,
    verbose: bool = False,
) -> IRLSResult:
    """IRLS for S-estimators, minimizing the M-scale of the residuals.

    The scale starts at ``sigma0`` or at half the range of the response. A
    collapsed line search during the first ``config.miniter`` iterations
    resets the scale to that upper bound once; afterwards it is fatal.
    """
    cfg = (config or IRLSConfig()).validate()
    resp, pred = model.resp, model.pred

    maxsigma = _max_scale(resp)
    resp.sigma = maxsigma if sigma0 is None else sigma0
    set_beta0(model, beta0)
    set_init_eta(model)

    # The first step is always installed
    sigold = set_eta(model, update_scale=True, sigma0=sigma0, fallback=maxsigma, verbose=verbose).sigma
    pred.install(1.0)
    resp.sigma = sigold
    history = [sigold]
    if verbose:
        LOGGER.info("initial scale: %.4g", sigold)

    for i in range(1, cfg.maxiter + 1):
        f = 1.0
        reset = False
        sig = set_eta(model, update_scale=True, sigma0=sigold, fallback=maxsigma, verbose=verbose).sigma
        if verbose:
            LOGGER.info("scale at step %d: %.4g, crit=%.3g", i, sig, (sigold - sig) / sigold)

        while sig > sigold * (1.0 + cfg.rtol):
            f /= 2.0
            if f <= cfg.minstepfac:
                if i <= cfg.miniter and not reset:
                    reset = True
                    sigold = maxsigma
                    resp.sigma = sigold
                    if verbose:
                        LOGGER.info(
                            "line search failed at early iteration %d, set scale to maximum value: %.4g",
                            i, sigold,
                        )
                else:
                    return _linesearch_failure(model, i, sigold, "scale", history, sigma=sigold)
            sig = set_eta(
                model, f, update_scale=True, sigma0=sigold, fallback=maxsigma, verbose=verbose,
            ).sigma
        pred.install(f)
        resp.sigma = sig
        history.append(sig)

        delta = sigold - sig
        if verbose:
            LOGGER.info("Iteration: %d, scale: %.6g, delta: %.3g", i, sig, delta)
        tol = max(cfg.rtol * sigold, cfg.atol)
        if -tol < delta < tol or sig < cfg.atol:
            return IRLSResult(True, i, sig, "scale", history=history, coef=pred.coefficients().copy())
        sigold = sig
    return _no_convergence(model, cfg.maxiter, sigold, "scale", history)


def pirls_tau(
    model: RobustLinearModel,
    beta0: Any | None = None,
    sigma0: float | None = None,
    config: IRLSConfig | None = None,
    *,
    verbose: bool = False,
) -> IRLSResult:
    """IRLS for tau-estimators, minimizing the tau-scale of the residuals.

    Every evaluation refreshes the M-scale (seeded from the MAD of the
    residuals) and the tau weighting factor before the working weights.
    """
    cfg = (config or IRLSConfig()).validate()
    resp, pred = model.resp, model.pred

    maxsigma = _max_scale(resp)
    resp.sigma = maxsigma if sigma0 is None else sigma0
    set_beta0(model, beta0)
    set_init_eta(model)

    tauold = set_eta(model, update_scale=True, fallback=maxsigma, verbose=verbose).tau_scale()
    pred.install(1.0)
    history = [tauold]
    if verbose:
        LOGGER.info("initial tau-scale: %.4g", tauold)

    for i in range(1, cfg.maxiter + 1):
        f = 1.0
        reset = False
        tau = set_eta(model, update_scale=True, fallback=maxsigma, verbose=verbose).tau_scale()
        if verbose:
            LOGGER.info("tau-scale at step %d: %.4g, crit=%.3g", i, tau, (tauold - tau) / tauold)

        while tau > tauold + cfg.rtol * tau:
            f /= 2.0
            if f <= cfg.minstepfac:
                if i <= cfg.miniter and not reset:
                    reset = True
                    tauold = maxsigma
                    resp.sigma = tauold
                    if verbose:
                        LOGGER.info(
                            "line search failed at early iteration %d, set scale to maximum value: %.4g",
                            i, tauold,
                        )
                else:
                    return _linesearch_failure(model, i, tauold, "tau_scale", history)
            tau = set_eta(model, f, update_scale=True, fallback=maxsigma, verbose=verbose).tau_scale()
        pred.install(f)
        history.append(tau)

        delta = tauold - tau
        if verbose:
            LOGGER.info("Iteration: %d, tau-scale: %.6g, delta: %.3g", i, tau, delta)
        tol = max(cfg.rtol * tauold, cfg.atol)
        if -tol < delta < tol or tau < cfg.atol:
            return IRLSResult(True, i, tau, "tau_scale", history=history, coef=pred.coefficients().copy())
        tauold = tau
    return _no_convergence(model, cfg.maxiter, tauold, "tau_scale", history)


def pirls_mm(
    model: RobustLinearModel,
    beta0: Any | None = None,
    sigma0: float | None = None,
    config: IRLSConfig | None = None,
    *,
    verbose: bool = False,
) -> IRLSResult:
    """Two-phase MM fit: S-estimate of (sigma, beta), then M-estimate at that sigma."""
    est = model.resp.est
    est.use_s()  # type: ignore[attr-defined]
    if verbose:
        LOGGER.info("Fit with MM-estimator - 1. S-estimator: %r", est)
    s_result = pirls_s(model, beta0, sigma0, config, verbose=verbose)
    if not s_result.converged:
        return s_result

    beta_s = model.pred.coefficients().copy()
    sigma_s = model.resp.sigma
    est.use_m()  # type: ignore[attr-defined]
    if verbose:
        LOGGER.info("Fit with MM-estimator - 2. M-estimator: %r", est)
    m_result = pirls(model, beta_s, sigma_s, config, verbose=verbose)
    m_result.s_phase = s_result
    return m_result


_ENGINES: dict[EstimatorKind, Callable[..., IRLSResult]] = {
    EstimatorKind.M: pirls,
    EstimatorKind.QUANTILE: pirls,
    EstimatorKind.S: pirls_s,
    EstimatorKind.MM: pirls_mm,
    EstimatorKind.TAU: pirls_tau,
}


def select_engine(kind: EstimatorKind) -> Callable[..., IRLSResult]:
    """Fitting engine for an estimator kind."""
    try:
        return _ENGINES[kind]
    except KeyError:
        allowed = ", ".join(k.value for k in _ENGINES)
        raise TypeError(f"only estimator kinds {allowed} are supported, got {kind!r}") from None

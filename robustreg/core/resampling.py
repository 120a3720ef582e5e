"""Subsampling search for the starting point of S, MM and tau fits.

The objectives of S-, MM- and tau-estimators are not convex, so the IRLS
engines can stop at a poor local minimum. The search below draws many small
subsamples, fits least squares on each, ranks the candidates after a few
cheap reweighting passes and refines the best ones to convergence.

The draws run sequentially and reuse the model's own response and predictor
arrays; a parallel version must give each trial private copies of both.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.core import linalg as la
from robustreg.core.errors import ConvergenceError, ScaleConvergenceError
from robustreg.core.irls import pirls_s, pirls_tau, set_beta0, set_eta, set_init_eta
from robustreg.estimators.base import EstimatorKind, IRLSConfig, ResamplingConfig

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from robustreg.estimators.rlm import RobustLinearModel

__all__ = ["resampling_best_estimate", "resampling_initial_coef", "resampling_min_n"]

LOGGER = logging.getLogger(__name__)


def resampling_min_n(p: int, alpha: float = 0.05, eps: float = 0.5) -> int:
    """Number of subsamples of size ``p`` so that at least one is outlier free.

    With a proportion ``eps`` of outliers, drawing
    ``ceil(|log(alpha) / log(1 - (1 - eps)^p)|)`` subsamples guarantees an
    outlier-free subsample with probability at least ``1 - alpha``.
    """
    if p < 1:
        raise ValueError("p must be positive")
    if not (0.0 < alpha < 1.0):
        raise ValueError("alpha must be in (0, 1)")
    if not (0.0 <= eps < 1.0):
        raise ValueError("eps must be in [0, 1)")
    clean = (1.0 - eps) ** p
    if clean >= 1.0:
        return 1
    return max(1, int(np.ceil(abs(np.log(alpha) / np.log1p(-clean)))))


def resampling_initial_coef(model: RobustLinearModel, inds: Any) -> NDArray[np.float64]:
    """Least squares coefficients on the rows ``inds`` (prior weights kept)."""
    resp = model.resp
    idx = np.asarray(inds, dtype=np.intp)
    yi = resp.y[idx]
    if resp.offset.shape[0]:
        yi = yi - resp.offset[idx]
    wi = resp.wts[idx] if resp.wts.shape[0] else None
    return la.wls(model.pred.X[idx], yi, wi)


def resampling_best_estimate(  # noqa: PLR0913, PLR0915
    model: RobustLinearModel,
    kind: EstimatorKind,
    config: ResamplingConfig | dict[str, Any] | None = None,
    rng: np.random.Generator | None = None,
    *,
    irls_config: IRLSConfig | None = None,
    verbose: bool = False,
) -> tuple[float, NDArray[np.float64]]:
    """Best starting ``(sigma, beta)`` from subsampling.

    Parameters
    ----------
    model : RobustLinearModel
        Model whose arrays are reused (and overwritten) by every trial.
    kind : EstimatorKind
        One of S, MM or TAU. Candidates are ranked by the M-scale for S/MM
        and by the tau-scale for TAU.
    config : ResamplingConfig or dict, optional
    rng : numpy.random.Generator, optional
        Defaults to ``np.random.default_rng(config.seed)``.
    irls_config : IRLSConfig, optional
        Convergence controls of the refinement runs.

    Returns
    -------
    sigma : float
        M-scale of the best refined candidate.
    beta : ndarray
        Its coefficients.

    Raises
    ------
    ConvergenceError
        When no refined candidate converged.

    """
    if not kind.scale_coupled:
        raise TypeError(f"resampling is only available for S, MM and tau estimators, got {kind!r}")
    cfg = ResamplingConfig.from_options(config)
    if rng is None:
        rng = np.random.default_rng(cfg.seed)
    base_cfg = irls_config or IRLSConfig()
    resp, pred = model.resp, model.pred
    is_tau = kind is EstimatorKind.TAU
    if kind is EstimatorKind.MM:
        resp.est.use_s()  # type: ignore[attr-defined]

    n, p = pred.shape
    n_samples = cfg.n_samples if cfg.n_samples is not None else resampling_min_n(
        p, cfg.alpha, cfg.prop_outliers,
    )
    n_points = cfg.n_points if cfg.n_points is not None else p
    rows = np.flatnonzero(resp.weights() > 0)
    if not (p <= n_points <= rows.shape[0]):
        msg = f"n_points must be between {p} and {rows.shape[0]}, got {n_points}"
        raise ValueError(msg)
    n_keep = min(cfg.n_subsamples, n_samples)

    if verbose:
        LOGGER.info("Start %d subsamples of %d points...", n_samples, n_points)
    ranks = np.full(n_samples, np.inf)
    sigmas = np.full(n_samples, np.inf)
    betas = np.zeros((n_samples, p), dtype=np.float64)
    for i in range(n_samples):
        inds = rng.choice(rows, size=n_points, replace=False)
        try:
            set_beta0(model, resampling_initial_coef(model, inds))
            set_init_eta(model)
            s0 = resp.mad_residual_scale()
            if s0 > 0:
                resp.sigma = s0
            for _ in range(cfg.n_steps_beta):
                set_eta(
                    model,
                    update_scale=True,
                    sigma0="mad",
                    nmax=cfg.n_steps_sigma,
                    approx=True,
                    verbose=verbose,
                )
                ranks[i] = resp.tau_scale() if is_tau else resp.sigma
                sigmas[i] = resp.sigma
                pred.install(1.0)
        except ScaleConvergenceError as exc:
            LOGGER.debug("Sample %d/%d discarded: %s", i + 1, n_samples, exc.reason)
            ranks[i] = sigmas[i] = np.inf
        except np.linalg.LinAlgError as exc:
            LOGGER.debug("Sample %d/%d discarded: %s", i + 1, n_samples, exc)
            ranks[i] = sigmas[i] = np.inf
        betas[i] = pred.coefficients()
        if verbose:
            LOGGER.info("Sample %d/%d: beta1=%s, scale1=%.6g", i + 1, n_samples, betas[i], ranks[i])

    order = np.argsort(ranks, kind="stable")[:n_keep]
    if verbose:
        LOGGER.info("Keep best %d subsamples: %s", n_keep, order)

    if is_tau:
        engine, refine_cfg = pirls_tau, base_cfg
    else:
        engine, refine_cfg = pirls_s, base_cfg.updated(miniter=3)

    best_rank, best_sigma, best_beta = np.inf, np.nan, None
    for rank, j in enumerate(order, start=1):
        if not np.isfinite(sigmas[j]):
            continue
        try:
            result = engine(model, betas[j], sigmas[j], refine_cfg, verbose=verbose)
        except (ConvergenceError, np.linalg.LinAlgError) as exc:
            if verbose:
                LOGGER.info("Subsample %d/%d failed: %s", rank, n_keep, exc)
            continue
        if not result.converged:
            if verbose:
                LOGGER.info("Subsample %d/%d did not converge: %s", rank, n_keep, result.reason)
            continue
        if verbose:
            LOGGER.info("Subsample %d/%d: beta2=%s, scale2=%.6g", rank, n_keep, pred.coefficients(), result.value)
        if result.value < best_rank:
            best_rank, best_sigma = result.value, resp.sigma
            best_beta = pred.coefficients().copy()

    if best_beta is None:
        raise ConvergenceError(
            f"resampling: none of the {n_keep} refined subsamples converged",
            n_iter=n_keep,
            value=float("inf"),
        )
    if verbose:
        LOGGER.info("Best subsample: beta=%s, sigma=%.6g", best_beta, best_sigma)
    return float(best_sigma), best_beta

"""Linear algebra routines for the robust IRLS engine.

This module provides the weighted normal-equation building blocks used by the
predictors: Gram matrices and cross products that accept dense or sparse
design matrices, a strict Cholesky solve, a matrix-free conjugate gradient
solve, and leverage values. Explicit matrix inversion is avoided except for
the covariance of the coefficients.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator, cg

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "cg_solve",
    "chol_solve",
    "gram",
    "hat_diag",
    "matvec",
    "safe_cholesky",
    "solve_spd",
    "to_dense",
    "weighted_mean",
    "wls",
    "xty",
]

# Matrix type alias
Matrix = Any


def _is_sparse(A: Matrix) -> bool:
    return sp.issparse(A)


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object to a dense float64 numpy array."""
    if _is_sparse(A):
        return np.asarray(A.todense(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def _check_array_finiteness(arr: NDArray[np.float64]) -> None:
    """Helper to validate array finiteness with clear error message."""
    if not np.all(np.isfinite(arr)):
        raise ValueError(
            "Input contains NA/NaN/Inf; please drop/clean rows before fitting.",
        )


def _assert_all_finite_matrix(*matrices: Matrix) -> None:
    """Check dense or sparse matrices for non-finite entries."""
    for M in matrices:
        if M is None:
            continue
        if _is_sparse(M):
            # Only inspect the stored data array to avoid densification.
            _check_array_finiteness(np.asarray(M.data))
        else:
            _check_array_finiteness(np.asarray(M))


def _validate_weights(
    weights: Sequence[float],
    n: int,
) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,).

    Zero weights are allowed: redescending estimators give outliers a zero
    working weight.
    """
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = "weights length must match n."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    return w


def matvec(X: Matrix, v: NDArray[np.float64]) -> NDArray[np.float64]:
    """Return ``X @ v`` as a flat float64 vector for dense or sparse ``X``."""
    return np.asarray(X @ v, dtype=np.float64).reshape(-1)


def gram(X: Matrix, weights: Sequence[float] | None) -> NDArray[np.float64]:
    """Compute A = X' W X with W = diag(w); if weights is None, W=I.

    Avoids forming W explicitly by pre-multiplying rows by sqrt(w).
    The result is always dense (p x p).
    """
    if weights is None:
        if _is_sparse(X):
            return np.asarray((X.T @ X).toarray(), dtype=np.float64)
        Xd = to_dense(X)
        return (Xd.T @ Xd).astype(np.float64)
    w = _validate_weights(weights, X.shape[0]).reshape(-1, 1)
    sqrt_w = np.sqrt(w)
    if _is_sparse(X):
        Xw = sp.csr_matrix(X.multiply(sqrt_w))
        return np.asarray((Xw.T @ Xw).toarray(), dtype=np.float64)
    Xw = to_dense(X) * sqrt_w
    return (Xw.T @ Xw).astype(np.float64)


def xty(X: Matrix, y: NDArray[np.float64], weights: Sequence[float] | None) -> NDArray[np.float64]:
    """Compute b = X' W y with W = diag(w); if weights is None, W=I."""
    yd = np.asarray(y, dtype=np.float64).reshape(-1)
    if weights is not None:
        yd = yd * _validate_weights(weights, X.shape[0])
    return np.asarray(X.T @ yd, dtype=np.float64).reshape(-1)


def weighted_mean(x: NDArray[np.float64], weights: Sequence[float] | None = None) -> float:
    """Weighted mean; plain mean when ``weights`` is None or empty."""
    xa = np.asarray(x, dtype=np.float64)
    if weights is None or len(weights) == 0:
        return float(np.mean(xa))
    w = _validate_weights(weights, xa.shape[0])
    denom = float(np.sum(w))
    if not np.isfinite(denom) or denom <= 0.0:
        raise ValueError("weights must sum to a positive finite value")
    return float(np.sum(w * xa) / denom)


def safe_cholesky(A: Matrix, *, lower: bool = True) -> NDArray[np.float64]:
    """Strict Cholesky factorization without implicit ridges.

    Raises np.linalg.LinAlgError if not positive definite.
    """
    Ad = to_dense(A)
    Ad = (Ad + Ad.T) * 0.5  # symmetrize
    try:
        return sla.cholesky(Ad, lower=lower, check_finite=False)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise np.linalg.LinAlgError(f"Cholesky factorization failed: {exc}") from exc


def chol_solve(
    L: NDArray[np.float64], b: NDArray[np.float64], *, lower: bool = True,
) -> NDArray[np.float64]:
    """Solve A x = b given the Cholesky factor L of A."""
    x = sla.cho_solve((L, lower), np.asarray(b, dtype=np.float64), check_finite=False)
    return np.asarray(x, dtype=np.float64)


def solve_spd(A: Matrix, b: NDArray[np.float64]) -> NDArray[np.float64]:
    """Solve the symmetric positive definite system A x = b by Cholesky."""
    return chol_solve(safe_cholesky(A), b)


def cg_solve(  # noqa: PLR0913
    X: Matrix,
    weights: NDArray[np.float64],
    rhs: NDArray[np.float64],
    *,
    penalty: NDArray[np.float64] | None = None,
    rtol: float = 1e-12,
    maxiter: int | None = None,
) -> NDArray[np.float64]:
    """Solve (X' W X + P) x = rhs by conjugate gradient without forming X' W X.

    Parameters
    ----------
    X : Matrix
        Design matrix (n x p), dense or sparse.
    weights : ndarray, shape (n,)
        Diagonal of W.
    rhs : ndarray, shape (p,)
        Right-hand side.
    penalty : ndarray, shape (p, p), optional
        Additive penalty P (ridge term), dense.
    rtol : float
        Relative residual tolerance passed to ``scipy.sparse.linalg.cg``.
    maxiter : int, optional
        Iteration cap; defaults to ``10 * p``.

    """
    _, p = X.shape
    w = np.asarray(weights, dtype=np.float64).reshape(-1)

    def _apply(v: NDArray[np.float64]) -> NDArray[np.float64]:
        out = np.asarray(X.T @ (w * matvec(X, v)), dtype=np.float64).reshape(-1)
        if penalty is not None:
            out = out + penalty @ v
        return out

    op = LinearOperator((p, p), matvec=_apply, dtype=np.float64)
    b = np.asarray(rhs, dtype=np.float64).reshape(-1)
    if not np.any(b):
        return np.zeros(p, dtype=np.float64)
    x, info = cg(op, b, rtol=rtol, atol=0.0, maxiter=maxiter or 10 * max(p, 1))
    if info < 0:
        raise np.linalg.LinAlgError(f"conjugate gradient breakdown (info={info})")
    return np.asarray(x, dtype=np.float64)


def wls(
    X: Matrix, y: NDArray[np.float64], weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Weighted least squares coefficients via lstsq on sqrt(W) X."""
    Xd = to_dense(X)
    yd = np.asarray(y, dtype=np.float64).reshape(-1)
    if weights is not None and len(weights) > 0:
        sw = np.sqrt(_validate_weights(weights, Xd.shape[0]))
        Xd = Xd * sw[:, None]
        yd = yd * sw
    beta, *_ = np.linalg.lstsq(Xd, yd, rcond=None)
    return np.asarray(beta, dtype=np.float64)


def hat_diag(
    X: Matrix, Ginv: NDArray[np.float64], weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Leverage values diag(X G^{-1} X' W) given G^{-1} = (X' W X)^{-1}."""
    Xd = to_dense(X)
    base = np.einsum("ij,jk,ik->i", Xd, Ginv, Xd)  # x_i' G^{-1} x_i
    if weights is None:
        return base.astype(np.float64)
    w = _validate_weights(weights, Xd.shape[0])
    return (w * base).astype(np.float64)

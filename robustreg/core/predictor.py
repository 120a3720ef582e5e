"""Linear predictors: weighted delta-beta solves and linear predictor evaluation.

A predictor owns the design matrix ``X``, the installed coefficients
``beta0`` and the pending increment ``delbeta``. The IRLS engines solve for
``delbeta`` from the current working residuals and weights, evaluate
``X (beta0 + f * delbeta)`` for trial step factors ``f``, and install the
accepted step.

Two solvers are available: a Cholesky factorization of the weighted Gram
matrix (:class:`CholPred`) and a matrix-free conjugate gradient
(:class:`CGPred`). Either can carry a ridge penalty
``lambda * (beta - beta_prior)' G (beta - beta_prior)``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.sparse as sp

from robustreg.core import linalg as la
from robustreg.utils.auto_constant import find_constant_column

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["CGPred", "CholPred", "LinPred", "make_predictor"]

LOGGER = logging.getLogger(__name__)


class LinPred:
    """Base predictor holding X, beta0 and delbeta.

    Parameters
    ----------
    X : array-like or scipy.sparse matrix, shape (n, p)
        Design matrix.
    ridge_lambda : float, default 0
        Ridge shrinkage; 0 disables the penalty.
    G : array-like, shape (p, p), optional
        Penalty matrix. Defaults to the identity with a zero entry for the
        intercept column.
    beta_prior : array-like, shape (p,), optional
        Shrinkage target, zeros by default.

    """

    method = "base"

    def __init__(
        self,
        X: Any,
        *,
        ridge_lambda: float = 0.0,
        G: Any | None = None,
        beta_prior: Any | None = None,
    ) -> None:
        if sp.issparse(X):
            self.X = sp.csr_matrix(X, dtype=np.float64)
        else:
            self.X = np.asarray(X, dtype=np.float64)
            if self.X.ndim == 1:
                self.X = self.X.reshape(-1, 1)
        la._assert_all_finite_matrix(self.X)  # noqa: SLF001
        n, p = self.X.shape
        self.beta0: NDArray[np.float64] = np.zeros(p, dtype=np.float64)
        self.delbeta: NDArray[np.float64] = np.zeros(p, dtype=np.float64)
        self._intercept_col = find_constant_column(self.X)

        lam = float(ridge_lambda)
        if lam < 0 or not np.isfinite(lam):
            raise ValueError("ridge_lambda must be nonnegative and finite")
        self._ridge = lam > 0 or G is not None or beta_prior is not None
        self.ridge_lambda = lam
        if G is None:
            G = np.eye(p)
            if self._intercept_col is not None:
                G[self._intercept_col, self._intercept_col] = 0.0
        self.G = la.to_dense(G)
        if self.G.shape != (p, p):
            raise ValueError(f"G must have shape ({p}, {p}), got {self.G.shape}")
        bp = np.zeros(p) if beta_prior is None else np.asarray(beta_prior, dtype=np.float64)
        if bp.shape != (p,):
            raise ValueError(f"beta_prior must have length {p}, got {bp.shape}")
        self.beta_prior = bp

    def __repr__(self) -> str:
        n, p = self.X.shape
        ridge = f", ridge_lambda={self.ridge_lambda:.4g}" if self.is_ridge else ""
        return f"{type(self).__name__}(n={n}, p={p}{ridge})"

    @property
    def is_ridge(self) -> bool:
        return self._ridge

    @property
    def shape(self) -> tuple[int, int]:
        return self.X.shape

    def has_intercept(self) -> bool:
        return self._intercept_col is not None

    def _penalty(self) -> NDArray[np.float64] | None:
        if not self.is_ridge or self.ridge_lambda == 0.0:
            return None
        return self.ridge_lambda * self.G

    def _rhs(self, wts: NDArray[np.float64], res: NDArray[np.float64]) -> NDArray[np.float64]:
        rhs = la.xty(self.X, res, wts)
        pen = self._penalty()
        if pen is not None:
            rhs = rhs - pen @ (self.beta0 - self.beta_prior)
        return rhs

    # -- contract ------------------------------------------------------
    def solve_delta(self, wts: NDArray[np.float64], res: NDArray[np.float64]) -> NDArray[np.float64]:
        """Solve the weighted normal equations for delbeta and store it."""
        raise NotImplementedError

    def install(self, f: float = 1.0) -> None:
        """Commit ``beta0 += f * delbeta`` and reset ``delbeta`` to zero."""
        self.beta0 += f * self.delbeta
        self.delbeta.fill(0.0)

    def linear_predictor(
        self, f: float = 1.0, out: NDArray[np.float64] | None = None,
    ) -> NDArray[np.float64]:
        """Evaluate ``X (beta0 + f * delbeta)``."""
        eta = la.matvec(self.X, self.beta0 + f * self.delbeta)
        if out is None:
            return eta
        out[:] = eta
        return out

    def coefficients(self) -> NDArray[np.float64]:
        return self.beta0

    def reset_coefficients(self) -> None:
        self.beta0.fill(0.0)
        self.delbeta.fill(0.0)

    def set_coefficients(self, beta: Any) -> None:
        b = np.asarray(beta, dtype=np.float64).reshape(-1)
        if b.shape != self.beta0.shape:
            raise ValueError(f"coefficients must have length {self.beta0.shape[0]}")
        self.beta0[:] = b
        self.delbeta.fill(0.0)

    def normal_matrix(self, wts: NDArray[np.float64] | None) -> NDArray[np.float64]:
        """X' W X (+ lambda G for ridge)."""
        A = la.gram(self.X, wts)
        pen = self._penalty()
        return A if pen is None else A + pen

    def covariance(self, wts: NDArray[np.float64] | None) -> NDArray[np.float64]:
        """Unscaled covariance (X' W X + lambda G)^{-1}."""
        A = self.normal_matrix(wts)
        p = A.shape[0]
        return la.chol_solve(la.safe_cholesky(A), np.eye(p))

    def projection_matrix(self, wts: NDArray[np.float64] | None) -> NDArray[np.float64]:
        """X (X' W X)^{-1} X' W."""
        Xd = la.to_dense(self.X)
        M = Xd @ self.covariance(wts) @ Xd.T
        if wts is None:
            return M
        return M * np.asarray(wts, dtype=np.float64).reshape(1, -1)

    def leverage(self, wts: NDArray[np.float64] | None) -> NDArray[np.float64]:
        return la.hat_diag(self.X, self.covariance(wts), wts)


class CholPred(LinPred):
    """Predictor solving the weighted normal equations by Cholesky."""

    method = "chol"

    def solve_delta(self, wts, res):
        A = self.normal_matrix(wts)
        self.delbeta[:] = la.solve_spd(A, self._rhs(wts, res))
        return self.delbeta


class CGPred(LinPred):
    """Predictor solving the weighted normal equations by conjugate gradient."""

    method = "cg"

    def __init__(self, X: Any, *, rtol: float = 1e-12, **kwargs: Any) -> None:
        super().__init__(X, **kwargs)
        self.rtol = float(rtol)

    def solve_delta(self, wts, res):
        self.delbeta[:] = la.cg_solve(
            self.X, wts, self._rhs(wts, res), penalty=self._penalty(), rtol=self.rtol,
        )
        return self.delbeta


def make_predictor(
    X: Any,
    method: str = "chol",
    **kwargs: Any,
) -> LinPred:
    """Build the predictor for ``method`` in {'chol', 'cg'}."""
    m = str(method).strip().lower()
    if m == "chol":
        return CholPred(X, **kwargs)
    if m == "cg":
        return CGPred(X, **kwargs)
    raise ValueError(f"method must be 'chol' or 'cg', got {method!r}")

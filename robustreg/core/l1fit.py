"""Least absolute deviations (median) regression by linear programming.

Used to seed the scale of robust fits with the dispersion of an L1 fit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import sparse
from scipy.optimize import linprog

from robustreg.core import linalg as la

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = ["l1_regression"]

LOGGER = logging.getLogger(__name__)


def l1_regression(
    X: Any,
    y: NDArray[np.float64],
    wts: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Coefficients minimizing ``sum_i w_i |y_i - x_i' b|`` (HiGHS LP).

    The problem is written with split residuals ``y = X b + u+ - u-``,
    ``u+, u- >= 0``; rows with zero weight are dropped.
    """
    Xd = la.to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    yd = np.asarray(y, dtype=np.float64).reshape(-1)
    n, k = Xd.shape
    if yd.shape[0] != n:
        raise ValueError(f"y has length {yd.shape[0]}, expected {n}")
    if wts is None or len(wts) == 0:
        w = np.ones(n)
    else:
        w = la._validate_weights(wts, n)  # noqa: SLF001
        keep = w > 0
        Xd, yd, w = Xd[keep], yd[keep], w[keep]
        n = yd.shape[0]

    c = np.concatenate([np.zeros(k), 0.5 * w, 0.5 * w])
    A_eq = sparse.hstack(
        [sparse.csr_matrix(Xd), sparse.eye(n), -sparse.eye(n)], format="csr",
    )
    bounds = [(None, None)] * k + [(0.0, None)] * (2 * n)

    res = None
    for method in ("highs-ds", "highs-ipm"):
        res = linprog(c, A_eq=A_eq, b_eq=yd, bounds=bounds, method=method)
        if res.success:
            break
        LOGGER.debug("L1 regression with %s failed: %s", method, res.message)
    if res is None or not res.success:
        msg = f"LP solver failed: {getattr(res, 'message', '')}"
        raise RuntimeError(msg)
    return np.asarray(res.x[:k], dtype=np.float64)

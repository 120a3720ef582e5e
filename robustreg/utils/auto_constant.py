"""Intercept column handling.

Detects an existing all-ones column in a (dense or sparse) design matrix and
prepends an ``(Intercept)`` column when requested.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.sparse as sp

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = ["add_constant", "find_constant_column"]

# Constants
_CONST_TOL = 1e-12
CONST_NAME = "(Intercept)"


def _normalize_variable_names(var_names: Sequence[str] | None, k: int) -> list[str]:
    """Normalize variable names to a list of strings."""
    if var_names is None:
        return [f"x{i}" for i in range(k)]

    names = [str(nm) for nm in var_names]
    if len(names) != k:
        msg = f"var_names length ({len(names)}) does not match X columns ({k})."
        raise ValueError(msg)
    if len(names) != len(set(names)):
        raise ValueError("Duplicate variable name in var_names; provide unique names.")
    return names


def _is_all_ones(values: np.ndarray, tol: float) -> bool:
    """Check if array is all ones within tolerance."""
    if values.size == 0:
        return False
    max_deviation = float(np.max(np.abs(values - 1.0)))
    return max_deviation <= float(tol)


def find_constant_column(X: Any, *, tol: float = _CONST_TOL) -> int | None:
    """Index of the first all-ones column of ``X``, or None."""
    k = X.shape[1]
    for j in range(k):
        if sp.issparse(X):
            col = np.asarray(X[:, j].todense(), dtype=np.float64).reshape(-1)
        else:
            col = np.asarray(X[:, j], dtype=np.float64)
        if _is_all_ones(col, tol):
            return j
    return None


def add_constant(
    X: np.ndarray,
    var_names: Sequence[str] | None = None,
    *,
    const_name: str = CONST_NAME,
    warn_on_existing_constant: bool = True,
) -> tuple[np.ndarray, list[str], str]:
    """Prepend an intercept column unless an all-ones column already exists.

    Returns
    -------
    X_aug : ndarray, shape (n, k) or (n, k + 1)
    names : list of str
    const_name : str
        Name of the intercept column (the existing one when detected).

    """
    Xd = np.asarray(X, dtype=np.float64)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    names = _normalize_variable_names(var_names, Xd.shape[1])
    existing = find_constant_column(Xd)
    if existing is not None:
        if warn_on_existing_constant:
            warnings.warn(
                f"X already contains an all-ones column ('{names[existing]}'); "
                "no intercept added.",
                UserWarning,
                stacklevel=2,
            )
        return Xd, names, names[existing]
    if const_name in names:
        raise ValueError(f"Variable name '{const_name}' is reserved for the intercept.")
    X_aug = np.column_stack([np.ones(Xd.shape[0]), Xd])
    return X_aug, [const_name, *names], const_name

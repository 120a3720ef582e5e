"""Formula parsing for robust linear models.

Thin Patsy wrapper: ``"y ~ x1 + x2"`` against a DataFrame returns the response
vector, the design matrix with its column names and the rows kept after
dropping missing values.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
import patsy

from robustreg.utils.auto_constant import CONST_NAME

__all__ = ["parse_formula"]

_PATSY_INTERCEPT = "Intercept"


def parse_formula(formula: str, data: pd.DataFrame) -> dict[str, Any]:
    """Build ``y`` and ``X`` from a two-sided formula.

    Rows with missing values in any referenced column are dropped (as in
    R's ``model.frame``). Patsy's ``Intercept`` column is renamed to
    ``(Intercept)``.

    Returns
    -------
    dict
        ``y`` (ndarray), ``X`` (ndarray), ``var_names`` (list of str),
        ``depvar`` (str), ``row_index`` (pandas.Index of the kept rows) and
        ``include_intercept`` (bool).

    """
    if "~" not in formula:
        msg = f"formula must be two-sided ('y ~ x1 + x2'), got {formula!r}"
        raise ValueError(msg)
    if not isinstance(data, pd.DataFrame):
        raise TypeError("data must be a pandas DataFrame")
    na = patsy.NAAction(on_NA="drop")
    y_df, X_df = patsy.dmatrices(formula, data, NA_action=na, return_type="dataframe")
    if y_df.shape[1] != 1:
        msg = f"the response must be a single column, got {list(y_df.columns)}"
        raise ValueError(msg)
    names = [CONST_NAME if nm == _PATSY_INTERCEPT else str(nm) for nm in X_df.columns]
    return {
        "y": y_df.iloc[:, 0].to_numpy(dtype=np.float64),
        "X": np.asarray(X_df.to_numpy(dtype=np.float64), order="C"),
        "var_names": names,
        "depvar": str(y_df.columns[0]),
        "row_index": X_df.index,
        "include_intercept": CONST_NAME in names,
    }

"""Summary tables for fitted robust linear models.

Text and LaTeX rendering goes through ``tabulate``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

import numpy as np
import pandas as pd
from tabulate import tabulate

from robustreg.estimators.base import EstimationResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from robustreg.estimators.rlm import RobustLinearModel

__all__ = ["modelsummary", "summary"]

_FOOTER_KEYS = ("Estimator", "Method", "Scale", "Deviance", "Converged", "Iterations")


def _format_value(val: Any, fmt: str) -> str:
    if val is None:
        return ""
    if isinstance(val, (bool, np.bool_)):
        return "Yes" if val else "No"
    if isinstance(val, (float, np.floating)):
        return format(float(val), fmt)
    return str(val)


def _tablefmt(output: str) -> str:
    if output == "text":
        return "simple"
    if output == "latex":
        return "latex_booktabs"
    raise ValueError("output must be 'text' or 'latex'")


def summary(
    model: RobustLinearModel,
    level: float = 0.95,
    digits: int = 4,
    *,
    output: str = "text",
) -> str:
    """Coefficient table of one fitted model with its fit statistics.

    Parameters
    ----------
    model : RobustLinearModel
        A fitted model.
    level : float
        Confidence level of the intervals.
    digits : int
        Significant digits of the table entries.
    output : {'text', 'latex'}

    """
    if not model.is_fitted:
        raise RuntimeError("the model is not fitted; call fit() first")
    tablefmt = _tablefmt(output)
    ct = model.coeftable(level)
    body = tabulate(
        ct.reset_index().to_numpy().tolist(),
        headers=["", *ct.columns],
        floatfmt=f".{digits}g",
        tablefmt=tablefmt,
    )
    fmt = f".{digits}g"
    stats_rows = [
        ["Robust regression with", repr(model.est)],
        ["Scale", format(model.scale(), fmt)],
        ["Deviance", format(model.deviance(), fmt)],
        ["Observations", str(model.nobs)],
        ["Residual dof", str(model.dof_residual)],
    ]
    if model.formula is not None:
        stats_rows.insert(1, ["Formula", model.formula])
    head = tabulate(stats_rows, tablefmt="plain" if output == "text" else tablefmt)
    return f"{head}\n\nCoefficients:\n{body}"


def modelsummary(  # noqa: PLR0913
    models: Sequence[RobustLinearModel | EstimationResult],
    model_names: Sequence[str] | None = None,
    *,
    coef_format: str = ".4g",
    se_format: str = ".4g",
    footer_keys: Sequence[str] | None = None,
    output: str = "text",
) -> str:
    """Side-by-side coefficients (with standard errors below) of several fits.

    Accepts fitted models or their :class:`EstimationResult`. Rows are the
    union of coefficient names in order of first appearance.
    """
    results = [m if isinstance(m, EstimationResult) else m.result() for m in models]
    if model_names is None:
        model_names = [f"({i + 1})" for i in range(len(results))]
    if len(model_names) != len(results):
        raise ValueError("model_names must have one entry per model")
    tablefmt = _tablefmt(output)

    index: list[str] = []
    for res in results:
        index.extend(str(k) for k in res.params.index if str(k) not in index)

    rows: list[list[str]] = []
    for name in index:
        coef_row, se_row = [name], [""]
        for res in results:
            params = res.params.rename(index=str)
            se = res.se.rename(index=str) if res.se is not None else pd.Series(dtype=float)
            coef_row.append(_format_value(params.get(name), coef_format))
            s = se.get(name)
            se_row.append(f"({format(float(s), se_format)})" if s is not None else "")
        rows.extend([coef_row, se_row])

    keys = list(footer_keys) if footer_keys is not None else list(_FOOTER_KEYS)
    rows.append(["" for _ in range(len(results) + 1)])
    rows.append(["N", *[_format_value(r.n_obs, "d") for r in results]])
    for key in keys:
        rows.append([key, *[_format_value(r.model_info.get(key), coef_format) for r in results]])

    return cast(
        "str",
        tabulate(rows, headers=["", *model_names], stralign="center", tablefmt=tablefmt),
    )

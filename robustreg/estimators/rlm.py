"""Robust linear model: response + predictor + IRLS fitting.

Usage
-----
>>> import numpy as np
>>> from robustreg import RobustLinearModel, MMEstimator
>>> m = RobustLinearModel(X, y, MMEstimator()).fit()
>>> m.coeftable()

The estimator kind selects the engine: M and generalized M-quantile fits
minimize the deviance at a fixed scale, S and tau fits minimize a robust
scale, and MM fits run an S phase followed by an efficient M phase at the
S scale. S, MM and tau fits can start from a subsampling search
(``resample=True``) since their objectives are not convex.
"""

# robustreg/estimators/rlm.py
from __future__ import annotations

import logging
import warnings
from dataclasses import fields
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy import stats

from robustreg.core import linalg as la
from robustreg.core.errors import CapabilityError, DimensionMismatch
from robustreg.core.irls import select_engine
from robustreg.core.l1fit import l1_regression
from robustreg.core.losses import LossFunction
from robustreg.core.predictor import make_predictor
from robustreg.core.resampling import resampling_best_estimate
from robustreg.core.response import RobustLinResp
from robustreg.core.scale import mad_residual_scale, mad_scale
from robustreg.estimators.base import (
    AbstractEstimator,
    EstimationResult,
    IRLSConfig,
    ResamplingConfig,
)
from robustreg.estimators.robust import (
    MEstimator,
    is_quantile_capable,
    set_quantile,
)
from robustreg.utils.auto_constant import CONST_NAME, add_constant, find_constant_column
from robustreg.utils.formula import parse_formula

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from robustreg.core.irls import IRLSResult

__all__ = ["RobustLinearModel", "rlm"]

LOGGER = logging.getLogger(__name__)

_INITIAL_SCALE_METHODS = ("mad", "extrema", "l1")


def _resolve_estimator(est: Any, quantile: float | None) -> AbstractEstimator:
    if isinstance(est, LossFunction) or (isinstance(est, type) and issubclass(est, LossFunction)):
        est = MEstimator(est)
    if not isinstance(est, AbstractEstimator):
        raise TypeError(f"est must be an estimator or a loss function, got {est!r}")
    if quantile is not None:
        _check_quantile(est, quantile)
        set_quantile(est, quantile)
    return est


def _check_quantile(est: AbstractEstimator, quantile: float) -> None:
    if not is_quantile_capable(est):
        raise CapabilityError(
            f"quantile is only available for a GeneralizedQuantileEstimator, got {est!r}",
        )
    q = float(quantile)
    if not (0.0 < q < 1.0):
        raise ValueError(f"quantile should be in the interval (0, 1), got {q}")


def _level_label(level: float) -> str:
    pct = level * 100
    return str(int(round(pct))) if np.isclose(pct, round(pct)) else f"{pct:g}"


class RobustLinearModel:
    """Robust linear regression fitted by (penalized) IRLS.

    Parameters
    ----------
    X : array-like, DataFrame or scipy.sparse matrix, shape (n, p)
        Design matrix. DataFrame columns give the coefficient names.
    y : array-like, shape (n,)
    est : AbstractEstimator or LossFunction
        Robust estimator. A bare loss is wrapped in an ``MEstimator``.
    method : {'chol', 'cg'}, default 'chol'
        Solver of the weighted normal equations.
    weights : array-like, shape (n,), optional
        Nonnegative prior weights.
    offset : array-like, shape (n,), optional
    fit_dispersion : bool, default False
        Set to True once the scale is itself estimated (S, MM, tau fits).
    ridge_lambda : float, default 0
        Ridge shrinkage toward ``beta_prior`` with penalty matrix ``ridge_G``.
    ridge_G : array-like, shape (p, p), optional
    beta_prior : array-like, shape (p,), optional
    quantile : float, optional
        Quantile level in (0, 1), only for a ``GeneralizedQuantileEstimator``;
        any other estimator raises :class:`CapabilityError`.
    var_names : sequence of str, optional
    add_const : bool, default False
        Prepend an ``(Intercept)`` column unless X already has one.
    irls_config : IRLSConfig, optional
        Default convergence controls; ``fit`` keyword overrides win.

    """

    def __init__(  # noqa: PLR0913
        self,
        X: Any,
        y: Any,
        est: AbstractEstimator | LossFunction | type[LossFunction],
        *,
        method: str = "chol",
        weights: Any | None = None,
        offset: Any | None = None,
        fit_dispersion: bool = False,
        ridge_lambda: float = 0.0,
        ridge_G: Any | None = None,
        beta_prior: Any | None = None,
        quantile: float | None = None,
        var_names: Sequence[str] | None = None,
        add_const: bool = False,
        irls_config: IRLSConfig | None = None,
    ) -> None:
        if isinstance(X, pd.DataFrame):
            if var_names is None:
                var_names = [str(c) for c in X.columns]
            X = X.to_numpy(dtype=np.float64)
        self.depvar = str(y.name) if isinstance(y, pd.Series) and y.name is not None else "y"
        y_arr = np.asarray(y, dtype=np.float64).reshape(-1)

        if add_const:
            if sp.issparse(X):
                raise ValueError("add_const is not supported for sparse X; add the column explicitly")
            X, var_names, _ = add_constant(X, var_names)
        if sp.issparse(X):
            n_rows, p = X.shape
        else:
            X = np.asarray(X, dtype=np.float64)
            if X.ndim == 1:
                X = X.reshape(-1, 1)
            n_rows, p = X.shape
        if n_rows != y_arr.shape[0]:
            raise DimensionMismatch(
                f"number of rows in X and y must match: {n_rows} != {y_arr.shape[0]}",
            )

        self.pred = make_predictor(
            X, method, ridge_lambda=ridge_lambda, G=ridge_G, beta_prior=beta_prior,
        )
        self.resp = RobustLinResp(_resolve_estimator(est, quantile), y_arr, offset, weights)

        if var_names is None:
            names = [f"x{i}" for i in range(p)]
            j = find_constant_column(self.pred.X)
            if j is not None:
                names[j] = CONST_NAME
            self.var_names = names
        else:
            names = [str(v) for v in var_names]
            if len(names) != p:
                raise ValueError(f"var_names length ({len(names)}) does not match X columns ({p}).")
            self.var_names = names

        self.fit_dispersion = bool(fit_dispersion)
        self.fitted = False
        self.irls_config = (irls_config or IRLSConfig()).validate()
        self.formula: str | None = None
        self.row_index: pd.Index | None = None
        self._last_result: IRLSResult | None = None

    def __repr__(self) -> str:
        state = "fitted" if self.fitted else "not fitted"
        return f"RobustLinearModel({self.est!r}, n={self.nobs}, p={self.dof}, {state})"

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_formula(
        cls,
        formula: str,
        data: pd.DataFrame,
        est: AbstractEstimator | LossFunction | type[LossFunction],
        *,
        weights: str | Any | None = None,
        offset: str | Any | None = None,
        **kwargs: Any,
    ) -> RobustLinearModel:
        """Build a model from a Patsy formula; ``weights``/``offset`` may name columns."""
        parsed = parse_formula(formula, data)
        rows = parsed["row_index"]

        def _column(value: Any) -> Any:
            if isinstance(value, str):
                return data.loc[rows, value].to_numpy(dtype=np.float64)
            if value is not None and len(value) == len(data) and len(rows) != len(data):
                return np.asarray(value, dtype=np.float64)[data.index.get_indexer(rows)]
            return value

        model = cls(
            parsed["X"],
            pd.Series(parsed["y"], name=parsed["depvar"]),
            est,
            weights=_column(weights),
            offset=_column(offset),
            var_names=parsed["var_names"],
            **kwargs,
        )
        model.formula = formula
        model.row_index = rows
        return model

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------
    def initial_scale(self, method: str = "mad", *, factor: float = 1.0) -> float:
        """Starting scale: 'mad' of y, 'extrema' (half range) or 'L1' fit residual MAD."""
        if not factor > 0:
            raise ValueError("factor should be positive")
        m = str(method).strip().lower()
        y = self.resp.y
        wts = self.resp.wts if self.resp.wts.shape[0] else None
        if m == "mad":
            sigma = mad_scale(y if wts is None else wts * y, factor=factor)
        elif m == "l1":
            yo = y - self.resp.offset if self.resp.offset.shape[0] else y
            beta = l1_regression(self.pred.X, yo, wts)
            sigma = mad_residual_scale(yo - la.matvec(self.pred.X, beta), factor=factor, wts=wts)
        elif m == "extrema":
            # not robust
            sigma = float(np.ptp(y)) / 2.0
        else:
            msg = f"initial_scale must be a positive number or one of {_INITIAL_SCALE_METHODS}, got {method!r}"
            raise ValueError(msg)
        if not (sigma > 0 and np.isfinite(sigma)):
            msg = f"initial scale from {method!r} is {sigma}; pass a positive initial_scale"
            raise ValueError(msg)
        return float(sigma)

    def _process_initial_coef(self, initial_coef: Any | None) -> NDArray[np.float64] | None:
        if initial_coef is None or len(initial_coef) == 0:
            return None
        beta0 = np.asarray(initial_coef, dtype=np.float64).reshape(-1)
        if beta0.shape[0] != self.dof:
            warnings.warn(
                f"initial_coef has length {beta0.shape[0]}, expected {self.dof}; ignored.",
                UserWarning,
                stacklevel=3,
            )
            return None
        return beta0

    def fit(  # noqa: PLR0913
        self,
        initial_scale: str | float = "mad",
        initial_coef: Any | None = None,
        *,
        correct_leverage: bool = False,
        resample: bool = False,
        resampling_options: ResamplingConfig | dict[str, Any] | None = None,
        rng: np.random.Generator | None = None,
        verbose: bool = False,
        **irls_overrides: Any,
    ) -> RobustLinearModel:
        """Fit the model; returns early when already fitted (use :meth:`refit`).

        Parameters
        ----------
        initial_scale : {'mad', 'extrema', 'L1'} or float
        initial_coef : array-like, optional
            Starting coefficients; least squares when omitted.
        correct_leverage : bool
            Replace the prior weights by ``sqrt(1 - h_i)``.
        resample : bool
            Start S/MM/tau fits from the best subsampling candidate.
        resampling_options : ResamplingConfig or dict, optional
        rng : numpy.random.Generator, optional
        verbose : bool
            Log the progress of the iterations at INFO level.
        **irls_overrides
            Fields of :class:`IRLSConfig` (``maxiter``, ``minstepfac``,
            ``atol``, ``rtol``, ``miniter``).

        Raises
        ------
        ConvergenceError, LineSearchError
            When the engine did not converge.

        """
        if self.fitted:
            return self
        cfg = self.irls_config.updated(**irls_overrides)

        if isinstance(initial_scale, str):
            sigma0 = self.initial_scale(initial_scale)
        else:
            sigma0 = float(initial_scale)
        beta0 = self._process_initial_coef(initial_coef)

        if correct_leverage:
            if self.resp.wts.shape[0]:
                warnings.warn(
                    "correct_leverage replaces the prior weights by the leverage weights sqrt(1 - h).",
                    UserWarning,
                    stacklevel=2,
                )
            self.resp.set_weights(self.leverage_weights())

        kind = self.est.kind
        if resample:
            if not kind.scale_coupled:
                raise CapabilityError(f"resampling is only available for S, MM and tau estimators, got {self.est!r}")
            sigma0, beta0 = resampling_best_estimate(
                self, kind, resampling_options, rng, irls_config=cfg, verbose=verbose,
            )

        if verbose:
            LOGGER.info("Fit with %r", self.est)
        engine = select_engine(kind)
        result = engine(self, beta0, sigma0, cfg, verbose=verbose)
        self._last_result = result
        result.raise_for_status()

        if kind.scale_coupled:
            # sigma was estimated
            self.fit_dispersion = True
        self.fitted = True
        return self

    def refit(  # noqa: PLR0913
        self,
        y: Any | None = None,
        *,
        weights: Any | None = None,
        offset: Any | None = None,
        quantile: float | None = None,
        ridge_lambda: float | None = None,
        method: str | None = None,
        **fit_kwargs: Any,
    ) -> RobustLinearModel:
        """Reset the coefficients and the response, then fit again.

        All arguments are checked first; a rejected refit leaves the model
        and its previous fit untouched.

        Raises
        ------
        CapabilityError
            ``quantile`` for an estimator that is not a generalized
            M-quantile, or ``ridge_lambda`` for a model without ridge penalty.
        DimensionMismatch, ValueError
            Invalid ``y``, ``weights``, ``offset``, ``quantile`` or
            ``ridge_lambda``.

        """
        if method is not None:
            warnings.warn(
                f"the method cannot be changed when refitting, ignore the method argument {method!r}.",
                UserWarning,
                stacklevel=2,
            )
        # validate every argument before the model is modified
        y_new = None if y is None else self.resp.check_response(y)
        wts_new = None if weights is None else self.resp.check_weights(weights)
        offset_new = None if offset is None else self.resp.check_offset(offset)
        if quantile is not None:
            _check_quantile(self.est, quantile)
        lam = None
        if ridge_lambda is not None:
            if not self.pred.is_ridge:
                raise CapabilityError(
                    "ridge_lambda can be changed only if the model was built with a ridge penalty",
                )
            lam = float(ridge_lambda)
            if lam < 0 or not np.isfinite(lam):
                raise ValueError("ridge_lambda must be nonnegative and finite")

        if y_new is not None:
            self.resp.y[:] = y_new
        if wts_new is not None:
            self.resp.wts = wts_new
        if offset_new is not None:
            self.resp.offset = offset_new
        if quantile is not None:
            set_quantile(self.est, quantile)
        if lam is not None:
            self.pred.ridge_lambda = lam

        self.pred.reset_coefficients()
        self.resp.init_resp()
        self.fitted = False
        return self.fit(**fit_kwargs)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def est(self) -> AbstractEstimator:
        return self.resp.est

    @property
    def method(self) -> str:
        return self.pred.method

    @property
    def is_fitted(self) -> bool:
        return self.fitted

    @property
    def last_result(self) -> IRLSResult | None:
        return self._last_result

    @property
    def nobs(self) -> int:
        return self.resp.nobs()

    @property
    def dof(self) -> int:
        return int(self.pred.shape[1])

    @property
    def dof_residual(self) -> int:
        return self.nobs - self.dof

    def has_intercept(self) -> bool:
        return self.pred.has_intercept()

    def coef(self) -> NDArray[np.float64]:
        return self.pred.coefficients()

    @property
    def params(self) -> pd.Series:
        return pd.Series(self.coef().copy(), index=self.var_names, name="coef")

    def model_matrix(self) -> Any:
        return self.pred.X

    def scale(self, sqr: bool = False) -> float:
        """Robust scale used in the fit (squared when ``sqr``)."""
        s = self.resp.sigma
        return s * s if sqr else s

    def tau_scale(self, sqr: bool = False) -> float:
        """tau-scale minimized by tau-estimation."""
        return self.resp.tau_scale(sqr)

    def deviance(self) -> float:
        """Sum of twice the loss of the scaled residuals (OLS deviance for L2)."""
        return self.resp.deviance()

    def null_deviance(self) -> float:
        return self.resp.null_deviance(intercept=self.has_intercept())

    def loglikelihood(self) -> float:
        return self.resp.loglikelihood()

    def null_loglikelihood(self) -> float:
        return self.resp.null_loglikelihood(intercept=self.has_intercept())

    def dispersion(self, sqr: bool = False) -> float:
        return self.resp.dispersion(self.dof_residual, sqr=sqr)

    def working_weights(self) -> NDArray[np.float64]:
        """Robust weights of the last iteration; outliers get low weights."""
        return self.resp.working_weights()

    def residuals(self) -> NDArray[np.float64]:
        return self.resp.residuals()

    def fitted_values(self) -> NDArray[np.float64]:
        return self.resp.fitted()

    def response(self) -> NDArray[np.float64]:
        return self.resp.y

    def weights(self) -> NDArray[np.float64]:
        return self.resp.weights()

    def vcov(self) -> NDArray[np.float64]:
        """Unscaled covariance (X' W X)^{-1} at the working weights."""
        return self.pred.covariance(self.resp.working_weights())

    def stderror(self) -> NDArray[np.float64]:
        lv = self.resp.location_variance(self.dof_residual, sqr=False)
        return lv * np.sqrt(np.diag(self.vcov()))

    def confint(self, level: float = 0.95) -> pd.DataFrame:
        if not (0.0 < level < 1.0):
            raise ValueError("level must be in (0, 1)")
        alpha = stats.t.ppf((1.0 - level) / 2.0, self.dof_residual)
        cc, se = self.coef(), self.stderror()
        lab = _level_label(level)
        return pd.DataFrame(
            {f"Lower {lab}%": cc + alpha * se, f"Upper {lab}%": cc - alpha * se},
            index=self.var_names,
        )

    def coeftable(self, level: float = 0.95) -> pd.DataFrame:
        """Coefficients, standard errors, t statistics, p-values and intervals."""
        cc = self.coef().copy()
        se = self.stderror()
        with np.errstate(divide="ignore", invalid="ignore"):
            tt = cc / se
        pvals = stats.f.sf(tt**2, 1, self.dof_residual)
        table = pd.DataFrame(
            {"Coef.": cc, "Std. Error": se, "t": tt, "Pr(>|t|)": pvals},
            index=self.var_names,
        )
        return table.join(self.confint(level))

    def predict(self, newX: Any | None = None, offset: Any | None = None) -> NDArray[np.float64]:
        """Fitted values, or predictions for ``newX`` (with ``offset`` when fitted with one)."""
        if newX is None:
            if offset is not None:
                raise ValueError("offset can only be given together with newX")
            return self.fitted_values()
        Xn = newX.to_numpy(dtype=np.float64) if isinstance(newX, pd.DataFrame) else newX
        if not sp.issparse(Xn):
            Xn = np.asarray(Xn, dtype=np.float64)
            if Xn.ndim == 1:
                Xn = Xn.reshape(1, -1)
        if Xn.shape[1] != self.dof:
            raise DimensionMismatch(f"newX must have {self.dof} columns, got {Xn.shape[1]}")
        mu = la.matvec(Xn, self.coef())
        off = np.zeros(0) if offset is None else np.asarray(offset, dtype=np.float64).reshape(-1)
        if self.resp.offset.shape[0]:
            if off.shape[0] != mu.shape[0]:
                raise ValueError("fit with offset, so `offset` must be an offset of length `newX.shape[0]`")
            mu = mu + off
        elif off.shape[0]:
            raise ValueError("fit without offset, so value of `offset` does not make sense")
        return mu

    def projection_matrix(self) -> NDArray[np.float64]:
        """Robust projection matrix X (X' W X)^{-1} X' W."""
        return self.pred.projection_matrix(self.resp.working_weights())

    def leverage(self) -> NDArray[np.float64]:
        return self.pred.leverage(self.resp.working_weights())

    def leverage_weights(self) -> NDArray[np.float64]:
        """``sqrt(1 - h_i)`` with h the hat values at the prior weights."""
        w = self.resp.weights()
        G = la.gram(self.pred.X, w)
        Ginv = la.chol_solve(la.safe_cholesky(G), np.eye(G.shape[0]))
        h = la.hat_diag(self.pred.X, Ginv, w)
        return np.sqrt(np.clip(1.0 - h, 0.0, None))

    def result(self) -> EstimationResult:
        """Standardized results container of the fit."""
        if not self.fitted:
            raise RuntimeError("the model is not fitted; call fit() first")
        res = self._last_result
        return EstimationResult(
            params=self.params,
            se=pd.Series(self.stderror(), index=self.var_names, name="se"),
            n_obs=self.nobs,
            model_info={
                "Estimator": repr(self.est),
                "Method": self.method,
                "Scale": self.scale(),
                "Deviance": self.deviance(),
                "Converged": bool(res.converged) if res is not None else None,
                "Iterations": int(res.n_iter) if res is not None else None,
                "FitDispersion": self.fit_dispersion,
                "Formula": self.formula,
            },
            extra={
                "irls": res,
                "working_weights": self.working_weights().copy(),
                "residuals": self.residuals().copy(),
            },
        )


_FIT_KEYS = frozenset(
    {
        "initial_scale",
        "initial_coef",
        "correct_leverage",
        "resample",
        "resampling_options",
        "rng",
        "verbose",
    }
    | {f.name for f in fields(IRLSConfig)},
)


def rlm(
    X: Any,
    y: Any,
    est: AbstractEstimator | LossFunction | type[LossFunction],
    *,
    dofit: bool = True,
    **kwargs: Any,
) -> RobustLinearModel:
    """Build (and by default fit) a :class:`RobustLinearModel`.

    ``X`` and ``y`` are either a design matrix and a response vector, or a
    formula string and a DataFrame. Keyword arguments are split between the
    constructor and :meth:`RobustLinearModel.fit`.
    """
    fit_kw = {k: kwargs.pop(k) for k in list(kwargs) if k in _FIT_KEYS}
    if isinstance(X, str):
        model = RobustLinearModel.from_formula(X, y, est, **kwargs)
    else:
        model = RobustLinearModel(X, y, est, **kwargs)
    return model.fit(**fit_kw) if dofit else model

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from robustreg import (
    EstimationResult,
    HuberLoss,
    IRLSConfig,
    L2Loss,
    MEstimator,
    MMEstimator,
    RobustLinearModel,
    SEstimator,
    TauEstimator,
    TukeyLoss,
    rlm,
)

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def design(rng):
    n = 100
    x = rng.uniform(-2.0, 2.0, size=n)
    X = np.column_stack([np.ones(n), x])
    y = 1.0 + 2.0 * x + 0.5 * rng.standard_normal(n)
    return X, y

@pytest.fixture
def outliers(design):
    X, y = design
    y = y.copy()
    bad = np.arange(0, 100, 10)
    y[bad] += 20.0
    return X, y, bad

@pytest.fixture
def frame(design):
    X, y = design
    return pd.DataFrame({"y": y, "x": X[:, 1], "w": np.linspace(0.5, 1.5, X.shape[0])})

# ---------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------

def test_chol_and_cg_agree(outliers):
    X, y, _ = outliers
    a = RobustLinearModel(X, y, MEstimator(HuberLoss), method="chol").fit()
    b = RobustLinearModel(X, y, MEstimator(HuberLoss), method="cg").fit()
    assert a.method == "chol" and b.method == "cg"
    assert np.max(np.abs(a.coef() - b.coef())) / np.max(np.abs(a.coef())) < 1e-5

def test_sparse_design(design):
    X, y = design
    a = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit()
    b = RobustLinearModel(sp.csr_matrix(X), y, MEstimator(HuberLoss), method="cg").fit()
    assert np.allclose(a.coef(), b.coef(), rtol=1e-5)

def test_unit_weights_equal_unweighted(outliers):
    X, y, _ = outliers
    a = RobustLinearModel(X, y, MEstimator(TukeyLoss)).fit()
    b = RobustLinearModel(X, y, MEstimator(TukeyLoss), weights=np.ones(len(y))).fit()
    assert np.allclose(a.coef(), b.coef(), rtol=1e-10, atol=1e-12)

def test_zero_weights_drop_rows(outliers):
    X, y, bad = outliers
    w = np.ones(len(y))
    w[bad] = 0.0
    a = RobustLinearModel(X, y, MEstimator(L2Loss), weights=w).fit()
    keep = w > 0
    expected, *_ = np.linalg.lstsq(X[keep], y[keep], rcond=None)
    assert np.allclose(a.coef(), expected, rtol=1e-6)
    assert a.nobs == keep.sum()
    assert a.dof_residual == keep.sum() - 2

def test_refit_is_idempotent(outliers):
    X, y, _ = outliers
    m = RobustLinearModel(X, y, MMEstimator()).fit()
    first = m.coef().copy()
    m.refit()
    assert np.allclose(m.coef(), first, rtol=1e-8, atol=1e-10)

def test_fit_twice_is_a_noop(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit()
    res = m.last_result
    assert m.fit() is m
    assert m.last_result is res

def test_refit_with_new_response(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(L2Loss)).fit()
    m.refit(2.0 * y)
    expected, *_ = np.linalg.lstsq(X, 2.0 * y, rcond=None)
    assert np.allclose(m.coef(), expected, rtol=1e-6)

def test_refit_ignores_method(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit()
    with pytest.warns(UserWarning, match="method"):
        m.refit(method="cg")
    assert m.method == "chol"

def test_mm_with_resampling_rejects_outliers(outliers):
    X, y, bad = outliers
    m = RobustLinearModel(X, y, MMEstimator()).fit(
        resample=True, resampling_options={"seed": 1},
    )
    assert np.allclose(m.coef(), [1.0, 2.0], atol=0.2)
    assert np.all(m.working_weights()[bad] < 0.1)
    assert m.fit_dispersion

@pytest.mark.parametrize("est", [SEstimator(), TauEstimator()])
def test_high_breakdown_fits(outliers, est):
    X, y, _ = outliers
    m = RobustLinearModel(X, y, est).fit()
    assert np.allclose(m.coef(), [1.0, 2.0], atol=0.3)
    assert m.scale() > 0

def test_tau_scale_accessor(design):
    X, y = design
    m = RobustLinearModel(X, y, TauEstimator()).fit()
    assert m.tau_scale() == pytest.approx(m.last_result.value)
    assert m.tau_scale(sqr=True) == pytest.approx(m.tau_scale() ** 2)

@pytest.mark.parametrize("method", ["mad", "extrema", "L1"])
def test_initial_scale_methods(outliers, method):
    X, y, _ = outliers
    m = RobustLinearModel(X, y, MEstimator(HuberLoss))
    s = m.initial_scale(method)
    assert s > 0
    m.fit(initial_scale=method)
    assert m.scale() == pytest.approx(s)

def test_initial_scale_values(outliers):
    X, y, _ = outliers
    m = RobustLinearModel(X, y, MEstimator(HuberLoss))
    assert m.initial_scale("extrema") == pytest.approx(np.ptp(y) / 2)
    # spread of the absolute L1 residuals, well below the contaminated range
    s_l1 = m.initial_scale("L1")
    assert 0.05 < s_l1 < 1.0
    with pytest.raises(ValueError):
        m.initial_scale("bogus")

def test_numeric_initial_scale_and_coef(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit(initial_scale=0.7, initial_coef=[1.0, 2.0])
    assert m.scale() == 0.7
    with pytest.warns(UserWarning, match="initial_coef"):
        RobustLinearModel(X, y, MEstimator(HuberLoss)).fit(initial_coef=[1.0, 2.0, 3.0])

def test_correct_leverage(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss))
    lw = m.leverage_weights()
    m.fit(correct_leverage=True)
    assert np.allclose(m.weights(), lw)
    assert np.all((lw > 0) & (lw < 1))

# ---------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------

def test_coeftable_and_confint(outliers):
    X, y, _ = outliers
    m = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit()
    ct = m.coeftable()
    assert list(ct.columns) == ["Coef.", "Std. Error", "t", "Pr(>|t|)", "Lower 95%", "Upper 95%"]
    assert list(ct.index) == ["(Intercept)", "x1"]
    assert np.all(ct["Std. Error"] > 0)
    assert np.all(ct["Lower 95%"] < ct["Coef."])
    assert np.all(ct["Coef."] < ct["Upper 95%"])
    assert ct.loc["x1", "Pr(>|t|)"] < 1e-6

    ci90 = m.confint(0.9)
    assert list(ci90.columns) == ["Lower 90%", "Upper 90%"]
    assert np.all(ci90["Lower 90%"] > ct["Lower 95%"])
    with pytest.raises(ValueError):
        m.confint(1.5)

def test_l2_standard_errors_match_ols(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(L2Loss)).fit()
    resid = y - X @ m.coef()
    s2 = resid @ resid / (len(y) - 2)
    se = np.sqrt(np.diag(s2 * np.linalg.inv(X.T @ X)))
    assert np.allclose(m.stderror(), se, rtol=1e-6)
    assert m.dispersion() == pytest.approx(np.sqrt(s2))

def test_predict(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit()
    assert np.allclose(m.predict(), m.fitted_values())
    Xn = np.array([[1.0, 0.0], [1.0, 1.0]])
    assert np.allclose(m.predict(Xn), Xn @ m.coef())
    with pytest.raises(ValueError, match="without offset"):
        m.predict(Xn, offset=np.ones(2))
    with pytest.raises(ValueError):
        m.predict(offset=np.ones(2))

def test_predict_with_offset(design):
    X, y = design
    off = np.full(len(y), 0.5)
    m = RobustLinearModel(X, y + off, MEstimator(HuberLoss), offset=off).fit()
    assert np.allclose(m.predict(), m.fitted_values())
    # mu includes the offset
    assert np.allclose(m.fitted_values(), X @ m.coef() + off)
    Xn = np.array([[1.0, 0.0]])
    assert np.allclose(m.predict(Xn, offset=[2.0]), Xn @ m.coef() + 2.0)
    with pytest.raises(ValueError, match="with offset"):
        m.predict(Xn)

def test_leverage_and_projection(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss)).fit()
    h = m.leverage()
    assert h.sum() == pytest.approx(2.0)
    P = m.projection_matrix()
    assert np.allclose(np.diag(P), h)
    assert np.allclose(P @ P, P)

def test_loglikelihood_and_deviance(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(L2Loss)).fit()
    assert m.null_deviance() >= m.deviance()
    assert m.null_loglikelihood() <= m.loglikelihood()
    assert np.allclose(m.residuals(), y - m.fitted_values())
    assert m.response() is m.resp.y

def test_result_container(outliers):
    X, y, _ = outliers
    m = RobustLinearModel(X, y, MMEstimator()).fit()
    res = m.result()
    assert isinstance(res, EstimationResult)
    assert list(res.params.index) == ["(Intercept)", "x1"]
    assert res.n_obs == len(y)
    assert res.model_info["Converged"] is True
    assert res.model_info["FitDispersion"] is True
    assert res.extra["irls"] is m.last_result
    assert np.allclose(res.tvalues, m.coeftable()["t"])
    with pytest.raises(RuntimeError):
        RobustLinearModel(X, y, MMEstimator()).result()

# ---------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------

def test_names_from_dataframe_and_add_const(design):
    X, y = design
    df = pd.DataFrame({"slope": X[:, 1]})
    m = RobustLinearModel(df, pd.Series(y, name="resp"), HuberLoss, add_const=True)
    assert m.var_names == ["(Intercept)", "slope"]
    assert m.depvar == "resp"
    assert m.has_intercept()
    assert isinstance(m.est, MEstimator)

def test_from_formula(frame):
    m = RobustLinearModel.from_formula("y ~ x", frame, MEstimator(HuberLoss), weights="w").fit()
    assert m.var_names == ["(Intercept)", "x"]
    assert m.formula == "y ~ x"
    assert np.allclose(m.weights(), frame["w"])
    assert np.allclose(m.coef(), [1.0, 2.0], atol=0.3)

def test_from_formula_drops_missing_rows(frame):
    frame = frame.copy()
    frame.loc[[2, 5], "x"] = np.nan
    m = RobustLinearModel.from_formula("y ~ x", frame, MEstimator(L2Loss), weights="w")
    assert m.nobs == len(frame) - 2
    assert 2 not in m.row_index

def test_rlm_helper(design, frame):
    X, y = design
    m = rlm(X, y, MEstimator(HuberLoss), method="cg", maxiter=50)
    assert m.is_fitted
    assert m.method == "cg"
    f = rlm("y ~ x", frame, TukeyLoss, initial_scale="L1")
    assert f.is_fitted
    assert f.formula == "y ~ x"
    lazy = rlm(X, y, MEstimator(HuberLoss), dofit=False)
    assert not lazy.is_fitted

def test_irls_config_defaults_and_overrides(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss), irls_config=IRLSConfig(maxiter=50))
    assert m.irls_config.maxiter == 50
    with pytest.raises(TypeError, match="unknown"):
        m.fit(bogus=1)

import numpy as np
import pytest

import robustreg.core.resampling as resampling
from robustreg.core.errors import CapabilityError, ConvergenceError
from robustreg.core.irls import IRLSResult
from robustreg.core.losses import HuberLoss
from robustreg.core.resampling import (
    resampling_best_estimate,
    resampling_initial_coef,
    resampling_min_n,
)
from robustreg.estimators.base import EstimatorKind, ResamplingConfig
from robustreg.estimators.rlm import RobustLinearModel
from robustreg.estimators.robust import MEstimator, MMEstimator, SEstimator, TauEstimator

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def design(rng):
    n = 60
    x = rng.uniform(-2.0, 2.0, size=n)
    X = np.column_stack([np.ones(n), x])
    y = 1.0 + 2.0 * x + 0.3 * rng.standard_normal(n)
    return X, y

# ---------------------------------------------------------------------
# Number of subsamples
# ---------------------------------------------------------------------

def test_min_n():
    # ceil(log(0.05) / log(0.75)) = ceil(10.41)
    assert resampling_min_n(2) == 11
    assert resampling_min_n(1) == 5
    assert resampling_min_n(3, eps=0.0) == 1
    assert resampling_min_n(2, alpha=0.01) > resampling_min_n(2, alpha=0.05)
    with pytest.raises(ValueError):
        resampling_min_n(0)
    with pytest.raises(ValueError):
        resampling_min_n(2, eps=1.0)

def test_config_validation():
    with pytest.raises(ValueError):
        ResamplingConfig(n_subsamples=0).validate()
    with pytest.raises(ValueError):
        ResamplingConfig.from_options({"prop_outliers": 1.5})
    with pytest.raises(TypeError):
        ResamplingConfig.from_options({"unknown": 1})
    cfg = ResamplingConfig.from_options({"n_samples": 5, "seed": 1})
    assert cfg.n_samples == 5 and cfg.seed == 1

# ---------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------

def test_initial_coef_is_subset_least_squares(design):
    X, y = design
    m = RobustLinearModel(X, y, SEstimator())
    inds = [3, 10, 25, 40]
    expected, *_ = np.linalg.lstsq(X[inds], y[inds], rcond=None)
    assert np.allclose(resampling_initial_coef(m, inds), expected)

def test_full_sample_matches_plain_s_fit(design):
    X, y = design
    plain = RobustLinearModel(X, y, SEstimator()).fit()
    opts = {"n_samples": 1, "n_subsamples": 1, "n_points": X.shape[0], "seed": 0}
    resampled = RobustLinearModel(X, y, SEstimator()).fit(resample=True, resampling_options=opts)
    assert np.allclose(resampled.coef(), plain.coef(), atol=0.05)

def test_same_seed_same_estimate(design):
    X, y = design
    y = y.copy()
    y[:6] -= 15.0
    opts = ResamplingConfig(n_samples=20, seed=7)
    a = RobustLinearModel(X, y, MMEstimator()).fit(resample=True, resampling_options=opts)
    b = RobustLinearModel(X, y, MMEstimator()).fit(resample=True, resampling_options=opts)
    assert np.array_equal(a.coef(), b.coef())
    assert a.scale() == b.scale()

def test_explicit_generator(design):
    X, y = design
    m = RobustLinearModel(X, y, TauEstimator())
    sigma, beta = resampling_best_estimate(
        m, EstimatorKind.TAU, {"n_samples": 10}, np.random.default_rng(3),
    )
    assert sigma > 0
    assert beta.shape == (2,)
    assert np.allclose(beta, [1.0, 2.0], atol=0.3)

def test_invalid_subsample_size(design):
    X, y = design
    m = RobustLinearModel(X, y, SEstimator())
    with pytest.raises(ValueError, match="n_points"):
        resampling_best_estimate(m, EstimatorKind.S, {"n_points": X.shape[0] + 1})
    with pytest.raises(ValueError, match="n_points"):
        resampling_best_estimate(m, EstimatorKind.S, {"n_points": 1})
    with pytest.raises(TypeError):
        resampling_best_estimate(m, EstimatorKind.M)

def test_resampling_needs_scale_estimator(design):
    X, y = design
    m = RobustLinearModel(X, y, MEstimator(HuberLoss))
    with pytest.raises(CapabilityError):
        m.fit(resample=True)

def test_no_converged_candidate(design, monkeypatch):
    X, y = design

    def failing(model, *args, **kwargs):
        return IRLSResult(False, 1, 1.0, "scale", failure="convergence", reason="forced")

    monkeypatch.setattr(resampling, "pirls_s", failing)
    m = RobustLinearModel(X, y, SEstimator())
    with pytest.raises(ConvergenceError, match="none of"):
        resampling_best_estimate(m, EstimatorKind.S, {"n_samples": 4, "seed": 0})

# ---------------------------------------------------------------------
# Singular subsamples
# ---------------------------------------------------------------------

def test_singular_refinement_is_skipped(design, monkeypatch):
    X, y = design

    def singular(model, *args, **kwargs):
        raise np.linalg.LinAlgError("Cholesky factorization failed")

    monkeypatch.setattr(resampling, "pirls_s", singular)
    m = RobustLinearModel(X, y, SEstimator())
    with pytest.raises(ConvergenceError, match="none of"):
        resampling_best_estimate(m, EstimatorKind.S, {"n_samples": 4, "seed": 0})

def test_singular_candidates_are_ranked_last(design, monkeypatch):
    X, y = design
    real_set_eta = resampling.set_eta
    calls = {"n": 0}

    def flaky_set_eta(model, *args, **kwargs):
        calls["n"] += 1
        if calls["n"] % 2 == 1:
            raise np.linalg.LinAlgError("singular matrix")
        return real_set_eta(model, *args, **kwargs)

    monkeypatch.setattr(resampling, "set_eta", flaky_set_eta)
    m = RobustLinearModel(X, y, SEstimator())
    opts = {"n_samples": 6, "n_subsamples": 3, "n_steps_beta": 1, "seed": 0}
    sigma, beta = resampling_best_estimate(m, EstimatorKind.S, opts)
    assert np.isfinite(sigma) and sigma > 0
    assert np.allclose(beta, [1.0, 2.0], atol=0.3)

def test_rank_deficient_subsamples(rng):
    n = 40
    x = rng.uniform(-2.0, 2.0, size=n)
    d = np.zeros(n)
    d[:3] = 1.0
    X = np.column_stack([np.ones(n), x, d])
    y = 1.0 + 2.0 * x + 50.0 * d + 0.3 * rng.standard_normal(n)
    m = RobustLinearModel(X, y, SEstimator())
    sigma, beta = resampling_best_estimate(m, EstimatorKind.S, {"n_samples": 200, "seed": 0})
    assert np.isfinite(sigma) and sigma > 0
    assert np.all(np.isfinite(beta))
    assert beta[1] == pytest.approx(2.0, abs=0.3)

import pytest
import numpy as np
import scipy.sparse as sp
from robustreg.core import linalg as la

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def data_dense(rng):
    X = rng.standard_normal((100, 5))
    y = X @ np.ones(5) + rng.standard_normal(100)
    return X, y

@pytest.fixture
def weights(rng):
    return rng.uniform(0.5, 2.0, size=100)

# ---------------------------------------------------------------------
# Unit Tests: Finite Checks
# ---------------------------------------------------------------------

def test_check_array_finiteness():
    x = np.array([1.0, 2.0, np.nan])
    with pytest.raises(ValueError, match="Input contains NA/NaN/Inf"):
        la._check_array_finiteness(x)

    la._check_array_finiteness(np.array([1.0, 2.0]))

def test_assert_all_finite_matrix():
    M = np.array([[1.0, np.nan], [2.0, 3.0]])
    with pytest.raises(ValueError):
        la._assert_all_finite_matrix(M)

    # explicit nan stored in a sparse matrix
    S = sp.csc_matrix([[1.0, 0.0], [0.0, np.nan]])
    with pytest.raises(ValueError):
        la._assert_all_finite_matrix(S)

def test_validate_weights_rejects_negative():
    with pytest.raises(ValueError, match="nonnegative"):
        la._validate_weights(np.array([1.0, -1.0]), 2)
    with pytest.raises(ValueError, match="length"):
        la._validate_weights(np.array([1.0]), 2)
    # zeros are allowed
    w = la._validate_weights([0.0, 1.0], 2)
    assert w.tolist() == [0.0, 1.0]

# ---------------------------------------------------------------------
# Unit Tests: Products
# ---------------------------------------------------------------------

def test_gram_and_xty_match_explicit(data_dense, weights):
    X, y = data_dense
    W = np.diag(weights)
    assert np.allclose(la.gram(X, weights), X.T @ W @ X)
    assert np.allclose(la.gram(X, None), X.T @ X)
    assert np.allclose(la.xty(X, y, weights), X.T @ W @ y)
    assert la.xty(X, y, None).shape == (5,)

def test_sparse_products_match_dense(data_dense, weights):
    X, y = data_dense
    Xs = sp.csr_matrix(X)
    assert np.allclose(la.gram(Xs, weights), la.gram(X, weights))
    assert np.allclose(la.xty(Xs, y, weights), la.xty(X, y, weights))
    v = np.arange(5.0)
    assert np.allclose(la.matvec(Xs, v), X @ v)

def test_weighted_mean(weights):
    x = np.linspace(0.0, 1.0, 100)
    assert la.weighted_mean(x) == pytest.approx(0.5)
    assert la.weighted_mean(x, weights) == pytest.approx(np.average(x, weights=weights))
    with pytest.raises(ValueError):
        la.weighted_mean(x, np.zeros(100))

# ---------------------------------------------------------------------
# Unit Tests: Solvers
# ---------------------------------------------------------------------

def test_safe_cholesky_rejects_indefinite():
    A = np.array([[1.0, 2.0], [2.0, 1.0]])
    with pytest.raises(np.linalg.LinAlgError):
        la.safe_cholesky(A)

def test_solve_spd(data_dense, weights):
    X, y = data_dense
    A = la.gram(X, weights)
    b = la.xty(X, y, weights)
    x = la.solve_spd(A, b)
    assert np.allclose(A @ x, b)

def test_cg_matches_cholesky(data_dense, weights):
    X, y = data_dense
    b = la.xty(X, y, weights)
    x_chol = la.solve_spd(la.gram(X, weights), b)
    x_cg = la.cg_solve(X, weights, b)
    assert np.allclose(x_cg, x_chol, rtol=1e-8, atol=1e-10)

def test_cg_with_penalty(data_dense, weights):
    X, y = data_dense
    P = 3.0 * np.eye(5)
    b = la.xty(X, y, weights)
    x_chol = la.solve_spd(la.gram(X, weights) + P, b)
    x_cg = la.cg_solve(sp.csr_matrix(X), weights, b, penalty=P)
    assert np.allclose(x_cg, x_chol, rtol=1e-8, atol=1e-10)

def test_cg_zero_rhs():
    X = np.eye(3)
    assert np.all(la.cg_solve(X, np.ones(3), np.zeros(3)) == 0.0)

def test_wls_and_hat_diag(data_dense, weights):
    X, y = data_dense
    beta = la.wls(X, y, weights)
    sw = np.sqrt(weights)
    expected, *_ = np.linalg.lstsq(X * sw[:, None], y * sw, rcond=None)
    assert np.allclose(beta, expected)

    Ginv = np.linalg.inv(la.gram(X, weights))
    h = la.hat_diag(X, Ginv, weights)
    # trace of the weighted hat matrix equals the number of columns
    assert h.sum() == pytest.approx(5.0)
    assert np.all((h >= 0) & (h <= 1))

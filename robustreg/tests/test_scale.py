import numpy as np
import pytest

from robustreg.core.errors import ScaleConvergenceError
from robustreg.core.losses import HuberLoss, TukeyLoss
from robustreg.core.scale import (
    MAD_CONSTANT,
    m_scale,
    mad_residual_scale,
    mad_scale,
    scale_estimate,
    tau_scale_estimate,
)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def residuals(rng):
    return 2.0 * rng.standard_normal(5000)


def test_mad_is_consistent_for_gaussian(residuals) -> None:
    assert mad_scale(residuals) == pytest.approx(2.0, rel=0.05)
    assert mad_scale(residuals, factor=2.0) == pytest.approx(2.0 * mad_scale(residuals))
    with pytest.raises(ValueError, match="positive"):
        mad_scale(residuals, factor=0.0)


def test_mad_residual_scale_of_absolute_residuals() -> None:
    # |r| = [1, 2, 3, 10, 0.5], median 2, absolute deviations [1, 0, 1, 8, 1.5]
    r = np.array([1.0, -2.0, 3.0, 10.0, -0.5])
    assert mad_residual_scale(r) == pytest.approx(MAD_CONSTANT * 1.0)
    # median 3, absolute deviations [2, 1, 0, 1, 97]
    assert mad_residual_scale(np.array([1.0, 2.0, 3.0, 4.0, 100.0])) == pytest.approx(MAD_CONSTANT)
    assert mad_residual_scale(np.array([-1.0, 2.0, -3.0, 4.0, -100.0]), factor=2.0) == pytest.approx(
        2.0 * MAD_CONSTANT,
    )
    w = np.array([1.0, 1.0, 1.0, 0.0, 2.0])
    # |w r| = [1, 2, 3, 0, 1], median 1, absolute deviations [0, 1, 2, 1, 0]
    assert mad_residual_scale(r, wts=w) == pytest.approx(MAD_CONSTANT * 1.0)


def test_m_scale_solves_fixed_point(residuals) -> None:
    loss = TukeyLoss.high_breakdown()
    est = m_scale(loss, residuals, sigma0=mad_scale(residuals))
    assert est.converged
    assert np.mean(loss.rho_normalized(residuals / est.value)) == pytest.approx(0.5, abs=1e-5)
    # consistent for the Gaussian standard deviation
    assert est.value == pytest.approx(2.0, rel=0.05)


def test_m_scale_does_not_depend_on_start(residuals) -> None:
    loss = TukeyLoss.high_breakdown()
    a = m_scale(loss, residuals, sigma0=0.5, nmax=500)
    b = m_scale(loss, residuals, sigma0=20.0, nmax=500)
    assert a.converged and b.converged
    assert a.value == pytest.approx(b.value, rel=1e-5)


def test_m_scale_integer_weights_equal_repetition(rng) -> None:
    r = rng.standard_normal(50)
    w = rng.integers(1, 4, size=50).astype(float)
    loss = TukeyLoss.high_breakdown()
    weighted = m_scale(loss, r, sigma0=1.0, wts=w)
    repeated = m_scale(loss, np.repeat(r, w.astype(int)), sigma0=1.0)
    assert weighted.value == pytest.approx(repeated.value, rel=1e-6)


def test_m_scale_degenerate_zero_residuals() -> None:
    r = np.zeros(10)
    r[:3] = [1.0, -1.0, 2.0]
    est = m_scale(TukeyLoss.high_breakdown(), r, sigma0=1.0)
    assert not est.converged
    assert est.value == 0.0
    assert "zero" in est.reason


def test_m_scale_requires_bounded_loss_and_positive_start(residuals) -> None:
    with pytest.raises(ValueError, match="bounded"):
        m_scale(HuberLoss(), residuals)
    with pytest.raises(ValueError, match="positive"):
        m_scale(TukeyLoss.high_breakdown(), residuals, sigma0=0.0)


def test_scale_estimate_fallback_and_failure(residuals) -> None:
    loss = TukeyLoss.high_breakdown()
    # one pass from a far start cannot converge
    assert scale_estimate(loss, residuals, sigma0=100.0, nmax=1, fallback=7.0) == 7.0
    with pytest.raises(ScaleConvergenceError) as excinfo:
        scale_estimate(loss, residuals, sigma0=100.0, nmax=1)
    assert excinfo.value.n_iter == 1
    assert np.isfinite(excinfo.value.value)
    # approximate mode accepts the last iterate
    approx = m_scale(loss, residuals, sigma0=100.0, nmax=1, approx=True)
    assert approx.converged
    assert approx.value < 100.0


def test_tau_scale(residuals) -> None:
    loss2 = TukeyLoss.tau_efficient()
    sigma = 2.0
    t = tau_scale_estimate(loss2, residuals, sigma)
    t2 = tau_scale_estimate(loss2, residuals, sigma, sqr=True)
    assert t2 == pytest.approx(t * t)
    expected = sigma * np.sqrt(np.mean(loss2.rho_normalized(residuals / sigma)) / 0.5)
    assert t == pytest.approx(expected)

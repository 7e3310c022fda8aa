"""
Tests for the single-species occupancy estimator.

Tests cover:
- Probability of detection over two visits
- Posterior occupancy and its mode
- Design matrices
- Fitting a well-sampled species
- Failure isolation
- NUTS sampling and its r-hat check
"""
import math

import numpy as np
import pytest

from detcorr import OccupancyEstimator, PipelineConfig, Rescaling
from detcorr import occupancy
from detcorr.occupancy import (
    OccupancyResult,
    detection_design,
    detection_probability_any,
    occupancy_design,
    occupancy_posterior,
    posterior_mode,
)


# ============================================================
# Pure helpers
# ============================================================

def test_two_visits_at_half_gives_three_quarters():
    assert detection_probability_any([0.5, 0.5]) == pytest.approx(0.75)


def test_pi_is_mean_over_plots_with_universal_presence():
    est = OccupancyEstimator(PipelineConfig(n_workers=1))
    p = np.full((12, 2), 0.5)
    z = np.zeros(12)
    assert est._pi(p, z) == pytest.approx(0.75)


def test_pi_conditional_on_occupancy_toggle():
    est = OccupancyEstimator(PipelineConfig(n_workers=1, pi_conditional_on_occupancy=True))
    p = np.array([[0.5, 0.5], [0.0, 0.0]])
    assert est._pi(p, np.array([1, 0])) == pytest.approx(0.75)
    assert math.isnan(est._pi(p, np.array([0, 0])))


def test_posterior_is_one_where_detected():
    y = np.array([[1, 0], [0, 1], [0, 0]], dtype=float)
    post = occupancy_posterior(y, psi=np.full(3, 0.2), p=np.full((3, 2), 0.9))
    assert post[0] == 1.0
    assert post[1] == 1.0
    assert post[2] < 1.0


def test_posterior_for_undetected_plot():
    y = np.zeros((1, 2))
    psi, p = 0.8, 0.5
    expected = psi * 0.25 / (psi * 0.25 + (1 - psi))
    post = occupancy_posterior(y, np.array([psi]), np.full((1, 2), p))
    assert post[0] == pytest.approx(expected)


def test_posterior_skips_missing_visit():
    y = np.array([[0.0, np.nan]])
    post = occupancy_posterior(y, np.array([0.8]), np.array([[0.5, 0.99]]))
    assert post[0] == pytest.approx(0.8 * 0.5 / (0.8 * 0.5 + 0.2))


def test_posterior_mode_tie_goes_to_absence():
    np.testing.assert_array_equal(posterior_mode([0.2, 0.5, 0.51, 1.0]), [0, 0, 1, 1])


def test_design_shapes():
    dates = np.array([[0.1, 0.5], [-0.2, np.nan]])
    elev = np.array([0.3, -0.4])
    X = detection_design(dates, elev)
    assert X.shape == (2, 2, 3)
    assert X[1, 1, 1] == 0.0
    X = detection_design(dates, elev, interaction=True)
    assert X.shape == (2, 2, 6)
    assert X[0, 1, 4] == pytest.approx(0.3 * 0.5)
    assert occupancy_design(elev).shape == (2, 3)
    assert occupancy_design(elev)[1, 2] == pytest.approx(0.16)


# ============================================================
# Fitting
# ============================================================

@pytest.fixture
def common_unit(well_sampled_survey):
    rescaling = Rescaling.from_survey(well_sampled_survey)
    return well_sampled_survey.species_unit(0, rescaling)


def test_fit_well_sampled_species(common_unit):
    result = OccupancyEstimator(PipelineConfig(n_workers=1)).fit(common_unit)

    assert result.ok, result.error
    assert 0.0 <= result.pi <= 1.0
    assert set(np.unique(result.z)) <= {0.0, 1.0}
    assert np.all((result.psi >= 0) & (result.psi <= 1))


def test_detected_plots_map_to_present(common_unit):
    result = OccupancyEstimator(PipelineConfig(n_workers=1)).fit(common_unit)
    detected = np.nansum(common_unit.y, axis=1) > 0
    assert np.all(result.z[detected] == 1)


def test_fit_with_elevation_interaction(common_unit):
    cfg = PipelineConfig(n_workers=1, detection_elevation_interaction=True)
    result = OccupancyEstimator(cfg).fit(common_unit)
    assert result.ok, result.error
    assert result.coef["alpha"].shape == (6,)


def test_optimiser_error_becomes_failed_result(common_unit, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("optimiser blew up")

    monkeypatch.setattr(occupancy.pm, "find_MAP", boom)
    result = OccupancyEstimator(PipelineConfig(n_workers=1)).fit(common_unit)

    assert not result.ok
    assert math.isnan(result.pi)
    assert np.isnan(result.z).all()
    assert "blew up" in result.error


def test_non_finite_coefficients_are_a_convergence_failure(common_unit, monkeypatch):
    def nan_map(*args, **kwargs):
        return {"alpha": np.full(3, np.nan), "beta": np.zeros(3)}, None

    monkeypatch.setattr(occupancy.pm, "find_MAP", nan_map)
    result = OccupancyEstimator(PipelineConfig(n_workers=1)).fit(common_unit)
    assert result.status == "failed"
    assert "non-finite" in result.error


def test_failed_result_shape():
    r = OccupancyResult.failed(3, "x", 7, "bad")
    assert r.z.shape == (7,)
    assert not r.ok
    assert r.error == "bad"


# ============================================================
# NUTS
# ============================================================

@pytest.fixture
def nuts_config():
    return PipelineConfig(n_workers=1, method="nuts", draws=300, tune=500, chains=2)


def test_nuts_fit_reports_pi_interval(common_unit, nuts_config):
    result = OccupancyEstimator(nuts_config).fit(common_unit, seed=7)

    assert result.ok, result.error
    lo, hi = result.pi_hdi
    assert np.isfinite(lo) and np.isfinite(hi)
    assert 0.0 <= lo <= hi <= 1.0
    assert 0.0 <= result.pi <= 1.0
    assert set(np.unique(result.z)) <= {0.0, 1.0}
    detected = np.nansum(common_unit.y, axis=1) > 0
    assert np.all(result.z[detected] == 1)
    assert result.coef["alpha"].shape == (3,)


class _Rhat:
    """Stands in for the Dataset returned by ``az.rhat``."""

    def __init__(self, worst):
        self.values = np.array([1.0, worst])

    def to_array(self):
        return self


def test_high_rhat_becomes_failed_result(common_unit, monkeypatch):
    monkeypatch.setattr(occupancy.az, "rhat", lambda *args, **kwargs: _Rhat(1.5))
    cfg = PipelineConfig(n_workers=1, method="nuts", draws=50, tune=50, chains=2)
    result = OccupancyEstimator(cfg).fit(common_unit, seed=3)

    assert result.status == "failed"
    assert "r-hat 1.500" in result.error
    assert np.isnan(result.z).all()
    assert np.isnan(result.pi_hdi).all()


def test_single_chain_skips_rhat(common_unit, monkeypatch):
    def no_rhat(*args, **kwargs):
        raise AssertionError("r-hat needs more than one chain")

    monkeypatch.setattr(occupancy.az, "rhat", no_rhat)
    cfg = PipelineConfig(n_workers=1, method="nuts", draws=100, tune=200, chains=1)
    result = OccupancyEstimator(cfg).fit(common_unit, seed=5)
    assert result.ok, result.error

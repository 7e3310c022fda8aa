"""
Shared pytest fixtures.

- A 10-plot, 8-species, 2-visit survey with known true occupancy
- Trait tables in standardised trait space
- A stub estimator that skips the optimiser
"""
import numpy as np
import pandas as pd
import pytest

from detcorr import PipelineConfig, SurveyData
from detcorr.occupancy import OccupancyEstimator, OccupancyResult


# ============================================================
# Survey Fixtures
# ============================================================

N_PLOTS = 10
SPECIES = ["A", "B", "C", "D", "E", "F", "G", "H"]

# detected on both visits wherever present
PERFECT_PRESENCE = {
    "A": range(0, 10),
    "B": range(0, 10),
    "C": range(0, 10),
    "D": range(0, 10),
    "G": range(0, 10, 2),
    "H": range(1, 10, 2),
}
# present at every plot; detected on one visit or missed on both, in a
# period-3 pattern that no quadratic in elevation can follow
IMPERFECT_DETECTIONS = {
    "E": {0: [0, 3, 6, 9], 1: [1, 4, 7]},
    "F": {0: [2, 5, 8], 1: [0, 3, 6, 9]},
}
MISSED_BOTH = {"E": [2, 5, 8], "F": [1, 4, 7]}


def build_small_survey() -> SurveyData:
    y = np.zeros((N_PLOTS, len(SPECIES), 2))
    for k, sp in enumerate(SPECIES):
        if sp in PERFECT_PRESENCE:
            for i in PERFECT_PRESENCE[sp]:
                y[i, k, :] = 1
        else:
            for visit, plots in IMPERFECT_DETECTIONS[sp].items():
                for i in plots:
                    y[i, k, visit] = 1

    elevation = 400.0 + 200.0 * np.arange(N_PLOTS)
    # same two survey dates everywhere: detection differs by visit only
    dates = np.tile([170.0, 200.0], (N_PLOTS, 1))
    return SurveyData(y, elevation, dates, species=SPECIES, plots=[f"plot{i}" for i in range(N_PLOTS)])


@pytest.fixture
def small_survey() -> SurveyData:
    """10 plots, 8 species; E and F are everywhere but sometimes missed."""
    return build_small_survey()


@pytest.fixture
def well_sampled_survey() -> SurveyData:
    """40 plots along an elevation gradient, one common species, p = 0.6."""
    rng = np.random.default_rng(20)
    n_plots = 40
    elevation = np.linspace(500, 2500, n_plots)
    dates = np.column_stack([rng.uniform(150, 180, n_plots), rng.uniform(190, 230, n_plots)])
    z = rng.random(n_plots) < 0.7
    y = (rng.random((n_plots, 1, 2)) < 0.6) & z[:, None, None]
    return SurveyData(y.astype(float), elevation, dates, species=["common"])


# ============================================================
# Trait Fixtures
# ============================================================

@pytest.fixture
def small_traits() -> pd.DataFrame:
    """Non-coplanar trait coordinates for species A-E."""
    return pd.DataFrame(
        [[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1], [1, 1, 1]],
        index=["A", "B", "C", "D", "E"],
        columns=["sla", "ch", "sm"],
        dtype=float,
    )


def build_survey_traits() -> pd.DataFrame:
    """
    Trait coordinates for the small survey's species, in survey order.

    A-D span a unit tetrahedron with G and H inside it. E and F lie far out
    along two different axes, so the hull holding both is several times the
    hull holding either one.
    """
    return pd.DataFrame(
        [[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1],
         [6, 0, 0], [0, 6, 0], [0.2, 0.2, 0.2], [0.25, 0.2, 0.15]],
        index=SPECIES,
        columns=["sla", "ch", "sm"],
        dtype=float,
    )


@pytest.fixture
def survey_traits() -> pd.DataFrame:
    return build_survey_traits()


@pytest.fixture
def tetrahedron() -> np.ndarray:
    """Unit right tetrahedron, volume 1/6."""
    return np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=float)


# ============================================================
# Estimator Fixtures
# ============================================================

class StubEstimator(OccupancyEstimator):
    """Returns the naive occurrence as z; species named in ``fail`` fail."""

    def __init__(self, config=None, fail=()):
        super().__init__(config)
        self.fail = set(fail)

    def fit(self, unit, seed=None):
        if unit.name in self.fail:
            return OccupancyResult.failed(unit.index, unit.name, unit.y.shape[0], "did not converge")
        z = (np.nansum(unit.y, axis=1) > 0).astype(float)
        return OccupancyResult(index=unit.index, name=unit.name, status="ok", pi=0.5, z=z,
                               posterior=z, psi=np.full(len(z), 0.5))


@pytest.fixture
def serial_config() -> PipelineConfig:
    return PipelineConfig(n_workers=1, nsim=20)

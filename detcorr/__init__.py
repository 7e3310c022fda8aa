"""
Detection-corrected occurrence and functional diversity of plant communities.

Fits a single-season occupancy model per species from two-visit survey data,
derives the detection-corrected occurrence matrix and compares community
trait summaries (trait means, FRic, mnnd, richness) between observed and
corrected communities, with a richness-preserving null model.
"""

__version__ = "1.0.0"

from .config import PipelineConfig
from .errors import (
    ConvergenceFailure,
    DegenerateGeometry,
    DegenerateNullDistribution,
    DetcorrError,
    PreconditionViolation,
)
from .survey import Rescaling, SpeciesUnit, SurveyData
from .occupancy import OccupancyEstimator, OccupancyResult
from .batch import BatchRunner, CorrectedMetaCommunity
from .metrics import CommunityMetricsEngine, compare_metrics, relevance_threshold
from .nullmodel import NullModelCorrector
from .pipeline import PipelineResult, run_pipeline

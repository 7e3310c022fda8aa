"""
End-to-end run: batch occupancy fit -> usable species -> metrics on the
observed and corrected matrices -> comparison -> null-model SES for both.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from .batch import BatchRunner, CorrectedMetaCommunity
from .checkpoint import load_batch, save_batch
from .config import PipelineConfig
from .errors import PreconditionViolation
from .metrics import CommunityMetricsEngine, compare_metrics
from .nullmodel import NullModelCorrector
from .occupancy import OccupancyEstimator
from .survey import SurveyData

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    meta: CorrectedMetaCommunity          # usable subset
    traits: pd.DataFrame                  # restricted to meta's species
    observed_metrics: pd.DataFrame
    corrected_metrics: pd.DataFrame
    comparison: pd.DataFrame
    observed_ses: pd.DataFrame
    corrected_ses: pd.DataFrame


def fit_batch(survey: SurveyData, config: PipelineConfig, rng: np.random.Generator,
              checkpoint_dir=None) -> CorrectedMetaCommunity:
    """Batch fit, reusing a checkpoint written with the same settings."""
    runner = BatchRunner(OccupancyEstimator(config), config)
    key = config.fingerprint(runner.rescaling_for(survey), survey)

    if checkpoint_dir is not None:
        cached = load_batch(checkpoint_dir, key)
        if cached is not None:
            if list(cached.Z.columns) == survey.species and len(cached.Z) == survey.n_plots:
                return cached
            logger.warning("Checkpoint %s does not match the survey; refitting", key)

    meta = runner.run(survey, rng)
    if checkpoint_dir is not None:
        save_batch(meta, checkpoint_dir, key, settings=config.fit_settings())
    return meta


def run_pipeline(survey: SurveyData, traits: pd.DataFrame,
                 config: Optional[PipelineConfig] = None,
                 rng: Optional[np.random.Generator] = None,
                 checkpoint_dir=None) -> PipelineResult:
    config = config or PipelineConfig()
    rng = rng if rng is not None else np.random.default_rng()

    # traits must cover the surveyed species before any fitting is spent
    missing = [s for s in survey.species if s not in traits.index.astype(str)]
    if missing:
        raise PreconditionViolation(f"{len(missing)} surveyed species have no traits, e.g. {missing[:3]}")
    traits = traits.copy()
    traits.index = traits.index.astype(str)

    meta = fit_batch(survey, config, rng, checkpoint_dir).usable()
    logger.info("Usable species: %d of %d", len(meta.species), survey.n_species)
    tr = meta.restrict_traits(traits, config.trait_columns)

    engine = CommunityMetricsEngine(tr, config.trait_columns)
    observed_metrics = engine.compute(meta.observed)
    corrected_metrics = engine.compute(meta.Z)
    comparison = compare_metrics(observed_metrics, corrected_metrics, meta.elevation.to_numpy(),
                                 span=config.relevance_span)

    corrector = NullModelCorrector(tr, nsim=config.nsim, n_workers=config.n_workers,
                                   columns=config.trait_columns, progressbar=config.progressbar)
    observed_ses = corrector.standardize(meta.observed, rng, observed=observed_metrics)
    corrected_ses = corrector.standardize(meta.Z, rng, observed=corrected_metrics)

    return PipelineResult(meta=meta, traits=tr,
                          observed_metrics=observed_metrics, corrected_metrics=corrected_metrics,
                          comparison=comparison, observed_ses=observed_ses, corrected_ses=corrected_ses)

"""
Batch occupancy fitting: one model per species, run in a process pool.

Every species gets its own result slot; a species that fails is recorded with
its error and leaves an all-NaN column in ``Z``, the rest of the batch carries on.
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from .config import PipelineConfig
from .errors import PreconditionViolation
from .occupancy import OccupancyEstimator, OccupancyResult
from .survey import Rescaling, SurveyData
from .traits import validate_traits

logger = logging.getLogger(__name__)


@dataclass
class CorrectedMetaCommunity:
    """
    Assembled batch output.

    P:        detection probability per species (NaN for failed species)
    Z:        plot x species detection-corrected occurrence (NaN columns for failed species)
    observed: plot x species naive occurrence, same species as Z
    failures: species -> error message
    """
    P: pd.Series
    Z: pd.DataFrame
    observed: pd.DataFrame
    elevation: pd.Series
    failures: Dict[str, str] = field(default_factory=dict)
    rescaling: Optional[Rescaling] = None

    def __post_init__(self):
        if list(self.Z.columns) != list(self.observed.columns):
            raise PreconditionViolation("Z and the observed matrix must have the same species in the same order")
        if list(self.P.index) != list(self.Z.columns):
            raise PreconditionViolation("P and Z must have the same species in the same order")
        if not self.Z.index.equals(self.observed.index):
            raise PreconditionViolation("Z and the observed matrix must have the same plots")
        if len(self.elevation) != len(self.Z.index):
            raise PreconditionViolation(
                f"{len(self.elevation)} elevations for {len(self.Z.index)} plots")

    @property
    def species(self):
        return list(self.Z.columns)

    def usable_species(self):
        """Species whose corrected occurrence is defined at every plot, in input order."""
        defined = self.Z.notna().all(axis=0)
        return [s for s in self.Z.columns if defined[s]]

    def usable(self) -> "CorrectedMetaCommunity":
        keep = self.usable_species()
        return replace(
            self,
            P=self.P.loc[keep],
            Z=self.Z.loc[:, keep].astype(int),
            observed=self.observed.loc[:, keep],
            failures=dict(self.failures),
        )

    def restrict_traits(self, traits: pd.DataFrame, columns=None) -> pd.DataFrame:
        """
        Trait rows for this community's species.

        Rows of other species are dropped; the table's own order is kept and
        must already match the community's species order.
        """
        missing = [s for s in self.species if s not in traits.index]
        if missing:
            raise PreconditionViolation(f"{len(missing)} species have no trait row, e.g. {missing[:3]}")
        sub = traits[traits.index.isin(self.species)]
        if columns is None:
            return validate_traits(sub, self.species)
        return validate_traits(sub, self.species, columns)


def _fit_unit(estimator, unit, seed):
    # module-level so the process pool can pickle it
    return estimator.fit(unit, seed=seed)


class BatchRunner:
    def __init__(self, estimator: Optional[OccupancyEstimator] = None,
                 config: Optional[PipelineConfig] = None):
        self.config = config or (estimator.config if estimator is not None else PipelineConfig())
        self.estimator = estimator or OccupancyEstimator(self.config)

    def rescaling_for(self, survey: SurveyData) -> Rescaling:
        cfg = self.config
        return Rescaling.from_survey(
            survey,
            elevation_center=cfg.elevation_center,
            elevation_scale=cfg.elevation_scale,
            date_center=cfg.date_center,
            date_scale=cfg.date_scale,
        )

    def select_species(self, survey: SurveyData) -> np.ndarray:
        """Boolean mask of species with enough detections to be modelled."""
        counts = survey.detection_counts().to_numpy()
        if self.config.min_detections is None:
            return np.ones(survey.n_species, dtype=bool)
        return counts > self.config.min_detections

    def run(self, survey: SurveyData, rng: Optional[np.random.Generator] = None) -> CorrectedMetaCommunity:
        rng = rng if rng is not None else np.random.default_rng()
        rescaling = self.rescaling_for(survey)
        keep = self.select_species(survey)
        # one seed per species, drawn up-front so results don't depend on scheduling
        seeds = rng.integers(0, 2 ** 31 - 1, size=survey.n_species)

        results: Dict[int, OccupancyResult] = {}
        for k in np.flatnonzero(~keep):
            results[int(k)] = OccupancyResult.failed(
                int(k), survey.species[k], survey.n_plots,
                f"below detection threshold (<= {self.config.min_detections} detections)")

        units = [survey.species_unit(int(k), rescaling) for k in np.flatnonzero(keep)]
        logger.info("Species to model: %d of %d", len(units), survey.n_species)

        results.update(self._fit_all(units, seeds))
        return self.assemble(survey, results, rescaling)

    def _fit_all(self, units, seeds) -> Dict[int, OccupancyResult]:
        n_workers = max(1, int(self.config.n_workers))
        out: Dict[int, OccupancyResult] = {}

        if n_workers == 1 or len(units) <= 1:
            for i, unit in enumerate(tqdm(units, disable=not self.config.progressbar, desc="Occupancy"), 1):
                logger.debug("[%d/%d] %s", i, len(units), unit.name)
                out[unit.index] = self.estimator.fit(unit, seed=int(seeds[unit.index]))
            return out

        logger.info("Using %d workers for occupancy fitting", n_workers)
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(_fit_unit, self.estimator, unit, int(seeds[unit.index])): unit
                for unit in units
            }
            for fut in tqdm(as_completed(futures), total=len(futures),
                            disable=not self.config.progressbar, desc="Occupancy"):
                unit = futures[fut]
                try:
                    out[unit.index] = fut.result()
                except Exception as e:
                    # worker crashed outside the estimator's own error handling
                    logger.warning("%s (%d): worker FAILED (%s)", unit.name, unit.index, e)
                    out[unit.index] = OccupancyResult.failed(unit.index, unit.name, len(unit.elevation), e)
        return out

    @staticmethod
    def assemble(survey: SurveyData, results: Dict[int, OccupancyResult],
                 rescaling: Optional[Rescaling] = None) -> CorrectedMetaCommunity:
        """Turn the per-species result slots into P and Z, in survey species order."""
        if sorted(results) != list(range(survey.n_species)):
            raise PreconditionViolation("one result per species is required to assemble P and Z")

        P = pd.Series([results[k].pi for k in range(survey.n_species)],
                      index=survey.species, name="P", dtype=float)
        Z = pd.DataFrame(
            np.column_stack([results[k].z for k in range(survey.n_species)])
            if survey.n_species else np.empty((survey.n_plots, 0)),
            index=survey.plots, columns=survey.species, dtype=float)
        failures = {results[k].name: results[k].error for k in range(survey.n_species) if not results[k].ok}

        n_ok = survey.n_species - len(failures)
        logger.info("Occupancy fitted for %d species, %d failed or filtered", n_ok, len(failures))

        return CorrectedMetaCommunity(
            P=P, Z=Z, observed=survey.observed_matrix(),
            elevation=pd.Series(survey.elevation, index=survey.plots, name="elevation"),
            failures=failures, rescaling=rescaling,
        )

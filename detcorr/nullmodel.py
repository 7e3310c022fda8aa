"""
Richness-preserving null model for FRic and mnnd.

Each null sample keeps the number of species at every plot and draws their
identities at random from the whole species pool. The observed metric is
then expressed as a standardised effect size against the null draws:

    ses = (observed - mean(null)) / sd(null)

Undefined (NaN) where the null sd is zero or not finite.
"""

import logging
from concurrent.futures import ProcessPoolExecutor
from typing import Optional

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from .config import NSIM, TRAIT_COLUMNS
from .errors import DegenerateNullDistribution
from .metrics import CommunityMetricsEngine, functional_packing, functional_richness

logger = logging.getLogger(__name__)

NULL_METRICS = ("fric", "mnnd")


def null_sample(M, rng: np.random.Generator) -> np.ndarray:
    """Random 0/1 matrix with the row sums of ``M``, species drawn without replacement."""
    m = np.asarray(M, dtype=int)
    n_plots, n_species = m.shape
    out = np.zeros_like(m)
    for i, k in enumerate(m.sum(axis=1)):
        out[i, rng.permutation(n_species)[:k]] = 1
    return out


def _null_draw(M, traits, seed):
    # one draw: (fric, mnnd) per plot
    sample = null_sample(M, np.random.default_rng(seed))
    return functional_richness(sample, traits), functional_packing(sample, traits)


def null_moments(draws):
    """Mean and sd (ddof=1) over the finite draws of one plot; sd is exactly 0 for identical draws."""
    d = np.asarray(draws, dtype=float)
    d = d[np.isfinite(d)]
    if d.size == 0:
        return np.nan, np.nan
    if d.size == 1:
        return float(d[0]), np.nan
    if d.max() == d.min():
        return float(d[0]), 0.0
    return float(d.mean()), float(d.std(ddof=1))


def standardized_effect(observed, null_mean, null_sd) -> float:
    """
    (observed - mean) / sd for one plot.

    Raises DegenerateNullDistribution when sd is zero or undefined. An
    undefined observed metric gives NaN.
    """
    if not np.isfinite(null_sd) or null_sd <= 0:
        raise DegenerateNullDistribution(f"null sd is {null_sd}")
    return (float(observed) - null_mean) / null_sd


class NullModelCorrector:
    def __init__(self, traits: pd.DataFrame, nsim: int = NSIM, n_workers: int = 1,
                 columns=TRAIT_COLUMNS, progressbar: bool = False):
        if nsim < 2:
            raise ValueError("nsim must be at least 2 to estimate a null sd")
        self.engine = CommunityMetricsEngine(traits, columns)
        self.nsim = nsim
        self.n_workers = max(1, int(n_workers))
        self.progressbar = progressbar

    def null_distribution(self, M: pd.DataFrame, rng: np.random.Generator):
        """(nsim, n_plots) arrays of null FRic and mnnd."""
        self.engine._check(M)
        m = M.to_numpy(dtype=int)
        t = self.engine.traits.to_numpy()
        seeds = rng.integers(0, 2 ** 31 - 1, size=self.nsim)

        fric = np.full((self.nsim, m.shape[0]), np.nan)
        mnnd = np.full((self.nsim, m.shape[0]), np.nan)

        if self.n_workers == 1:
            draws = (_null_draw(m, t, s) for s in seeds)
            for b, (f, d) in enumerate(tqdm(draws, total=self.nsim, disable=not self.progressbar, desc="Null model")):
                fric[b], mnnd[b] = f, d
        else:
            with ProcessPoolExecutor(max_workers=self.n_workers) as executor:
                results = executor.map(_null_draw, [m] * self.nsim, [t] * self.nsim, seeds)
                for b, (f, d) in enumerate(tqdm(results, total=self.nsim, disable=not self.progressbar, desc="Null model")):
                    fric[b], mnnd[b] = f, d
        return {"fric": fric, "mnnd": mnnd}

    def standardize(self, M: pd.DataFrame, rng: Optional[np.random.Generator] = None,
                    observed: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """
        Per plot: observed FRic/mnnd, null mean and sd, and the standardised effect.

        ``observed`` may pass metrics already computed for ``M``.
        """
        rng = rng if rng is not None else np.random.default_rng()
        if observed is None:
            observed = pd.DataFrame({"fric": self.engine.fric(M), "mnnd": self.engine.mnnd(M)}, index=M.index)
        null = self.null_distribution(M, rng)

        out = pd.DataFrame(index=M.index)
        for metric in NULL_METRICS:
            draws = null[metric]
            obs = observed[metric].to_numpy(dtype=float)
            n_plots = draws.shape[1]
            mean = np.full(n_plots, np.nan)
            sd = np.full(n_plots, np.nan)
            ses = np.full(n_plots, np.nan)
            degenerate = 0
            for i in range(n_plots):
                mean[i], sd[i] = null_moments(draws[:, i])
                try:
                    ses[i] = standardized_effect(obs[i], mean[i], sd[i])
                except DegenerateNullDistribution:
                    if np.isfinite(obs[i]):
                        degenerate += 1
            if degenerate:
                logger.warning("Null distribution of %s degenerate at %d plots; SES left undefined",
                               metric, degenerate)

            out[metric] = obs
            out[f"{metric}_null_mean"] = mean
            out[f"{metric}_null_sd"] = sd
            out[f"{metric}_ses"] = ses
        return out

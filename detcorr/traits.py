"""
Trait table preparation.

Imputation itself is done elsewhere; this module only checks that whatever
imputer is plugged in honours the contract, and fixes the log/standardisation
parameters once so they can be reused for every later analysis.
"""

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

import numpy as np
import pandas as pd

from .config import TRAIT_COLUMNS
from .errors import PreconditionViolation

logger = logging.getLogger(__name__)


class TraitImputer(Protocol):
    def impute(self, traits: pd.DataFrame) -> pd.DataFrame:
        ...


def apply_imputation(imputer: TraitImputer, traits: pd.DataFrame) -> pd.DataFrame:
    """Run ``imputer`` and check its output: same species, same traits, nothing missing."""
    n_missing = int(traits.isna().sum().sum())
    out = imputer.impute(traits.copy())
    if not out.index.equals(traits.index):
        raise PreconditionViolation("imputer changed the species index of the trait table")
    if list(out.columns) != list(traits.columns):
        raise PreconditionViolation("imputer changed the trait columns")
    if out.isna().any().any():
        raise PreconditionViolation("imputed trait table still has missing values")
    logger.info("Imputed %d missing trait values", n_missing)
    return out


@dataclass(frozen=True)
class TraitScaling:
    """Log-transform flag plus per-trait mean and sd, fixed from one reference table."""
    log: bool
    means: pd.Series
    sds: pd.Series

    @classmethod
    def fit(cls, traits: pd.DataFrame, log: bool = True) -> "TraitScaling":
        x = _log(traits) if log else traits.astype(float)
        sds = x.std(ddof=1)
        if (sds == 0).any() or sds.isna().any():
            raise PreconditionViolation(f"traits with zero or undefined sd: {list(sds[(sds == 0) | sds.isna()].index)}")
        return cls(log=log, means=x.mean(), sds=sds)

    def transform(self, traits: pd.DataFrame) -> pd.DataFrame:
        x = _log(traits) if self.log else traits.astype(float)
        return (x[self.means.index] - self.means) / self.sds


def _log(traits):
    if (traits <= 0).any().any():
        raise PreconditionViolation("log-transform needs strictly positive trait values")
    return np.log(traits.astype(float))


def standardize_traits(traits: pd.DataFrame, log: bool = True):
    """Log-transform and scale to mean 0, sd 1. Returns (table, scaling)."""
    scaling = TraitScaling.fit(traits, log=log)
    return scaling.transform(traits), scaling


def validate_traits(traits: pd.DataFrame, species: Sequence,
                    columns: Sequence = TRAIT_COLUMNS) -> pd.DataFrame:
    """Check a trait table against a species ordering and return its trait columns."""
    missing = [c for c in columns if c not in traits.columns]
    if missing:
        raise PreconditionViolation(f"trait table is missing columns {missing}")
    species = [str(s) for s in species]
    index = [str(s) for s in traits.index]
    if index != species:
        if len(index) != len(species):
            raise PreconditionViolation(
                f"trait table has {len(index)} species, occurrence matrix has {len(species)}")
        first = next(k for k, (a, b) in enumerate(zip(index, species)) if a != b)
        raise PreconditionViolation(
            f"species order differs at position {first}: traits {index[first]!r} vs matrix {species[first]!r}")
    out = traits.loc[:, list(columns)].astype(float)
    if out.isna().any().any():
        raise PreconditionViolation("trait table has missing values; impute before the core")
    return out

"""
Survey data: the (plot, species, visit) detection array and the plot covariates.

A BDM-style survey has exactly two visits per plot. Detection values are 0/1;
NaN only where a visit did not take place.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .errors import PreconditionViolation

N_VISITS = 2


@dataclass(frozen=True)
class Rescaling:
    """Centre/scale applied to elevation and survey date before fitting.

    Computed once for the whole survey and shared by every species, so the
    fitted coefficients of different species live on the same scale.
    """
    elevation_center: float
    elevation_scale: float
    date_center: float
    date_scale: float

    @classmethod
    def from_survey(cls, survey, elevation_center=None, elevation_scale=500.0,
                    date_center=None, date_scale=30.0):
        if elevation_center is None:
            elevation_center = float(np.mean(survey.elevation))
        if date_center is None:
            date_center = float(np.nanmean(survey.dates))
        return cls(float(elevation_center), float(elevation_scale),
                   float(date_center), float(date_scale))

    def apply_elevation(self, elevation):
        return (np.asarray(elevation, dtype=float) - self.elevation_center) / self.elevation_scale

    def apply_date(self, dates):
        return (np.asarray(dates, dtype=float) - self.date_center) / self.date_scale

    def to_dict(self) -> dict:
        return {
            "elevation_center": self.elevation_center,
            "elevation_scale": self.elevation_scale,
            "date_center": self.date_center,
            "date_scale": self.date_scale,
        }


@dataclass(frozen=True)
class SpeciesUnit:
    """One species' plot x visit detection matrix plus the shared covariates."""
    index: int
    name: str
    y: np.ndarray          # (n_plots, 2), 0/1/NaN
    elevation: np.ndarray  # (n_plots,)
    dates: np.ndarray      # (n_plots, 2)
    rescaling: Rescaling

    @property
    def n_detections(self) -> int:
        return int(np.nansum(self.y))


class SurveyData:
    """Detection array ``y[plot, species, visit]`` with elevation and visit dates."""

    def __init__(self, y, elevation, dates, species: Optional[Sequence] = None,
                 plots: Optional[Sequence] = None):
        self.y = np.asarray(y, dtype=float)
        self.elevation = np.asarray(elevation, dtype=float)
        self.dates = np.asarray(dates, dtype=float)
        n_species = self.y.shape[1] if self.y.ndim == 3 else 0
        n_plots = self.y.shape[0] if self.y.ndim >= 1 else 0
        self.species = [str(s) for s in species] if species is not None else \
            [f"sp{k}" for k in range(n_species)]
        self.plots = list(plots) if plots is not None else list(range(n_plots))
        self.validate()

    @property
    def n_plots(self) -> int:
        return self.y.shape[0]

    @property
    def n_species(self) -> int:
        return self.y.shape[1]

    def validate(self):
        """Raise PreconditionViolation naming the first mismatched dimension."""
        if self.y.ndim != 3:
            raise PreconditionViolation(f"detection array must be 3-D (plot, species, visit), got {self.y.ndim}-D")
        n_plots, n_species, n_visits = self.y.shape
        if n_visits != N_VISITS:
            raise PreconditionViolation(f"visit axis must have length {N_VISITS}, got {n_visits}")
        if self.elevation.shape != (n_plots,):
            raise PreconditionViolation(
                f"elevation has shape {self.elevation.shape}, expected ({n_plots},) to match the plot axis")
        if self.dates.shape != (n_plots, N_VISITS):
            raise PreconditionViolation(
                f"dates has shape {self.dates.shape}, expected ({n_plots}, {N_VISITS})")
        if len(self.species) != n_species:
            raise PreconditionViolation(
                f"{len(self.species)} species labels for a species axis of length {n_species}")
        if len(set(self.species)) != n_species:
            raise PreconditionViolation("species labels must be unique")
        if len(self.plots) != n_plots:
            raise PreconditionViolation(
                f"{len(self.plots)} plot labels for a plot axis of length {n_plots}")
        vals = self.y[~np.isnan(self.y)]
        if not np.isin(vals, (0.0, 1.0)).all():
            raise PreconditionViolation("detection values must be 0, 1 or missing")
        if not np.isfinite(self.elevation).all():
            raise PreconditionViolation("elevation must be finite for every plot")
        # a recorded detection needs a visit date
        visited = ~np.isnan(self.y).all(axis=1)
        if np.isnan(self.dates[visited]).any():
            raise PreconditionViolation("every visit with detection data needs a survey date")

    # ---------------------------
    # Construction from tidy tables
    # ---------------------------
    @classmethod
    def from_tables(cls, detections: pd.DataFrame, plots: pd.DataFrame,
                    species: Optional[Sequence] = None):
        """
        Build the array from tidy tables.

        detections: columns plot, species, visit (1 or 2), detected (0/1)
        plots:      columns plot, elevation, date1, date2 (one row per plot)

        Plot order follows ``plots``; species order follows ``species`` or,
        when not given, first appearance in ``detections``. Plot/species/visit
        combinations absent from ``detections`` are non-detections if the
        visit has a date, missing otherwise.
        """
        required = {"plot", "species", "visit", "detected"}
        missing = required - set(detections.columns)
        if missing:
            raise PreconditionViolation(f"detections table is missing columns: {missing}")
        required = {"plot", "elevation", "date1", "date2"}
        missing = required - set(plots.columns)
        if missing:
            raise PreconditionViolation(f"plots table is missing columns: {missing}")
        if plots["plot"].duplicated().any():
            raise PreconditionViolation("plots table must have one row per plot")

        bad_visits = set(detections["visit"].unique()) - {1, 2}
        if bad_visits:
            raise PreconditionViolation(f"visit must be 1 or 2, found {sorted(bad_visits)}")

        plot_ids = plots["plot"].tolist()
        if species is None:
            species = pd.unique(detections["species"]).tolist()
        species = list(species)

        unknown = set(detections["plot"]) - set(plot_ids)
        if unknown:
            raise PreconditionViolation(f"{len(unknown)} plots in detections are not in the plots table")

        dates = plots[["date1", "date2"]].to_numpy(dtype=float)
        y = np.zeros((len(plot_ids), len(species), N_VISITS))
        y[np.isnan(dates)[:, None, :].repeat(len(species), axis=1)] = np.nan

        plot_pos = {p: i for i, p in enumerate(plot_ids)}
        sp_pos = {s: k for k, s in enumerate(species)}
        d = detections[detections["species"].isin(sp_pos)]
        i = d["plot"].map(plot_pos).to_numpy(dtype=int)
        k = d["species"].map(sp_pos).to_numpy(dtype=int)
        j = d["visit"].to_numpy(dtype=int) - 1
        y[i, k, j] = d["detected"].to_numpy(dtype=float)

        return cls(y, plots["elevation"].to_numpy(dtype=float), dates,
                   species=species, plots=plot_ids)

    # ---------------------------
    # Derived views
    # ---------------------------
    def detection_counts(self) -> pd.Series:
        """Total number of detections per species across plots and visits."""
        return pd.Series(np.nansum(self.y, axis=(0, 2)).astype(int), index=self.species, name="n_detections")

    def observed_matrix(self) -> pd.DataFrame:
        """Naive occurrence: 1 if detected on at least one visit."""
        obs = (np.nan_to_num(self.y, nan=0.0).max(axis=2) > 0).astype(int)
        return pd.DataFrame(obs, index=self.plots, columns=self.species)

    def digest(self) -> str:
        """Hash of the detections, covariates and labels; NaN (no visit) hashes consistently."""
        h = hashlib.sha1()
        for arr in (self.y, self.elevation, self.dates):
            a = np.ascontiguousarray(arr, dtype=float)
            h.update(str(a.shape).encode("utf-8"))
            h.update(np.where(np.isnan(a), -1.0, a).tobytes())
            h.update(np.isnan(a).tobytes())
        h.update(json.dumps([self.species, self.plots], default=str).encode("utf-8"))
        return h.hexdigest()

    def subset_species(self, mask) -> "SurveyData":
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_species,):
            raise PreconditionViolation(f"species mask has shape {mask.shape}, expected ({self.n_species},)")
        return SurveyData(self.y[:, mask, :], self.elevation, self.dates,
                          species=[s for s, m in zip(self.species, mask) if m],
                          plots=self.plots)

    def species_unit(self, k: int, rescaling: Rescaling) -> SpeciesUnit:
        y = self.y[:, k, :].copy()
        y.setflags(write=False)
        return SpeciesUnit(index=k, name=self.species[k], y=y,
                           elevation=self.elevation, dates=self.dates,
                           rescaling=rescaling)

    def species_units(self, rescaling: Rescaling):
        for k in range(self.n_species):
            yield self.species_unit(k, rescaling)

"""
Community-level summaries of an occurrence matrix in trait space.

For each plot (row of M, species present where M == 1):
  - community trait means
  - FRic: volume of the convex hull of the present species' traits
  - mnnd: mean nearest-neighbour distance between present species
  - richness

A plot where a metric is geometrically undefined gets NaN for that metric;
nothing else is affected.
"""

import logging

import numpy as np
import pandas as pd
from scipy.spatial import ConvexHull, QhullError
from scipy.spatial.distance import pdist, squareform
from scipy.stats import linregress

from .config import RELEVANCE_SPAN, TRAIT_COLUMNS
from .errors import DegenerateGeometry, PreconditionViolation
from .traits import validate_traits

logger = logging.getLogger(__name__)


# ---------------------------
# Point-set metrics
# ---------------------------
def convex_hull_volume(points) -> float:
    """Volume of the convex hull of ``points`` (n x d). Raises DegenerateGeometry."""
    pts = np.unique(np.asarray(points, dtype=float), axis=0)
    if pts.ndim != 2:
        raise DegenerateGeometry("points must be a 2-D array")
    n, d = pts.shape
    if n < d + 1:
        raise DegenerateGeometry(f"{n} distinct points, need at least {d + 1} in {d} dimensions")
    try:
        return float(ConvexHull(pts).volume)
    except QhullError as e:
        raise DegenerateGeometry(f"flat point set: {str(e).splitlines()[0] if str(e) else 'qhull error'}") from e


def nearest_neighbour_distance(points) -> float:
    """
    Mean over points of the distance to the nearest other point.

    Zero distances (duplicated trait values) are skipped, so a point's
    neighbour is the closest one at a strictly positive distance.
    """
    pts = np.asarray(points, dtype=float)
    if pts.shape[0] < 2:
        raise DegenerateGeometry(f"{pts.shape[0]} species, need at least 2")
    dist = squareform(pdist(pts))
    dist[dist <= 0] = np.inf
    nearest = dist.min(axis=1)
    nearest = nearest[np.isfinite(nearest)]
    if nearest.size == 0:
        raise DegenerateGeometry("all species share the same trait values")
    return float(nearest.mean())


# ---------------------------
# Matrix-level metrics
# ---------------------------
def _as_matrix(M):
    m = np.asarray(M, dtype=float)
    if m.ndim != 2:
        raise PreconditionViolation(f"occurrence matrix must be 2-D, got {m.ndim}-D")
    if np.isnan(m).any():
        raise PreconditionViolation("occurrence matrix has undefined entries; use the usable species subset")
    if not np.isin(m, (0.0, 1.0)).all():
        raise PreconditionViolation("occurrence matrix must be binary")
    return m.astype(bool)


def richness(M) -> np.ndarray:
    return _as_matrix(M).sum(axis=1)


def community_trait_means(M, traits) -> np.ndarray:
    """(n_plots, n_traits) means over present species; NaN rows for empty plots."""
    m = _as_matrix(M).astype(float)
    t = np.asarray(traits, dtype=float)
    n = m.sum(axis=1, keepdims=True)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(n > 0, (m @ t) / n, np.nan)


def _per_plot(M, traits, fn):
    m = _as_matrix(M)
    t = np.asarray(traits, dtype=float)
    out = np.full(m.shape[0], np.nan)
    n_degenerate = 0
    for i, row in enumerate(m):
        try:
            out[i] = fn(t[row])
        except DegenerateGeometry:
            n_degenerate += 1
    if n_degenerate:
        logger.debug("%s undefined for %d of %d plots", fn.__name__, n_degenerate, m.shape[0])
    return out


def functional_richness(M, traits) -> np.ndarray:
    return _per_plot(M, traits, convex_hull_volume)


def functional_packing(M, traits) -> np.ndarray:
    return _per_plot(M, traits, nearest_neighbour_distance)


class CommunityMetricsEngine:
    """Computes the per-plot metric set of any occurrence matrix against one trait table."""

    def __init__(self, traits: pd.DataFrame, columns=TRAIT_COLUMNS):
        self.columns = list(columns)
        self.traits = traits.loc[:, self.columns].astype(float)

    def _check(self, M: pd.DataFrame):
        validate_traits(self.traits, list(M.columns), self.columns)

    def compute(self, M: pd.DataFrame) -> pd.DataFrame:
        self._check(M)
        t = self.traits.to_numpy()
        cwm = community_trait_means(M, t)
        out = pd.DataFrame(cwm, index=M.index, columns=[f"{c}_cwm" for c in self.columns])
        out["fric"] = functional_richness(M, t)
        out["mnnd"] = functional_packing(M, t)
        out["richness"] = richness(M)
        return out

    def fric(self, M: pd.DataFrame) -> np.ndarray:
        self._check(M)
        return functional_richness(M, self.traits.to_numpy())

    def mnnd(self, M: pd.DataFrame) -> np.ndarray:
        self._check(M)
        return functional_packing(M, self.traits.to_numpy())


# ---------------------------
# Observed vs corrected
# ---------------------------
def relevance_threshold(corrected, elevation, span=RELEVANCE_SPAN) -> float:
    """span * |slope| of the corrected metric regressed on elevation."""
    y = np.asarray(corrected, dtype=float)
    x = np.asarray(elevation, dtype=float)
    ok = np.isfinite(x) & np.isfinite(y)
    if ok.sum() < 2 or np.ptp(x[ok]) == 0:
        return np.nan
    return float(span * abs(linregress(x[ok], y[ok]).slope))


def compare_metrics(observed: pd.DataFrame, corrected: pd.DataFrame, elevation,
                    span=RELEVANCE_SPAN) -> pd.DataFrame:
    """
    Long table: plot, metric, observed, corrected, difference, threshold, relevant.

    ``difference`` is corrected - observed; the threshold is computed once
    per metric from the corrected values.
    """
    if not observed.index.equals(corrected.index) or list(observed.columns) != list(corrected.columns):
        raise PreconditionViolation("observed and corrected metric sets must have the same plots and metrics")
    elevation = np.asarray(elevation, dtype=float)
    if elevation.shape != (len(observed),):
        raise PreconditionViolation(f"{elevation.shape[0]} elevations for {len(observed)} plots")

    frames = []
    for metric in observed.columns:
        threshold = relevance_threshold(corrected[metric], elevation, span)
        diff = corrected[metric].to_numpy(dtype=float) - observed[metric].to_numpy(dtype=float)
        frames.append(pd.DataFrame({
            "plot": observed.index,
            "metric": metric,
            "elevation": elevation,
            "observed": observed[metric].to_numpy(dtype=float),
            "corrected": corrected[metric].to_numpy(dtype=float),
            "difference": diff,
            "threshold": threshold,
            "relevant": np.abs(diff) > threshold,
        }))
    return pd.concat(frames, ignore_index=True)

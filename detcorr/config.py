"""
Run parameters for the detection-correction pipeline.

The module-level constants are the defaults; a ``PipelineConfig`` bundles
them so one set of values can be passed around, stored with a checkpoint and
compared later.
"""

import hashlib
import json
import os
from dataclasses import asdict, dataclass, field, replace
from typing import Optional, Tuple

from . import __version__


# ---------------------------
# Parameters
# ---------------------------
TRAIT_COLUMNS = ("sla", "ch", "sm")   # specific leaf area, canopy height, seed mass

# Species filtering
MIN_DETECTIONS = 3    # species with <= this many detections in the whole dataset are not modelled

# Covariate rescaling (centres default to the dataset means)
ELEVATION_SCALE = 500.0
DATE_SCALE = 30.0

# Occupancy model
COEF_PRIOR_SD = 10.0  # Normal(0, sd) on logit coefficients; None = flat (plain ML)
METHOD = "map"        # "map" (empirical Bayes) or "nuts"
MAXEVAL = 5000

# NUTS settings (only used with METHOD = "nuts")
draws = 500
tune = 500
chains = 2
target_accept = 0.9
hdi_prob = 0.95

# Comparison of observed vs corrected metrics
RELEVANCE_SPAN = 500.0   # elevation span (m) used to turn a slope into a threshold

# Null model
NSIM = 100


@dataclass(frozen=True)
class PipelineConfig:
    trait_columns: Tuple[str, ...] = TRAIT_COLUMNS
    min_detections: Optional[int] = MIN_DETECTIONS

    elevation_center: Optional[float] = None
    elevation_scale: float = ELEVATION_SCALE
    date_center: Optional[float] = None
    date_scale: float = DATE_SCALE

    method: str = METHOD
    coef_prior_sd: Optional[float] = COEF_PRIOR_SD
    detection_elevation_interaction: bool = False
    pi_conditional_on_occupancy: bool = False
    maxeval: int = MAXEVAL

    draws: int = draws
    tune: int = tune
    chains: int = chains
    target_accept: float = target_accept
    hdi_prob: float = hdi_prob

    relevance_span: float = RELEVANCE_SPAN
    nsim: int = NSIM

    n_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    progressbar: bool = False
    version: str = __version__

    def __post_init__(self):
        if self.method not in ("map", "nuts"):
            raise ValueError(f"method must be 'map' or 'nuts', got {self.method!r}")
        if self.method == "nuts" and self.coef_prior_sd is None:
            raise ValueError("method='nuts' needs a proper prior (coef_prior_sd)")
        if self.elevation_scale <= 0 or self.date_scale <= 0:
            raise ValueError("rescaling factors must be positive")
        if self.nsim < 2:
            raise ValueError("nsim must be at least 2 to estimate a null sd")

    def replace(self, **changes) -> "PipelineConfig":
        return replace(self, **changes)

    def fit_settings(self) -> dict:
        """Settings that change the occupancy fit (and so the checkpoint)."""
        d = asdict(self)
        for k in ("relevance_span", "nsim", "n_workers", "progressbar"):
            d.pop(k)
        d["trait_columns"] = list(d["trait_columns"])
        return d

    def fingerprint(self, rescaling=None, survey=None) -> str:
        """Short hash identifying a batch fit of ``survey`` made with these settings."""
        payload = self.fit_settings()
        if rescaling is not None:
            payload["rescaling"] = rescaling.to_dict()
        if survey is not None:
            payload["survey"] = survey.digest()
        raw = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]

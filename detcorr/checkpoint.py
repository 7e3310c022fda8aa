"""
Save/load the batch occupancy fit so it is not recomputed.

Files are tab-separated tables keyed by the config fingerprint:
  P_<key>.tsv, Z_<key>.tsv, observed_<key>.tsv, failed_species_<key>.tsv, meta_<key>.json
"""

import json
import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from .batch import CorrectedMetaCommunity
from .errors import PreconditionViolation
from .survey import Rescaling

logger = logging.getLogger(__name__)


def _paths(directory, key):
    directory = Path(directory)
    return {
        "P": directory / f"P_{key}.tsv",
        "Z": directory / f"Z_{key}.tsv",
        "observed": directory / f"observed_{key}.tsv",
        "failed": directory / f"failed_species_{key}.tsv",
        "meta": directory / f"meta_{key}.json",
    }


def save_batch(meta: CorrectedMetaCommunity, directory, key: str, settings: Optional[dict] = None):
    paths = _paths(directory, key)
    paths["meta"].parent.mkdir(parents=True, exist_ok=True)

    meta.P.rename_axis("species").to_frame("P").to_csv(paths["P"], sep="\t")
    z = meta.Z.copy()
    z.insert(0, "elevation", meta.elevation.to_numpy())
    z.rename_axis("plot").to_csv(paths["Z"], sep="\t")
    meta.observed.rename_axis("plot").to_csv(paths["observed"], sep="\t")
    pd.DataFrame(sorted(meta.failures.items()), columns=["species", "error"]).to_csv(
        paths["failed"], sep="\t", index=False)

    info = {
        "key": key,
        "settings": settings or {},
        "rescaling": meta.rescaling.to_dict() if meta.rescaling is not None else None,
    }
    paths["meta"].write_text(json.dumps(info, indent=2, sort_keys=True, default=str))
    logger.info("Saved checkpoint: %s", paths["meta"].parent / f"*_{key}.*")


def load_batch(directory, key: str) -> Optional[CorrectedMetaCommunity]:
    """Load a checkpoint written under ``key``; None if there is none."""
    paths = _paths(directory, key)
    if not paths["meta"].exists():
        return None
    missing = [p.name for p in paths.values() if not p.exists()]
    if missing:
        raise PreconditionViolation(f"incomplete checkpoint {key}: missing {missing}")

    info = json.loads(paths["meta"].read_text())
    if info.get("key") != key:
        raise PreconditionViolation(f"checkpoint metadata is for key {info.get('key')!r}, not {key!r}")

    P = pd.read_csv(paths["P"], sep="\t", index_col="species", dtype={"species": str})["P"]
    P.index = P.index.astype(str)
    Z = pd.read_csv(paths["Z"], sep="\t", index_col="plot")
    elevation = Z.pop("elevation").rename("elevation")
    observed = pd.read_csv(paths["observed"], sep="\t", index_col="plot")
    failed = pd.read_csv(paths["failed"], sep="\t", dtype=str, keep_default_na=False)

    rescaling = Rescaling(**info["rescaling"]) if info.get("rescaling") else None
    logger.info("Loaded checkpoint %s (%d species, %d failed)", key, len(P), len(failed))
    return CorrectedMetaCommunity(
        P=P.astype(float), Z=Z.astype(float), observed=observed.astype(int), elevation=elevation,
        failures=dict(zip(failed["species"], failed["error"])), rescaling=rescaling,
    )

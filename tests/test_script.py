"""
Runs the batch script on tidy input tables built from the small survey.
"""
import importlib.util
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from conftest import StubEstimator, build_small_survey, build_survey_traits
from detcorr import pipeline

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "run_bdm_correction.py"


def _write_inputs(in_dir: Path):
    survey = build_small_survey()
    rows = [
        {"plot": plot, "species": sp, "visit": j + 1, "detected": 1}
        for i, plot in enumerate(survey.plots)
        for k, sp in enumerate(survey.species)
        for j in range(2)
        if survey.y[i, k, j] == 1
    ]
    pd.DataFrame(rows).to_csv(in_dir / "bdm_detections.tsv", sep="\t", index=False)
    pd.DataFrame({
        "plot": survey.plots,
        "elevation": survey.elevation,
        "date1": survey.dates[:, 0],
        "date2": survey.dates[:, 1],
    }).to_csv(in_dir / "bdm_plots.tsv", sep="\t", index=False)

    # raw units (log-transformed by the script), rows shuffled, one column the script must ignore
    traits = np.exp(build_survey_traits()).iloc[[3, 7, 0, 5, 1, 6, 2, 4]]
    traits["growth_form"] = "herb"
    traits.rename_axis("species").reset_index().to_csv(in_dir / "traits_imputed.tsv", sep="\t", index=False)


@pytest.fixture
def script(tmp_path, monkeypatch):
    (tmp_path / "inputs").mkdir()
    _write_inputs(tmp_path / "inputs")
    monkeypatch.setenv("DETCORR_BASE", str(tmp_path))
    spec = importlib.util.spec_from_file_location("run_bdm_correction", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    monkeypatch.setattr(module, "n_workers", 1)
    monkeypatch.setattr(module, "nsim", 10)
    monkeypatch.setattr(pipeline, "OccupancyEstimator", lambda cfg: StubEstimator(cfg))
    return module


def test_script_writes_every_output(script, tmp_path):
    script.main()
    out_dir = tmp_path / "outputs"
    for name in ("metrics_observed.tsv", "metrics_corrected.tsv", "metrics_comparison.tsv",
                 "ses_observed.tsv", "ses_corrected.tsv"):
        assert (out_dir / name).exists(), name

    observed = pd.read_csv(out_dir / "metrics_observed.tsv", sep="\t", index_col="plot")
    assert list(observed.columns) == ["sla_cwm", "ch_cwm", "sm_cwm", "fric", "mnnd", "richness"]
    assert len(observed) == 10
    assert any((out_dir / "checkpoints").glob("meta_*.json"))

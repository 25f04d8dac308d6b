import json

import anndata
import numpy as np
import pandas as pd
import pytest

from geomx_utils.aggregation import (
    aggregate_counts,
    compute_loq,
    filter_by_detection,
    gene_detection,
)
from geomx_utils.data_loader import load_geomx_data
from geomx_utils.qc_utils import (
    calculate_segment_qc_metrics,
    filter_probes,
    filter_segments,
    set_bioprobe_qc_flags,
    set_segment_qc_flags,
    shift_counts_one,
)
from conftest import MODULE


def make_probe_adata():
    var = pd.DataFrame(
        {
            "target": ["A", "A", "B", "Neg", "Neg", "Neg"],
            "module": ["wta"] * 6,
            "code_class": ["Endogenous"] * 3 + ["Negative"] * 3,
            "negative": [False, False, False, True, True, True],
        },
        index=[f"RTS{i}" for i in range(6)],
    )
    X = np.array(
        [
            [2.0, 8.0, 50.0, 2.0, 4.0, 8.0],
            [3.0, 12.0, 1.0, 4.0, 4.0, 4.0],
        ]
    )
    obs = pd.DataFrame({"genotype": ["WT", "P301S"]}, index=["s1", "s2"])
    return anndata.AnnData(X=X, obs=obs, var=var)


def test_aggregate_counts_geometric_mean():
    genes = aggregate_counts(make_probe_adata())

    assert list(genes.var_names) == ["A", "B", "Neg"]
    np.testing.assert_allclose(genes.X[:, 0], [4.0, 6.0])
    np.testing.assert_allclose(genes.X[:, 1], [50.0, 1.0])
    np.testing.assert_allclose(genes.X[:, 2], [4.0, 4.0])
    assert genes.var.loc["A", "n_probes"] == 2
    assert genes.var.loc["Neg", "negative"]
    assert genes.obs["genotype"].tolist() == ["WT", "P301S"]


def test_aggregate_counts_ignores_masked_outliers():
    adata = make_probe_adata()
    probe_counts = adata.X.copy()
    probe_counts[0, 1] = np.nan
    adata.layers["probe_counts"] = probe_counts

    genes = aggregate_counts(adata)

    assert genes.X[0, 0] == pytest.approx(2.0)


def test_aggregate_counts_renames_targets_shared_by_modules():
    adata = make_probe_adata()
    adata.var["module"] = ["wta", "wta", "wta", "wta", "wta", "cta"]
    adata.var["target"] = ["A", "A", "B", "Neg", "Neg", "Neg"]

    genes = aggregate_counts(adata)

    assert "Neg_wta" in genes.var_names
    assert "Neg_cta" in genes.var_names


def test_compute_loq():
    genes = aggregate_counts(make_probe_adata())
    genes = compute_loq(genes, n_geo_sd=2, min_loq=2)

    # s1 negatives 2, 4, 8: geomean 4, geoSD 2
    assert genes.obs["NegGeoMean_wta"].iloc[0] == pytest.approx(4)
    assert genes.obs["NegGeoSD_wta"].iloc[0] == pytest.approx(2)
    assert genes.obs["LOQ_wta"].iloc[0] == pytest.approx(16)

    # s2 negatives have no spread, LOQ = 4 * 1
    assert genes.obs["LOQ_wta"].iloc[1] == pytest.approx(4)


def test_compute_loq_floor():
    genes = aggregate_counts(make_probe_adata())
    genes = compute_loq(genes, n_geo_sd=0, min_loq=10)

    assert (genes.obs["LOQ_wta"] == 10).all()


def test_compute_loq_requires_negatives():
    adata = anndata.AnnData(X=np.ones((2, 2)), obs=pd.DataFrame(index=["s1", "s2"]))

    with pytest.raises(ValueError):
        compute_loq(adata)


def test_gene_detection_and_filter():
    genes = compute_loq(aggregate_counts(make_probe_adata()))
    genes = gene_detection(genes)

    # s1 LOQ 16: only B (50) detected; s2 LOQ 4: only A (6) detected
    np.testing.assert_array_equal(genes.layers["above_loq"][:, :2], [[False, True], [True, False]])
    assert genes.obs["GenesDetected"].tolist() == [1, 1]
    assert genes.obs["GeneDetectionRate"].tolist() == [0.5, 0.5]
    assert genes.var.loc["A", "DetectionRate"] == 0.5

    filtered = filter_by_detection(genes, min_segment_rate=0.5, min_gene_rate=0.6)

    assert filtered.n_obs == 2
    # Negative targets survive the gene filter
    assert list(filtered.var_names) == ["Neg"]


def test_compute_loq_module_without_negatives():
    adata = make_probe_adata()
    adata.var["module"] = ["wta", "wta", "spike", "wta", "wta", "wta"]

    genes = compute_loq(aggregate_counts(adata), min_loq=2)
    genes = gene_detection(genes)

    assert "NegGeoMean_spike" not in genes.obs
    assert (genes.obs["LOQ_spike"] == 2).all()
    # B (50 then 1) is tested against the floor
    assert genes.layers["above_loq"][:, list(genes.var_names).index("B")].tolist() == [True, False]


def test_gene_detection_with_spike_in_panel(geomx_dataset):
    spike = geomx_dataset["data_dir"] / "spike.pkc"
    spike.write_text(
        json.dumps(
            {
                "Name": "Spike",
                "Targets": [
                    {
                        "DisplayName": "ERCC-00002",
                        "CodeClass": "Endogenous",
                        "Probes": [{"RTS_ID": "RTS9999999"}],
                    }
                ],
            }
        )
    )

    adata = load_geomx_data(
        geomx_dataset["dcc_dir"], [geomx_dataset["pkc"], spike], geomx_dataset["annotation"]
    )
    adata = calculate_segment_qc_metrics(shift_counts_one(adata))
    adata = filter_segments(set_segment_qc_flags(adata))
    adata = filter_probes(set_bioprobe_qc_flags(adata))
    genes = gene_detection(compute_loq(aggregate_counts(adata)))

    assert (genes.obs["LOQ_Spike"] == 2).all()
    assert genes.var.loc["ERCC-00002", "DetectedSegments"] == 0
    assert f"LOQ_{MODULE}" in genes.obs

#!/usr/bin/env python3
"""
Target-level aggregation and detection utilities for GeoMx analysis
Collapses probes to genes and computes the limit of quantification (LOQ)
"""

import numpy as np
import pandas as pd
import anndata

from geomx_utils.qc_filters import LOQ_PARAMS, DETECTION
from geomx_utils.qc_utils import _dense, geo_mean, geo_sd


def _negative_background(adata, X):
    """Per-module negative probe geomean and geoSD"""
    for module in adata.var["module"].unique():
        neg = (adata.var["negative"] & (adata.var["module"] == module)).to_numpy()
        if not neg.any():
            continue
        adata.obs[f"NegGeoMean_{module}"] = geo_mean(X[:, neg], axis=1)
        adata.obs[f"NegGeoSD_{module}"] = geo_sd(X[:, neg], axis=1)


def aggregate_counts(adata):
    """Collapse probe counts to one value per target

    Each target takes the geometric mean of its probes in a segment,
    ignoring NaN (masked local outliers). Negative background is recomputed
    from the surviving negative probes before they are collapsed.

    Args:
        adata: Probe-level AnnData object after probe QC

    Returns:
        Target-level AnnData object
    """
    print("Aggregating probes to targets...")

    if "probe_counts" in adata.layers:
        X = _dense(adata.layers["probe_counts"])
    else:
        X = _dense(adata.X)

    obs = adata.obs.copy()
    probe_level = anndata.AnnData(X=X, obs=obs, var=adata.var.copy())
    _negative_background(probe_level, X)

    var = adata.var
    groups = var.groupby(["module", "target"], sort=False, observed=True).indices

    values = np.empty((adata.n_obs, len(groups)))
    targets = []
    for j, ((module, target), idx) in enumerate(groups.items()):
        values[:, j] = geo_mean(X[:, idx], axis=1)
        first = var.iloc[idx[0]]
        targets.append(
            {
                "target": target,
                "module": module,
                "code_class": first["code_class"],
                "negative": bool(first["negative"]),
                "n_probes": len(idx),
            }
        )

    gene_var = pd.DataFrame(targets)
    names = gene_var["target"].astype(str)
    # Same target in more than one panel
    duplicated = names.duplicated(keep=False)
    names[duplicated] = names[duplicated] + "_" + gene_var.loc[duplicated, "module"].astype(str)
    gene_var.index = names.to_numpy()

    gene_adata = anndata.AnnData(X=values, obs=probe_level.obs, var=gene_var)
    gene_adata.uns = dict(adata.uns)

    print(f"Aggregated {adata.n_vars} probes into {gene_adata.n_vars} targets")

    return gene_adata


def compute_loq(adata, n_geo_sd=LOQ_PARAMS["n_geo_sd"], min_loq=LOQ_PARAMS["min_loq"]):
    """Compute the limit of quantification per segment and module

    LOQ = NegGeoMean * NegGeoSD ** n_geo_sd, floored at min_loq. Modules
    without negative probes get min_loq.

    Args:
        adata: Target-level AnnData object with negative background in obs

    Returns:
        AnnData object with LOQ_<module> columns in obs
    """
    print("Computing limit of quantification...")

    modules = [col[len("NegGeoMean_"):] for col in adata.obs.columns if col.startswith("NegGeoMean_")]
    if not modules:
        raise ValueError("No negative probe background found; run aggregate_counts first")

    for module in modules:
        geomean = adata.obs[f"NegGeoMean_{module}"].astype(float).to_numpy()
        geosd = adata.obs[f"NegGeoSD_{module}"].astype(float).to_numpy()
        loq = geomean * geosd**n_geo_sd
        # NaN (single negative probe) falls back to the floor
        adata.obs[f"LOQ_{module}"] = np.fmax(loq, min_loq)

    # Panels without negative probes (spike-ins) only get the floor
    if "module" in adata.var:
        for module in adata.var["module"].unique():
            if f"LOQ_{module}" not in adata.obs:
                print(f"  No negative probes in {module}; LOQ set to {min_loq}")
                adata.obs[f"LOQ_{module}"] = float(min_loq)

    return adata


def gene_detection(adata):
    """Call targets detected above the LOQ of their module

    Args:
        adata: Target-level AnnData object with LOQ columns

    Returns:
        AnnData object with an above_loq layer, segment detection rates in
        obs and target detection rates in var
    """
    print("Calculating gene detection...")

    X = _dense(adata.X)
    loq = np.column_stack(
        [adata.obs[f"LOQ_{module}"].to_numpy(dtype=float) for module in adata.var["module"]]
    )
    above = X > loq

    genes = ~adata.var["negative"].to_numpy(dtype=bool)
    n_genes = max(int(genes.sum()), 1)

    adata.layers["above_loq"] = above
    adata.obs["GenesDetected"] = above[:, genes].sum(axis=1)
    adata.obs["GeneDetectionRate"] = adata.obs["GenesDetected"] / n_genes
    adata.var["DetectedSegments"] = above.sum(axis=0)
    adata.var["DetectionRate"] = adata.var["DetectedSegments"] / max(adata.n_obs, 1)

    return adata


def filter_by_detection(
    adata,
    min_segment_rate=DETECTION["min_segment_rate"],
    min_gene_rate=DETECTION["min_gene_rate"],
):
    """Drop segments and targets with low detection

    Negative targets are always kept.

    Args:
        adata: AnnData object after gene_detection
        min_segment_rate: Minimum fraction of genes detected per segment
        min_gene_rate: Minimum fraction of segments a gene is detected in

    Returns:
        Filtered copy
    """
    print("Filtering by gene detection...")
    print(f"Starting with {adata.n_obs} segments and {adata.n_vars} targets")

    adata = adata[adata.obs["GeneDetectionRate"].to_numpy() >= min_segment_rate].copy()

    # Rates change once segments are removed
    adata = gene_detection(adata)
    keep = (adata.var["DetectionRate"].to_numpy() >= min_gene_rate) | adata.var[
        "negative"
    ].to_numpy(dtype=bool)
    adata = adata[:, keep].copy()

    print(f"After filtering: {adata.n_obs} segments and {adata.n_vars} targets")

    return adata

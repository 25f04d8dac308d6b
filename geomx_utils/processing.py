#!/usr/bin/env python3
"""
Processing utilities for GeoMx spatial transcriptomics analysis
Handles quantile normalization, analysis object construction, PCA and UMAP
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
from sklearn.metrics import silhouette_score

from geomx_utils.qc_filters import NORMALIZATION, REDUCTION, METADATA_COLORS
from geomx_utils.qc_utils import _dense, geo_mean


def quantile_normalize(adata, quantile=NORMALIZATION["quantile"]):
    """Quantile normalize target counts

    Each segment is scaled so that the chosen quantile of its (non-negative)
    targets equals the geometric mean of that quantile across segments.

    Args:
        adata: Target-level AnnData object
        quantile: Quantile to equalize (0.75 = Q3 normalization)

    Returns:
        AnnData object with a q_norm layer and normalization factors in obs
    """
    print(f"Quantile normalizing (q={quantile})...")

    X = _dense(adata.X)
    genes = ~adata.var["negative"].to_numpy(dtype=bool)
    if not genes.any():
        raise ValueError("No non-negative targets to normalize")

    q_values = np.nanquantile(X[:, genes], quantile, axis=1)
    if np.any(~np.isfinite(q_values)) or np.any(q_values <= 0):
        bad = list(adata.obs_names[~(np.isfinite(q_values) & (q_values > 0))])
        raise ValueError(f"Non-positive quantile in segments: {bad}")

    norm_factor = q_values / geo_mean(q_values)

    adata.obs["QuantileValue"] = q_values
    adata.obs["NormFactor"] = norm_factor
    adata.layers["q_norm"] = X / norm_factor[:, None]

    return adata


def build_analysis_object(adata):
    """Convert the normalized GeoMx object into the analysis object

    Negative targets are dropped. Aggregated counts go to the `counts`
    layer and the quantile-normalized values become X.

    Args:
        adata: Target-level AnnData object with a q_norm layer

    Returns:
        New AnnData object ready for dimensionality reduction
    """
    print("Building analysis object...")

    if "q_norm" not in adata.layers:
        raise ValueError("Missing q_norm layer; run quantile_normalize first")

    genes = ~adata.var["negative"].to_numpy(dtype=bool)
    analysis = adata[:, genes].copy()

    analysis.layers["counts"] = _dense(analysis.X)
    analysis.layers["q_norm"] = _dense(analysis.layers["q_norm"])
    analysis.layers["log_q_norm"] = np.log2(analysis.layers["q_norm"])
    analysis.X = analysis.layers["q_norm"].copy()

    analysis.obs["orig.ident"] = analysis.obs_names.astype(str)

    print(f"Analysis object: {analysis.n_obs} segments x {analysis.n_vars} genes")

    return analysis


def run_pca_umap(
    adata,
    n_pcs=REDUCTION["n_pcs"],
    n_neighbors=REDUCTION["n_neighbors"],
    umap_min_dist=REDUCTION["umap_min_dist"],
    theta=REDUCTION["theta"],
    random_state=REDUCTION["random_state"],
    save_dir=None,
):
    """Variance-stabilize, then run PCA, neighbors and UMAP

    Pearson residuals of the `counts` layer replace X; the q_norm layer is
    left untouched. Component and neighbor numbers are clipped to what the
    data shape allows.

    Args:
        adata: Analysis AnnData object
        n_pcs: Number of principal components
        n_neighbors: Size of the kNN graph
        save_dir: Directory to save the elbow plot (optional)

    Returns:
        AnnData object with X_pca and X_umap
    """
    if adata.n_obs < 3:
        raise ValueError(f"Need at least 3 segments for PCA/UMAP, got {adata.n_obs}")

    print("Running Pearson residual normalization...")
    residuals = sc.experimental.pp.normalize_pearson_residuals(
        adata, theta=theta, layer="counts", check_values=False, inplace=False
    )
    adata.X = np.asarray(residuals["X"])

    n_comps = int(min(n_pcs, adata.n_obs - 1, adata.n_vars - 1))
    n_neighbors = int(min(n_neighbors, adata.n_obs - 1))

    print("Running PCA...")
    sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=random_state)

    if save_dir:
        plot_pca_elbow(adata, save_dir=save_dir)

    print("Computing neighborhood graph...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_comps, random_state=random_state)

    print("Running UMAP...")
    sc.tl.umap(adata, min_dist=umap_min_dist, random_state=random_state)

    adata.uns["reduction_params"] = {
        "n_pcs": n_comps,
        "n_neighbors": n_neighbors,
        "umap_min_dist": float(umap_min_dist),
        "theta": float(theta),
        "random_state": int(random_state),
    }

    return adata


def pca_outlier_segments(adata, n=4):
    """Return the n segments furthest from the PCA centroid

    Args:
        adata: AnnData object with X_pca
        n: Number of segments to return

    Returns:
        List of segment names, most extreme first
    """
    if "X_pca" not in adata.obsm:
        raise ValueError("Missing X_pca; run run_pca_umap first")

    pcs = np.asarray(adata.obsm["X_pca"])
    distance = np.linalg.norm(pcs - pcs.mean(axis=0), axis=1)
    order = np.argsort(distance)[::-1][:n]

    return [str(name) for name in adata.obs_names[order]]


def grouping_silhouette(adata, key):
    """Silhouette of an obs grouping in PCA space

    Returns NaN when the grouping has fewer than two groups or one group
    per segment.
    """
    labels = adata.obs[key].astype(str)
    n_groups = labels.nunique()
    if n_groups < 2 or n_groups >= adata.n_obs:
        return np.nan
    return float(silhouette_score(adata.obsm["X_pca"], labels))


def plot_pca_elbow(adata, save_dir=None):
    """Plot PCA variance ratio

    Args:
        adata: AnnData object with PCA results
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    variance_ratio = adata.uns["pca"]["variance_ratio"]

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(1, len(variance_ratio) + 1), variance_ratio, "-o", markersize=4)
    ax.set_xlabel("PC")
    ax.set_ylabel("Variance ratio")
    ax.set_title("PCA elbow plot")
    fig.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")
        plt.close(fig)
    else:
        plt.show()


def plot_embeddings(adata, color_keys=None, save_dir=None, prefix=""):
    """Plot PCA and UMAP embeddings colored by metadata

    Args:
        adata: AnnData object with X_pca and X_umap
        color_keys: obs columns to color by (default: known metadata columns present)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        prefix: Filename prefix (e.g. the pass name)
    """
    print("Plotting embeddings...")

    if color_keys is None:
        color_keys = [key for key in METADATA_COLORS if key in adata.obs]
    if not color_keys:
        color_keys = ["GeneDetectionRate"]

    fig, axes = plt.subplots(
        2, len(color_keys), figsize=(5 * len(color_keys), 9), squeeze=False
    )

    for col, key in enumerate(color_keys):
        sc.pl.pca(adata, color=key, title=f"PCA: {key}", ax=axes[0, col], show=False)
        sc.pl.umap(adata, color=key, title=f"UMAP: {key}", ax=axes[1, col], show=False)

    plt.tight_layout()

    if save_dir:
        filename = f"{prefix}umap_embeddings.png"
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()

    return fig

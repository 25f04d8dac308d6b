# %% [markdown]
# # Tau-mutant GeoMx: exploratory QC and dimensionality reduction
#
# Interactive walkthrough of `geomx_qc_analysis.py`. Run it top to bottom once
# with `PASS = "first"`, inspect the embeddings, then again with
# `PASS = "second"` to drop the outlier samples.
#
# Expensive objects are cached in `CACHE_DIR`; delete the files (or set
# `OVERWRITE = True`) to recompute.
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
import warnings
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import scanpy as sc
from IPython.display import display

from geomx_utils.data_loader import load_geomx_data
from geomx_utils.qc_utils import (
    shift_counts_one,
    calculate_segment_qc_metrics,
    set_segment_qc_flags,
    segment_qc_summary,
    plot_segment_qc,
    filter_segments,
    set_bioprobe_qc_flags,
    plot_probe_qc,
    filter_probes,
)
from geomx_utils.aggregation import aggregate_counts, compute_loq, gene_detection, filter_by_detection
from geomx_utils.processing import quantile_normalize, pca_outlier_segments, plot_embeddings
from geomx_utils.cache import cache_paths, cached_h5ad
from geomx_utils.qc_filters import SECOND_PASS, get_filter_summary
from geomx_qc_analysis import reduce_pass

warnings.filterwarnings("ignore")
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")

# %%
PASS = "first"  # 🔧 "first" or "second"
DATA_DIR = Path("../data")  # 🔧 DCC files in data/dcc, PKC + annotation in data/
CACHE_DIR = Path("../cache")
OVERWRITE = False

PKC_FILES = sorted(DATA_DIR.glob("*.pkc"))
ANNOTATION_FILE = DATA_DIR / "annotation.xlsx"

print(get_filter_summary())

# %% [markdown]
# ## 2. Loading & segment QC

# %%
def build_qc_object():
    adata = load_geomx_data(DATA_DIR / "dcc", PKC_FILES, ANNOTATION_FILE)
    adata = shift_counts_one(adata)
    adata = calculate_segment_qc_metrics(adata)
    adata = set_segment_qc_flags(adata)
    display(segment_qc_summary(adata))
    plot_segment_qc(adata)
    adata = filter_segments(adata)

    adata = set_bioprobe_qc_flags(adata)
    plot_probe_qc(adata)
    adata = filter_probes(adata)

    adata = aggregate_counts(adata)
    adata = compute_loq(adata)
    adata = gene_detection(adata)
    adata = filter_by_detection(adata)
    return quantile_normalize(adata)


paths = cache_paths(CACHE_DIR, PASS)
qc_adata = cached_h5ad(paths["qc"], build_qc_object, overwrite=OVERWRITE)
qc_adata

# %% [markdown]
# ### Gene detection and normalization factors
#
# Segments with very low detection or extreme normalization factors are the
# usual candidates for manual removal.

# %%
fig, axes = plt.subplots(1, 2, figsize=(12, 4))
axes[0].hist(qc_adata.obs["GeneDetectionRate"] * 100, bins=30)
axes[0].set_xlabel("Genes detected (%)")
axes[1].scatter(qc_adata.obs["QuantileValue"], qc_adata.obs["NormFactor"], s=10)
axes[1].set_xlabel("Q3 count")
axes[1].set_ylabel("Normalization factor")
plt.tight_layout()
plt.show()

# %% [markdown]
# ## 3. Analysis object, PCA & UMAP

# %%
exclude = []
if PASS == "second":
    exclude = list(SECOND_PASS["exclude_samples"])
    if not exclude:
        first_reduced = sc.read_h5ad(cache_paths(CACHE_DIR, "first")["reduced"])
        exclude = pca_outlier_segments(first_reduced, n=SECOND_PASS["n_outliers"])
    print(f"Removing: {exclude}")

# Unknown sample ids raise KeyError
adata = cached_h5ad(paths["reduced"], lambda: reduce_pass(qc_adata, exclude), overwrite=OVERWRITE)
plot_embeddings(adata)

# %% [markdown]
# ### Candidate outliers
#
# Distance from the PCA centroid; the top entries of the first pass are the
# segments removed in the second pass.

# %%
pcs = adata.obsm["X_pca"]
distance = np.linalg.norm(pcs - pcs.mean(axis=0), axis=1)
display(
    adata.obs.assign(pca_distance=distance)
    .sort_values("pca_distance", ascending=False)
    .head(10)
)

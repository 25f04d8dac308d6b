#!/usr/bin/env python3
"""
GeoMx spatial transcriptomics QC and dimensionality reduction
Tau-mutant mouse study

This script performs:
1. DCC/PKC/annotation loading
2. Segment QC and probe QC (Grubbs outliers)
3. Aggregation to genes, LOQ and gene detection filtering
4. Quantile normalization
5. Pearson residuals, PCA and UMAP

It runs in two passes. The second pass is identical except that four
outlier samples are removed before the analysis object is built.

uv run python geomx_qc_analysis.py --pass first
uv run python geomx_qc_analysis.py --pass second
"""

import warnings
import argparse
import matplotlib
import pandas as pd
import scanpy as sc
from pathlib import Path

# Import our custom modules
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
from geomx_utils.aggregation import (
    aggregate_counts,
    compute_loq,
    gene_detection,
    filter_by_detection,
)
from geomx_utils.processing import (
    quantile_normalize,
    build_analysis_object,
    run_pca_umap,
    pca_outlier_segments,
    grouping_silhouette,
    plot_embeddings,
)
from geomx_utils.cache import cache_paths, cached_h5ad
from geomx_utils.qc_filters import SECOND_PASS, METADATA_COLORS, get_filter_summary

PASSES = ["first", "second"]

# Configure scanpy
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")


def resolve_inputs(data_dir, pkc_files=None, annotation_file=None):
    """Locate the DCC directory, PKC files and annotation sheet

    Args:
        data_dir: Data directory. DCC files are read from `data_dir/dcc` when it
            exists, otherwise from `data_dir` itself.
        pkc_files: PKC paths (default: all .pkc files in data_dir)
        annotation_file: Annotation sheet (default: data_dir/annotation.xlsx or .csv)

    Returns:
        Tuple of (dcc_dir, pkc_files, annotation_file)
    """
    data_dir = Path(data_dir)
    dcc_dir = data_dir / "dcc" if (data_dir / "dcc").is_dir() else data_dir

    if not pkc_files:
        pkc_files = sorted(data_dir.glob("*.pkc"))
    if not pkc_files:
        raise FileNotFoundError(f"No .pkc files found in {data_dir}")

    if annotation_file is None:
        candidates = [data_dir / f"annotation{ext}" for ext in [".xlsx", ".csv", ".tsv"]]
        existing = [path for path in candidates if path.exists()]
        if not existing:
            raise FileNotFoundError(f"No annotation sheet found in {data_dir}")
        annotation_file = existing[0]

    return dcc_dir, [Path(path) for path in pkc_files], Path(annotation_file)


def build_qc_object(dcc_dir, pkc_files, annotation_file, plots_dir=None):
    """Run loading, QC, aggregation and normalization

    Returns:
        Normalized target-level AnnData object
    """
    # Step 1: Load data
    adata = load_geomx_data(dcc_dir, pkc_files, annotation_file)

    # Step 2: Shift counts and calculate segment QC metrics
    adata = shift_counts_one(adata)
    adata = calculate_segment_qc_metrics(adata)

    # Step 3: Segment QC
    adata = set_segment_qc_flags(adata)
    print(segment_qc_summary(adata))
    plot_segment_qc(adata, save_dir=plots_dir)
    adata = filter_segments(adata)

    # Step 4: Probe QC
    adata = set_bioprobe_qc_flags(adata)
    plot_probe_qc(adata, save_dir=plots_dir)
    adata = filter_probes(adata)

    # Step 5: Aggregate to targets, LOQ and detection
    adata = aggregate_counts(adata)
    adata = compute_loq(adata)
    adata = gene_detection(adata)
    adata = filter_by_detection(adata)

    # Step 6: Normalize
    adata = quantile_normalize(adata)

    return adata


def reduce_pass(qc_adata, exclude_samples=(), plots_dir=None):
    """Build the analysis object and run dimensionality reduction

    Args:
        qc_adata: Normalized target-level AnnData object
        exclude_samples: Segment names removed before the analysis object is built
        plots_dir: Directory to save plots (optional)

    Returns:
        Reduced analysis AnnData object
    """
    exclude_samples = list(exclude_samples)
    adata = qc_adata

    if exclude_samples:
        unknown = sorted(set(exclude_samples) - set(adata.obs_names))
        if unknown:
            raise KeyError(f"Unknown samples to exclude: {unknown}")
        adata = adata[~adata.obs_names.isin(exclude_samples)].copy()
        print(f"Removed {len(exclude_samples)} outlier samples: {', '.join(exclude_samples)}")

    adata = build_analysis_object(adata)
    adata = run_pca_umap(adata, save_dir=plots_dir)
    adata.uns["excluded_samples"] = ",".join(exclude_samples)

    return adata


def main(
    pass_name="first",
    data_dir="data",
    pkc_files=None,
    annotation_file=None,
    cache_dir="cache",
    plots_dir_path="plots",
    exclude_samples=None,
    overwrite=False,
):
    """Main analysis pipeline

    Args:
        pass_name: "first" or "second". The second pass removes outlier samples.
        data_dir: Directory with DCC files, PKC files and the annotation sheet.
        pkc_files: PKC paths (default: all .pkc files in data_dir).
        annotation_file: Annotation sheet (default: found in data_dir).
        cache_dir: Directory for cached .h5ad objects.
        plots_dir_path: Directory where plots will be saved.
        exclude_samples: Samples removed in the second pass. Defaults to
            SECOND_PASS["exclude_samples"], then to the most extreme
            first-pass segments in PCA space.
        overwrite: Recompute cached objects.
    """
    if pass_name not in PASSES:
        raise ValueError(f"pass_name must be one of {PASSES}, got {pass_name!r}")

    print(f"Starting GeoMx analysis ({pass_name} pass)...")

    # Create output directory for plots
    plots_dir = Path(plots_dir_path) / pass_name
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")

    # Print filter settings
    print("\n" + get_filter_summary() + "\n")

    dcc_dir, pkc_files, annotation_file = resolve_inputs(data_dir, pkc_files, annotation_file)

    paths = cache_paths(cache_dir, pass_name)
    qc_adata = cached_h5ad(
        paths["qc"],
        lambda: build_qc_object(dcc_dir, pkc_files, annotation_file, plots_dir=plots_dir),
        overwrite=overwrite,
    )

    exclude = []
    if pass_name == "second":
        exclude = list(exclude_samples or SECOND_PASS["exclude_samples"])
        if not exclude:
            print("\nNo samples given; using the most extreme first-pass segments...")
            first_plots = Path(plots_dir_path) / "first"
            first_plots.mkdir(parents=True, exist_ok=True)
            first_reduced = cached_h5ad(
                cache_paths(cache_dir, "first")["reduced"],
                lambda: reduce_pass(qc_adata, plots_dir=first_plots),
                overwrite=overwrite,
            )
            exclude = pca_outlier_segments(first_reduced, n=SECOND_PASS["n_outliers"])

    adata = cached_h5ad(
        paths["reduced"],
        lambda: reduce_pass(qc_adata, exclude, plots_dir=plots_dir),
        overwrite=overwrite,
    )

    # Plot embeddings
    plot_embeddings(adata, save_dir=plots_dir, prefix=f"{pass_name}_")

    # Separation of metadata groups in PCA space
    for key in METADATA_COLORS:
        if key in adata.obs:
            print(f"  Silhouette ({key}): {grouping_silhouette(adata, key):.3f}")

    # Save coordinates for downstream inspection
    coords = pd.DataFrame(
        adata.obsm["X_umap"], index=adata.obs_names, columns=["UMAP1", "UMAP2"]
    )
    coords = coords.join(
        pd.DataFrame(adata.obsm["X_pca"][:, :2], index=adata.obs_names, columns=["PC1", "PC2"])
    )
    coords.to_csv(plots_dir / "embedding_coordinates.csv")
    print(f"  Saved: {plots_dir}/embedding_coordinates.csv")

    print("Analysis complete!")
    return adata


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="GeoMx QC, normalization and dimensionality reduction"
    )
    parser.add_argument(
        "--pass",
        dest="pass_name",
        choices=PASSES,
        default="first",
        help="Analysis pass: 'second' removes outlier samples (default: 'first')",
    )
    parser.add_argument(
        "--data-dir",
        default="data",
        help="Directory with DCC files, PKC files and the annotation sheet (default: 'data')",
    )
    parser.add_argument("--pkc", nargs="+", default=None, help="PKC file(s)")
    parser.add_argument("--annotation", default=None, help="Segment annotation sheet")
    parser.add_argument(
        "--cache-dir",
        default="cache",
        help="Directory for cached .h5ad objects (default: 'cache')",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--exclude",
        nargs="+",
        default=None,
        help="Samples to remove in the second pass",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Recompute cached objects",
    )
    args = parser.parse_args()

    # Suppress warnings
    warnings.filterwarnings("ignore")

    adata = main(
        pass_name=args.pass_name,
        data_dir=args.data_dir,
        pkc_files=args.pkc,
        annotation_file=args.annotation,
        cache_dir=args.cache_dir,
        plots_dir_path=args.plots_dir,
        exclude_samples=args.exclude,
        overwrite=args.overwrite,
    )

#!/usr/bin/env python3
"""
Quality control and analysis parameters for the GeoMx workflow

This file centralizes all QC thresholds used in the pipeline.
Modify these values to adjust filtering stringency.
"""

# Segment-level filters
SEGMENT_QC = {
    "min_segment_reads": 1000,  # Minimum raw reads per segment
    "percent_trimmed": 80,  # Minimum % of reads surviving adapter trimming
    "percent_stitched": 80,  # Minimum % of paired reads stitched
    "percent_aligned": 75,  # Minimum % of reads aligned to the probe set
    "percent_saturation": 50,  # Minimum sequencing saturation (%)
    "min_negative_count": 1,  # Minimum negative probe geometric mean
    "max_ntc_count": 1000,  # Maximum counts in the no template control well
    "min_nuclei": 20,  # Minimum nuclei per segment
    "min_area": 1000,  # Minimum segment area (um^2)
}

# Probe-level filters
PROBE_QC = {
    "min_probe_ratio": 0.1,  # Probe geomean / target geomean
    "percent_fail_grubbs": 20,  # % of segments a probe may fail Grubbs in
    "grubbs_alpha": 0.01,
    "min_probes_for_grubbs": 3,  # Targets with fewer probes are not tested
    "remove_local_outliers": True,  # Drop per-segment outlier counts
}

# Limit of quantification
LOQ_PARAMS = {
    "n_geo_sd": 2,  # Geometric SDs above the negative geomean
    "min_loq": 2,  # Floor for the LOQ
}

# Gene detection filters (fractions, not percentages)
DETECTION = {
    "min_segment_rate": 0.05,  # Minimum fraction of genes above LOQ per segment
    "min_gene_rate": 0.1,  # Minimum fraction of segments a gene is above LOQ in
}

NORMALIZATION = {
    "quantile": 0.75,  # Q3 normalization
}

# Dimensionality reduction
REDUCTION = {
    "n_pcs": 30,
    "n_neighbors": 15,
    "umap_min_dist": 0.5,
    "theta": 100,  # Pearson residual overdispersion
    "random_state": 42,
}

# Manual outlier removal for the second pass
SECOND_PASS = {
    "n_outliers": 4,
    "exclude_samples": [],  # Empty = use the most extreme first-pass segments
}

# Annotation sheet column names (after lower-casing and stripping)
ANNOTATION_COLUMNS = {
    "sample_id": "sample_id",
    "slide": "slide name",
    "roi": "roi",
    "segment": "segment",
    "area": "area",
    "nuclei": "nuclei",
}

# Slide name used by the lab worksheet for no template control wells
NTC_SLIDE_NAME = "No Template Control"

# Metadata columns used to color embeddings when present
METADATA_COLORS = ["genotype", "region", "segment", "slide name", "sex", "age"]


# Filtering summary messages
def get_filter_summary():
    """Return a formatted summary of current filter settings"""
    summary = [
        "=== GeoMx QC Settings ===",
        "\nSegment-level filters:",
        f"  - Min reads: {SEGMENT_QC['min_segment_reads']}",
        f"  - Min trimmed/stitched/aligned %: {SEGMENT_QC['percent_trimmed']}"
        f"/{SEGMENT_QC['percent_stitched']}/{SEGMENT_QC['percent_aligned']}",
        f"  - Min saturation %: {SEGMENT_QC['percent_saturation']}",
        f"  - Min negative geomean: {SEGMENT_QC['min_negative_count']}",
        f"  - Max NTC count: {SEGMENT_QC['max_ntc_count']}",
        f"  - Min nuclei: {SEGMENT_QC['min_nuclei']}",
        f"  - Min area: {SEGMENT_QC['min_area']}",
        "\nProbe-level filters:",
        f"  - Min probe ratio: {PROBE_QC['min_probe_ratio']}",
        f"  - Max % segments failing Grubbs: {PROBE_QC['percent_fail_grubbs']}%",
        "\nGene detection:",
        f"  - LOQ: geomean x geoSD^{LOQ_PARAMS['n_geo_sd']} (min {LOQ_PARAMS['min_loq']})",
        f"  - Min segment detection rate: {DETECTION['min_segment_rate']*100}%",
        f"  - Min gene detection rate: {DETECTION['min_gene_rate']*100}%",
        "\nNormalization:",
        f"  - Quantile: {NORMALIZATION['quantile']}",
    ]

    if SECOND_PASS["exclude_samples"]:
        summary.append(
            f"\nSecond pass removes: {', '.join(SECOND_PASS['exclude_samples'])}"
        )

    return "\n".join(summary)


# Validation function
def validate_filters():
    """Validate that filter parameters make sense"""
    errors = []

    # Check percentage bounds
    for key in ["percent_trimmed", "percent_stitched", "percent_aligned", "percent_saturation"]:
        if not 0 <= SEGMENT_QC[key] <= 100:
            errors.append(f"{key} must be between 0 and 100")

    if not 0 <= PROBE_QC["percent_fail_grubbs"] <= 100:
        errors.append("percent_fail_grubbs must be between 0 and 100")

    if not 0 <= PROBE_QC["min_probe_ratio"] <= 1:
        errors.append("min_probe_ratio must be between 0 and 1")

    if not 0 < PROBE_QC["grubbs_alpha"] < 1:
        errors.append("grubbs_alpha must be between 0 and 1")

    if PROBE_QC["min_probes_for_grubbs"] < 3:
        errors.append("min_probes_for_grubbs must be at least 3")

    for key in ["min_segment_rate", "min_gene_rate"]:
        if not 0 <= DETECTION[key] <= 1:
            errors.append(f"{key} must be between 0 and 1")

    if LOQ_PARAMS["min_loq"] < 0:
        errors.append("min_loq must not be negative")

    if not 0 < NORMALIZATION["quantile"] < 1:
        errors.append("quantile must be between 0 and 1")

    for key in ["n_pcs", "n_neighbors"]:
        if REDUCTION[key] < 2:
            errors.append(f"{key} must be at least 2")

    if SECOND_PASS["n_outliers"] < 0:
        errors.append("n_outliers must not be negative")

    if errors:
        raise ValueError("Filter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_filters()

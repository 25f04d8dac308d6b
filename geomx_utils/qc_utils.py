#!/usr/bin/env python3
"""
Quality control utilities for GeoMx spatial transcriptomics analysis
Handles count shifting, segment QC flags, Grubbs probe QC and filtering
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

from geomx_utils.qc_filters import SEGMENT_QC, PROBE_QC

SEGMENT_FLAGS = [
    "LowReads",
    "LowTrimmed",
    "LowStitched",
    "LowAligned",
    "LowSaturation",
    "LowNegatives",
    "HighNTC",
    "LowNuclei",
    "LowArea",
]


def geo_mean(values, axis=None):
    """Geometric mean ignoring NaN"""
    values = np.asarray(values, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.exp(np.nanmean(np.log(values), axis=axis))


def geo_sd(values, axis=None):
    """Geometric standard deviation ignoring NaN"""
    values = np.asarray(values, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.exp(np.nanstd(np.log(values), axis=axis, ddof=1))


def _dense(X):
    if hasattr(X, "toarray"):
        X = X.toarray()
    return np.asarray(X, dtype=float)


def shift_counts_one(adata, use_da_logic=True):
    """Shift counts so that none are zero

    Args:
        adata: AnnData object with raw probe counts
        use_da_logic: If True only zero counts become one, otherwise every
            count is incremented by one

    Returns:
        AnnData object with shifted counts and a log2 layer
    """
    print("Shifting counts to one...")

    X = _dense(adata.X)
    if use_da_logic:
        X = np.where(X == 0, 1.0, X)
    else:
        X = X + 1

    adata.X = X
    adata.layers["log2"] = np.log2(X)

    return adata


def calculate_segment_qc_metrics(adata):
    """Calculate segment QC metrics

    Args:
        adata: AnnData object with NGS processing attributes in obs

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating segment QC metrics...")

    obs = adata.obs
    raw = obs["Raw"].astype(float)

    # Read-processing percentages relative to raw reads
    for field in ["Trimmed", "Stitched", "Aligned"]:
        adata.obs[f"percent_{field.lower()}"] = obs[field].astype(float) / raw * 100

    adata.obs["percent_saturation"] = (
        1 - obs["DeduplicatedReads"].astype(float) / obs["Aligned"].astype(float)
    ) * 100

    # Negative probe background per module
    X = _dense(adata.X)
    for module in adata.var["module"].unique():
        neg = (adata.var["negative"] & (adata.var["module"] == module)).to_numpy()
        if not neg.any():
            continue
        adata.obs[f"NegGeoMean_{module}"] = geo_mean(X[:, neg], axis=1)
        adata.obs[f"NegGeoSD_{module}"] = geo_sd(X[:, neg], axis=1)

    return adata


def set_segment_qc_flags(
    adata,
    min_segment_reads=SEGMENT_QC["min_segment_reads"],
    percent_trimmed=SEGMENT_QC["percent_trimmed"],
    percent_stitched=SEGMENT_QC["percent_stitched"],
    percent_aligned=SEGMENT_QC["percent_aligned"],
    percent_saturation=SEGMENT_QC["percent_saturation"],
    min_negative_count=SEGMENT_QC["min_negative_count"],
    max_ntc_count=SEGMENT_QC["max_ntc_count"],
    min_nuclei=SEGMENT_QC["min_nuclei"],
    min_area=SEGMENT_QC["min_area"],
):
    """Flag low-quality segments

    Flags whose input column is missing are left False.

    Args:
        adata: AnnData object with segment QC metrics

    Returns:
        AnnData object with one boolean column per flag plus QCFlagged
    """
    print("Flagging segments...")

    if "percent_trimmed" not in adata.obs:
        adata = calculate_segment_qc_metrics(adata)

    obs = adata.obs
    false = pd.Series(False, index=obs.index)

    def below(col, cutoff):
        if col not in obs:
            return false
        return obs[col].astype(float) < cutoff

    adata.obs["LowReads"] = below("Raw", min_segment_reads)
    adata.obs["LowTrimmed"] = below("percent_trimmed", percent_trimmed)
    adata.obs["LowStitched"] = below("percent_stitched", percent_stitched)
    adata.obs["LowAligned"] = below("percent_aligned", percent_aligned)
    adata.obs["LowSaturation"] = below("percent_saturation", percent_saturation)

    # Any module with too little negative background
    neg_cols = [col for col in obs.columns if col.startswith("NegGeoMean_")]
    low_neg = false.copy()
    for col in neg_cols:
        low_neg |= below(col, min_negative_count)
    adata.obs["LowNegatives"] = low_neg

    if "NTC" in obs:
        adata.obs["HighNTC"] = obs["NTC"].astype(float) > max_ntc_count
    else:
        adata.obs["HighNTC"] = false

    adata.obs["LowNuclei"] = below("nuclei", min_nuclei)
    adata.obs["LowArea"] = below("area", min_area)

    adata.obs["QCFlagged"] = adata.obs[SEGMENT_FLAGS].any(axis=1)

    print(f"  {int(adata.obs['QCFlagged'].sum())} of {adata.n_obs} segments flagged")

    return adata


def segment_qc_summary(adata):
    """Summarize segment flags as Pass/Warning counts"""
    rows = []
    for flag in SEGMENT_FLAGS + ["QCFlagged"]:
        n_warn = int(adata.obs[flag].sum())
        rows.append({"flag": flag, "Pass": adata.n_obs - n_warn, "Warning": n_warn})
    return pd.DataFrame(rows).set_index("flag")


def grubbs_outlier(values, alpha=PROBE_QC["grubbs_alpha"]):
    """Two-sided Grubbs test for a single outlier

    Args:
        values: 1D array of observations
        alpha: Significance level

    Returns:
        Index of the outlier, or -1 if none was detected
    """
    data = np.asarray(values, dtype=float)
    n = len(data)
    if n < 3:
        return -1

    std = np.std(data, ddof=1)
    if std == 0 or not np.isfinite(std):
        return -1

    # Calculate G statistic
    deviations = np.abs(data - np.mean(data))
    max_idx = int(np.argmax(deviations))
    G = deviations[max_idx] / std

    # Calculate critical G value
    t_crit = stats.t.ppf(1 - alpha / (2 * n), n - 2)
    G_crit = ((n - 1) / np.sqrt(n)) * np.sqrt(t_crit**2 / (n - 2 + t_crit**2))

    return max_idx if G > G_crit else -1


def set_bioprobe_qc_flags(
    adata,
    min_probe_ratio=PROBE_QC["min_probe_ratio"],
    percent_fail_grubbs=PROBE_QC["percent_fail_grubbs"],
    grubbs_alpha=PROBE_QC["grubbs_alpha"],
    min_probes_for_grubbs=PROBE_QC["min_probes_for_grubbs"],
):
    """Flag low-quality probes

    Strategy:
    - Probe ratio: geomean of a probe across segments over the geomean of all
      probes of its target. Negative probes are not ratio-tested.
    - Local outlier: within one segment the probe is a Grubbs outlier among
      the log10 counts of its target's probes (targets with at least
      `min_probes_for_grubbs` probes only).
    - Global outlier: local outlier in at least `percent_fail_grubbs` % of
      segments.

    Args:
        adata: AnnData object with shifted probe counts

    Returns:
        AnnData object with probe flags in var and a local_outlier layer
    """
    print("Flagging probes...")

    X = _dense(adata.X)
    var = adata.var

    probe_geomean = geo_mean(X, axis=0)
    ratio = np.full(adata.n_vars, np.nan)
    local = np.zeros(X.shape, dtype=bool)

    groups = var.groupby(["module", "target"], sort=False, observed=True).indices
    for (module, target), idx in groups.items():
        if not var["negative"].iloc[idx[0]]:
            ratio[idx] = probe_geomean[idx] / geo_mean(X[:, idx])

        if len(idx) < min_probes_for_grubbs:
            continue

        log_counts = np.log10(X[:, idx])
        for i in range(adata.n_obs):
            hit = grubbs_outlier(log_counts[i], alpha=grubbs_alpha)
            if hit >= 0:
                local[i, idx[hit]] = True

    fail_pct = local.sum(axis=0) / max(adata.n_obs, 1) * 100

    adata.var["ProbeRatio"] = ratio
    adata.var["LowProbeRatio"] = np.nan_to_num(ratio, nan=np.inf) <= min_probe_ratio
    adata.var["LocalOutlierSegments"] = local.sum(axis=0)
    adata.var["GlobalGrubbsOutlier"] = fail_pct >= percent_fail_grubbs
    adata.var["ProbeQCFlagged"] = (
        adata.var["LowProbeRatio"] | adata.var["GlobalGrubbsOutlier"]
    )
    adata.layers["local_outlier"] = local

    print(f"  Low probe ratio: {int(adata.var['LowProbeRatio'].sum())}")
    print(f"  Global Grubbs outliers: {int(adata.var['GlobalGrubbsOutlier'].sum())}")
    print(f"  Local outlier calls: {int(local.sum())}")

    return adata


def filter_segments(adata):
    """Remove flagged segments

    Args:
        adata: AnnData object with QCFlagged column

    Returns:
        Filtered copy
    """
    print("Removing flagged segments...")
    print(f"Starting with {adata.n_obs} segments")

    adata = adata[~adata.obs["QCFlagged"].to_numpy()].copy()

    print(f"After filtering: {adata.n_obs} segments")

    return adata


def filter_probes(adata, remove_local_outliers=PROBE_QC["remove_local_outliers"]):
    """Remove flagged probes and mask local outliers

    Args:
        adata: AnnData object with probe flags
        remove_local_outliers: Set local outlier counts to NaN in the
            `probe_counts` layer so they are ignored during aggregation

    Returns:
        Filtered copy
    """
    print("Removing flagged probes...")
    print(f"Starting with {adata.n_vars} probes")

    adata = adata[:, ~adata.var["ProbeQCFlagged"].to_numpy()].copy()

    probe_counts = _dense(adata.X)
    if remove_local_outliers and "local_outlier" in adata.layers:
        probe_counts[np.asarray(adata.layers["local_outlier"], dtype=bool)] = np.nan
    adata.layers["probe_counts"] = probe_counts

    print(f"After filtering: {adata.n_vars} probes")

    return adata


def plot_segment_qc(adata, save_dir=None, groupby="slide name"):
    """Plot segment QC metrics with their cutoffs

    Args:
        adata: AnnData object with segment QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        groupby: obs column used to color histograms when present
    """
    print("Plotting segment QC metrics...")

    metrics = [
        ("Raw", "Raw reads", SEGMENT_QC["min_segment_reads"], True),
        ("percent_trimmed", "Trimmed %", SEGMENT_QC["percent_trimmed"], False),
        ("percent_stitched", "Stitched %", SEGMENT_QC["percent_stitched"], False),
        ("percent_aligned", "Aligned %", SEGMENT_QC["percent_aligned"], False),
        ("percent_saturation", "Saturation %", SEGMENT_QC["percent_saturation"], False),
        ("area", "Area", SEGMENT_QC["min_area"], True),
        ("nuclei", "Nuclei", SEGMENT_QC["min_nuclei"], True),
        ("NTC", "NTC count", SEGMENT_QC["max_ntc_count"], False),
    ]
    metrics = [m for m in metrics if m[0] in adata.obs]

    plot_data = adata.obs.copy()
    hue = groupby if groupby in plot_data else None

    n_cols = 4
    n_rows = int(np.ceil(len(metrics) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(16, 4 * n_rows), squeeze=False)
    axes = axes.flatten()

    for ax, (metric, title, cutoff, log_scale) in zip(axes, metrics):
        sns.histplot(
            data=plot_data,
            x=metric,
            hue=hue,
            bins=20,
            log_scale=log_scale,
            ax=ax,
            legend=ax is axes[0],
        )
        ax.axvline(cutoff, color="red", linestyle="--", alpha=0.5)
        ax.set_title(title)
        ax.set_xlabel("")

    for ax in axes[len(metrics):]:
        ax.set_visible(False)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "segment_qc_histograms.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/segment_qc_histograms.png")
        plt.close(fig)
    else:
        plt.show()

    return fig


def plot_probe_qc(adata, save_dir=None):
    """Plot probe ratio and Grubbs outlier distributions

    Args:
        adata: AnnData object with probe flags
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting probe QC...")

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    ratio = adata.var["ProbeRatio"].dropna()
    ratio = ratio[ratio > 0]
    sns.histplot(x=np.log10(ratio), bins=50, ax=axes[0], color="skyblue")
    axes[0].axvline(
        np.log10(PROBE_QC["min_probe_ratio"]), color="red", linestyle="--", alpha=0.5
    )
    axes[0].set_xlabel("log10 probe ratio")
    axes[0].set_title("Probe ratio")

    fail_pct = adata.var["LocalOutlierSegments"] / max(adata.n_obs, 1) * 100
    tested = fail_pct[fail_pct > 0]
    sns.histplot(x=tested, bins=20, ax=axes[1], color="lightcoral")
    axes[1].axvline(PROBE_QC["percent_fail_grubbs"], color="red", linestyle="--", alpha=0.5)
    axes[1].set_xlabel("% segments with local Grubbs outlier")
    axes[1].set_title("Grubbs outliers")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "probe_qc.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/probe_qc.png")
        plt.close(fig)
    else:
        plt.show()

    return fig

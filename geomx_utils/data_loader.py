#!/usr/bin/env python3
"""
Data loading utilities for GeoMx spatial transcriptomics analysis
Handles DCC count files, PKC probe configuration and the segment annotation sheet
"""

import json
from pathlib import Path

import anndata
import numpy as np
import pandas as pd

from geomx_utils.qc_filters import ANNOTATION_COLUMNS, NTC_SLIDE_NAME

# Numeric fields of the <NGS_Processing_Attributes> section
NGS_NUMERIC_FIELDS = [
    "Raw",
    "Trimmed",
    "Stitched",
    "Aligned",
    "umiQ30",
    "rtsQ30",
    "DeduplicatedReads",
]


def _parse_section(lines):
    """Split `key,value` lines into a dict"""
    values = {}
    for line in lines:
        key, _, value = line.partition(",")
        values[key.strip()] = value.strip().strip('"')
    return values


def read_dcc(file_path):
    """Read a GeoMx DCC file

    Args:
        file_path: Path to the .dcc file

    Returns:
        Dict with header, scan_attributes, ngs_processing_attributes and
        counts (Series of RTS_ID -> count)
    """
    sections = {}
    current = None
    with open(file_path) as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith("</"):
                current = None
            elif line.startswith("<") and line.endswith(">"):
                current = line[1:-1]
                sections[current] = []
            elif current is not None:
                sections[current].append(line)

    if "Code_Summary" not in sections:
        raise ValueError(f"{file_path} has no <Code_Summary> section")

    ngs = _parse_section(sections.get("NGS_Processing_Attributes", []))
    for field in NGS_NUMERIC_FIELDS:
        if field in ngs:
            ngs[field] = pd.to_numeric(ngs[field], errors="coerce")

    code_summary = _parse_section(sections["Code_Summary"])
    counts = pd.Series(
        {rts_id: int(float(count)) for rts_id, count in code_summary.items()},
        dtype="int64",
    )

    return {
        "header": _parse_section(sections.get("Header", [])),
        "scan_attributes": _parse_section(sections.get("Scan_Attributes", [])),
        "ngs_processing_attributes": ngs,
        "counts": counts,
    }


def read_pkc(file_path):
    """Read a GeoMx PKC probe configuration file

    Args:
        file_path: Path to the .pkc (JSON) file

    Returns:
        DataFrame indexed by RTS_ID with target, code_class, probe_id,
        module and negative columns
    """
    with open(file_path) as f:
        pkc = json.load(f)

    module = pkc.get("Name") or Path(file_path).stem

    rows = []
    for target in pkc["Targets"]:
        code_class = target.get("CodeClass", "Endogenous")
        for probe in target["Probes"]:
            rows.append(
                {
                    "RTS_ID": probe["RTS_ID"],
                    "target": target["DisplayName"],
                    "code_class": code_class,
                    "probe_id": probe.get("ProbeID", probe["RTS_ID"]),
                    "module": module,
                    "negative": code_class == "Negative",
                }
            )

    if not rows:
        raise ValueError(f"{file_path} defines no probes")

    return pd.DataFrame(rows).set_index("RTS_ID")


def read_annotation(file_path):
    """Read the segment annotation sheet

    Column names are lower-cased and stripped; rows are indexed by the
    sample id (the DCC file stem).

    Args:
        file_path: Path to an .xlsx, .csv or .tsv annotation file

    Returns:
        DataFrame indexed by sample id
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Annotation file not found: {file_path}")

    if file_path.suffix == ".xlsx":
        annotation = pd.read_excel(file_path)
    elif file_path.suffix == ".tsv":
        annotation = pd.read_csv(file_path, sep="\t")
    elif file_path.suffix == ".csv":
        annotation = pd.read_csv(file_path)
    else:
        raise ValueError(f"Unsupported annotation format: {file_path.suffix} (use .xlsx, .csv or .tsv)")

    annotation.columns = [str(col).strip().lower() for col in annotation.columns]

    sample_col = ANNOTATION_COLUMNS["sample_id"]
    if sample_col not in annotation.columns:
        raise KeyError(f"Annotation sheet has no '{sample_col}' column")

    annotation[sample_col] = (
        annotation[sample_col].astype(str).str.strip().str.replace(r"\.dcc$", "", regex=True)
    )
    annotation = annotation.set_index(sample_col)
    annotation.index.name = None

    return annotation


def load_geomx_data(dcc_dir, pkc_files, annotation_file):
    """Load DCC files into a segment x probe AnnData object

    No template control wells are dropped; their total counts are attached
    to every segment on the same plate as the `NTC` column.

    Args:
        dcc_dir: Directory holding the .dcc files
        pkc_files: PKC path or list of PKC paths
        annotation_file: Segment annotation sheet

    Returns:
        AnnData object with raw probe counts
    """
    print("Loading GeoMx data...")

    dcc_dir = Path(dcc_dir)
    dcc_files = sorted(dcc_dir.glob("*.dcc"))
    if not dcc_files:
        raise FileNotFoundError(f"No .dcc files found in {dcc_dir}")

    if isinstance(pkc_files, (str, Path)):
        pkc_files = [pkc_files]
    probes = pd.concat([read_pkc(path) for path in pkc_files])
    probes = probes[~probes.index.duplicated(keep="first")]

    annotation = read_annotation(annotation_file)
    slide_col = ANNOTATION_COLUMNS["slide"]
    if slide_col in annotation.columns:
        is_ntc = annotation[slide_col].astype(str).str.strip() == NTC_SLIDE_NAME
    else:
        is_ntc = pd.Series(False, index=annotation.index)
    ntc_ids = set(annotation.index[is_ntc.to_numpy()])

    counts = {}
    attributes = {}
    ntc_totals = {}
    for path in dcc_files:
        sample_id = path.stem
        dcc = read_dcc(path)
        plate = str(dcc["scan_attributes"].get("Plate_ID", "unknown"))

        if sample_id in ntc_ids:
            ntc_totals[plate] = ntc_totals.get(plate, 0) + int(dcc["counts"].sum())
            continue

        if sample_id not in annotation.index:
            print(f"  Skipping {path.name} - no annotation row")
            continue

        counts[sample_id] = dcc["counts"]
        attributes[sample_id] = {
            **dcc["ngs_processing_attributes"],
            "plate_id": plate,
            "well": dcc["scan_attributes"].get("Well", ""),
        }

    missing = sorted(set(annotation.index[~is_ntc.to_numpy()]) - set(counts))
    if missing:
        raise FileNotFoundError(f"Annotated segments without a DCC file: {missing}")

    sample_ids = list(counts)
    count_df = pd.DataFrame(counts).T.reindex(index=sample_ids)

    unknown = count_df.columns.difference(probes.index)
    if len(unknown) > 0:
        print(f"  Dropping {len(unknown)} probes not present in the PKC files")
    count_df = count_df.reindex(columns=probes.index).fillna(0)

    obs = annotation.loc[sample_ids].join(
        pd.DataFrame.from_dict(attributes, orient="index")
    )
    obs["NTC"] = obs["plate_id"].map(ntc_totals).fillna(0).astype(int)

    # h5ad needs homogeneous columns
    for col in obs.columns:
        if obs[col].dtype == object:
            obs[col] = obs[col].astype(str)

    adata = anndata.AnnData(
        X=count_df.to_numpy(dtype=np.float64),
        obs=obs,
        var=probes.copy(),
    )
    adata.uns["ntc_counts"] = {plate: int(total) for plate, total in ntc_totals.items()}

    print(f"Loaded {adata.n_obs} segments and {adata.n_vars} probes")

    return adata

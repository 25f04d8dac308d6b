import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

MODULE = "Mm_R_NGS_WTA_v1.0"
N_GENES = 40
NTC_ID = "DSP-1001660000001-A-A01"


def segment_id(i):
    return f"DSP-1001660000001-A-{chr(ord('B') + i // 12)}{i % 12 + 1:02d}"


def build_pkc():
    """Single-probe genes, one 10-probe target, one 4-probe target and negatives"""
    targets = []
    rts = iter(range(1, 10_000))

    def probes(n):
        return [{"RTS_ID": f"RTS{next(rts):07d}", "ProbeID": f"P{i}"} for i in range(n)]

    for g in range(N_GENES):
        targets.append({"DisplayName": f"Gene{g:02d}", "CodeClass": "Endogenous", "Probes": probes(1)})
    targets.append({"DisplayName": "Mapt", "CodeClass": "Endogenous", "Probes": probes(10)})
    targets.append({"DisplayName": "Gfap", "CodeClass": "Endogenous", "Probes": probes(4)})
    targets.append({"DisplayName": "NegProbe-WTX", "CodeClass": "Negative", "Probes": probes(10)})

    return {"Name": MODULE, "Version": 1.0, "Targets": targets}


def write_dcc(path, sample_id, counts, raw=100_000, plate="1001660000001"):
    lines = [
        "<Header>",
        "FileVersion,0.02",
        'SoftwareVersion,"GeoMx_NGS_Pipeline_2.3.3.10"',
        "</Header>",
        "",
        "<Scan_Attributes>",
        f"ID,{sample_id}",
        f"Plate_ID,{plate}",
        f"Well,{sample_id.rsplit('-', 1)[-1]}",
        "</Scan_Attributes>",
        "",
        "<NGS_Processing_Attributes>",
        "SeqSetId,VH00121:3:AAAKJ7NM5",
        f"Raw,{raw}",
        f"Trimmed,{int(raw * 0.98)}",
        f"Stitched,{int(raw * 0.95)}",
        f"Aligned,{int(raw * 0.93)}",
        "umiQ30,0.96",
        "rtsQ30,0.95",
        f"DeduplicatedReads,{int(raw * 0.3)}",
        "</NGS_Processing_Attributes>",
        "",
        "<Code_Summary>",
    ]
    lines += [f"{rts_id},{count}" for rts_id, count in counts.items() if count > 0]
    lines.append("</Code_Summary>")
    Path(path).write_text("\n".join(lines) + "\n")


def write_geomx_dataset(root, n_segments=20, seed=0):
    """Write a small synthetic GeoMx dataset

    Segment 0 has too few reads and segment 1 too few nuclei. In the Mapt
    target one probe is a global Grubbs outlier; in Gfap one probe has a
    low probe ratio.
    """
    rng = np.random.default_rng(seed)
    root = Path(root)
    dcc_dir = root / "dcc"
    dcc_dir.mkdir(parents=True)

    pkc = build_pkc()
    (root / "mouse_wta.pkc").write_text(json.dumps(pkc))

    gene_base = rng.uniform(80, 400, N_GENES)
    rows = []
    for i in range(n_segments):
        sid = segment_id(i)
        genotype = "P301S" if i % 2 else "WT"
        scale = rng.uniform(0.7, 1.5)
        counts = {}
        for target in pkc["Targets"]:
            name = target["DisplayName"]
            for k, probe in enumerate(target["Probes"]):
                if name == "NegProbe-WTX":
                    mean = 20 * scale
                elif name == "Mapt":
                    mean = (10_000 if k == 9 else 100) * scale
                elif name == "Gfap":
                    mean = (0.5 if k == 3 else 100) * scale
                else:
                    g = int(name[4:])
                    boost = 3.0 if genotype == "P301S" and g < 10 else 1.0
                    mean = gene_base[g] * scale * boost
                counts[probe["RTS_ID"]] = int(rng.poisson(mean))
        write_dcc(dcc_dir / f"{sid}.dcc", sid, counts, raw=500 if i == 0 else 100_000)
        rows.append(
            {
                "Sample_ID": f"{sid}.dcc",
                "slide name": f"slide{i % 2 + 1}",
                "roi": i + 1,
                "segment": "Full ROI",
                "area": 5000.0,
                "nuclei": 5 if i == 1 else 200,
                "genotype": genotype,
                "region": "cortex" if i < n_segments // 2 else "hippocampus",
            }
        )

    ntc_counts = {probe["RTS_ID"]: 1 for probe in pkc["Targets"][0]["Probes"]}
    ntc_counts.update({probe["RTS_ID"]: 5 for probe in pkc["Targets"][-1]["Probes"]})
    write_dcc(dcc_dir / f"{NTC_ID}.dcc", NTC_ID, ntc_counts, raw=200)
    rows.append(
        {
            "Sample_ID": f"{NTC_ID}.dcc",
            "slide name": "No Template Control",
            "roi": np.nan,
            "segment": "",
            "area": np.nan,
            "nuclei": np.nan,
            "genotype": "",
            "region": "",
        }
    )
    pd.DataFrame(rows).to_csv(root / "annotation.csv", index=False)

    return {
        "data_dir": root,
        "dcc_dir": dcc_dir,
        "pkc": root / "mouse_wta.pkc",
        "annotation": root / "annotation.csv",
    }


@pytest.fixture
def geomx_dataset(tmp_path):
    return write_geomx_dataset(tmp_path / "data")

#!/usr/bin/env python3
"""
Disk cache for the expensive AnnData construction steps
"""

from pathlib import Path

import anndata
import scanpy as sc


def cache_paths(cache_dir, pass_name):
    """Return the QC and reduced cache file paths for a pass

    Args:
        cache_dir: Cache directory
        pass_name: "first" or "second"

    Returns:
        Dict with `qc` and `reduced` paths
    """
    cache_dir = Path(cache_dir)
    return {
        "qc": cache_dir / f"{pass_name}_qc.h5ad",
        "reduced": cache_dir / f"{pass_name}_reduced.h5ad",
    }


def cached_h5ad(path, build, overwrite=False):
    """Load an AnnData object from disk, building and saving it if missing

    Args:
        path: .h5ad cache file
        build: Zero-argument callable returning an AnnData object
        overwrite: Rebuild even if the cache file exists

    Returns:
        AnnData object
    """
    path = Path(path)

    if path.exists() and not overwrite:
        print(f"Loading cached object from {path}")
        return sc.read_h5ad(path)

    adata = build()
    if not isinstance(adata, anndata.AnnData):
        raise TypeError(f"Cache builder for {path} returned {type(adata).__name__}, not AnnData")

    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write(path)
    print(f"  Saved: {path}")

    return adata

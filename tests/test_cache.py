import anndata
import numpy as np
import pandas as pd
import pytest

from geomx_utils.cache import cache_paths, cached_h5ad


def make_adata():
    return anndata.AnnData(
        X=np.arange(6, dtype=float).reshape(2, 3),
        obs=pd.DataFrame({"genotype": ["WT", "P301S"]}, index=["s1", "s2"]),
    )


def test_cache_paths(tmp_path):
    paths = cache_paths(tmp_path, "second")

    assert paths["qc"] == tmp_path / "second_qc.h5ad"
    assert paths["reduced"] == tmp_path / "second_reduced.h5ad"


def test_cached_h5ad_builds_once(tmp_path):
    path = tmp_path / "nested" / "obj.h5ad"
    calls = []

    def build():
        calls.append(1)
        return make_adata()

    first = cached_h5ad(path, build)
    second = cached_h5ad(path, build)

    assert len(calls) == 1
    assert path.exists()
    np.testing.assert_array_equal(second.X, first.X)
    assert list(second.obs["genotype"]) == ["WT", "P301S"]


def test_cached_h5ad_overwrite(tmp_path):
    path = tmp_path / "obj.h5ad"
    cached_h5ad(path, make_adata)

    rebuilt = cached_h5ad(path, lambda: make_adata()[:1].copy(), overwrite=True)

    assert rebuilt.n_obs == 1
    assert cached_h5ad(path, make_adata).n_obs == 1


def test_cached_h5ad_rejects_non_anndata(tmp_path):
    path = tmp_path / "obj.h5ad"

    with pytest.raises(TypeError):
        cached_h5ad(path, lambda: {"not": "anndata"})

    assert not path.exists()

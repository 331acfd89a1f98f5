"""
质控测试
"""

import numpy as np
import pandas as pd
import pytest

from sc_workflow.preprocessing.qc import is_outlier, per_cell_qc_metrics, quality_control


@pytest.fixture
def qc_adata(simulate_populations):
    """含线粒体基因和若干受损细胞的数据"""
    adata = simulate_populations(seed=1, n_per_group=60, n_genes=120)
    names = list(adata.var_names)
    names[-5:] = [f"MT-{i}" for i in range(5)]
    adata.var_names = names

    X = adata.X.toarray()
    # 前 5 个细胞文库很小，接下来 5 个细胞线粒体比例很高
    X[:5] = np.ceil(X[:5] * 0.05)
    X[5:10, -5:] *= 40
    adata.X = type(adata.X)(X)
    return adata


def test_is_outlier_basic():
    values = pd.Series([10, 11, 9, 10, 12, 10, 100.0])
    flags = is_outlier(values, nmads=3)
    assert flags.dtype == 'boolean'
    assert list(flags) == [False] * 6 + [True]


def test_is_outlier_type_and_log():
    values = np.array([1000, 1100, 900, 1050, 950, 10.0])
    assert is_outlier(values, type='lower', log=True).iloc[-1]
    assert not is_outlier(values, type='higher', log=True).iloc[-1]


def test_is_outlier_monotonic_in_nmads(rng):
    values = pd.Series(rng.lognormal(5, 1, size=500))
    for smaller, larger in [(1, 2), (2, 3), (3, 5)]:
        loose = is_outlier(values, nmads=larger).to_numpy(dtype=bool)
        strict = is_outlier(values, nmads=smaller).to_numpy(dtype=bool)
        # 放宽阈值时被标记的细胞只会减少
        assert np.all(strict[loose])


def test_is_outlier_does_not_mutate(rng):
    values = pd.Series(rng.normal(size=50))
    before = values.copy()
    is_outlier(values, log=False, nmads=2)
    pd.testing.assert_series_equal(values, before)


def test_is_outlier_missing_values():
    values = pd.Series([1.0, 2.0, np.nan, 1.5, 50.0])
    flags = is_outlier(values)
    assert pd.isna(flags.iloc[2])
    assert flags.iloc[4]


def test_is_outlier_batch():
    values = np.r_[np.full(10, 10.0) + np.arange(10) * 0.1, np.full(10, 100.0) + np.arange(10)]
    batch = ['a'] * 10 + ['b'] * 10
    flags = is_outlier(values, batch=batch)
    # 每个批次分别计算阈值，批次间的差异不构成离群
    assert not flags.any()
    assert set(flags.attrs['thresholds']) == {'a', 'b'}

    pooled = is_outlier(values, nmads=0.5)
    assert pooled.any()


def test_is_outlier_subset_and_min_diff():
    values = np.array([1.0, 1.0, 1.0, 1.0, 5.0])
    # MAD 为 0 时任何偏离都会被标记，min_diff 设置最小距离
    assert is_outlier(values).iloc[-1]
    assert not is_outlier(values, min_diff=10).iloc[-1]

    subset = np.array([False, False, False, False, True])
    flags = is_outlier(values, subset=subset)
    assert list(flags) == [True, True, True, True, False]


def test_is_outlier_invalid_type():
    with pytest.raises(ValueError):
        is_outlier([1, 2, 3], type='middle')


def test_per_cell_qc_metrics(qc_adata):
    per_cell_qc_metrics(qc_adata)
    assert qc_adata.var['mt'].sum() == 5
    for col in ('total_counts', 'n_genes_by_counts', 'pct_counts_mt'):
        assert col in qc_adata.obs
    np.testing.assert_allclose(qc_adata.obs['total_counts'], np.asarray(qc_adata.X.sum(axis=1)).ravel(), rtol=1e-5)


def test_per_cell_qc_metrics_chromosome(qc_adata):
    qc_adata.var['chromosome'] = ['1'] * qc_adata.n_vars
    qc_adata.var.iloc[-1, qc_adata.var.columns.get_loc('chromosome')] = 'MT'
    per_cell_qc_metrics(qc_adata)
    assert qc_adata.var['mt'].sum() == 1
    assert qc_adata.var['mt'].iloc[-1]


def test_quality_control_removes_damaged_cells(tmp_path, qc_adata):
    filtered, stats = quality_control(qc_adata, nmads=3, output_dir=str(tmp_path))

    removed = set(qc_adata.obs_names) - set(filtered.obs_names)
    assert set(qc_adata.obs_names[:10]) <= removed
    assert filtered.n_obs >= qc_adata.n_obs - 30
    assert not filtered.obs['discard'].any()
    assert stats['cells_before_qc'].sum() == qc_adata.n_obs
    assert stats['cells_after_qc'].sum() == filtered.n_obs
    assert 'thresholds' in filtered.uns['qc']
    # 输入对象不被修改
    assert 'discard' not in qc_adata.obs
    assert (tmp_path / 'qc_plots').exists()


def test_quality_control_batch_and_fixed(qc_adata):
    filtered = quality_control(qc_adata, batch_key='SampleName', min_genes=10 ** 6, return_stats=False)
    assert filtered.n_obs == 0


def test_quality_control_unknown_doublet_method(qc_adata):
    with pytest.raises(ValueError):
        quality_control(qc_adata, doublet_method='magic')

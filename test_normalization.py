"""
标准化测试
"""

import numpy as np
import pytest
from scipy import sparse

from sc_workflow.preprocessing.normalization import (
    library_size_factors,
    compute_sum_factors,
    quick_cluster,
    log_normalize,
    normalize_data
)
from sc_workflow.utils.errors import DataQualityError


def test_library_size_factors(population_adata):
    sf = library_size_factors(population_adata)
    assert sf.mean() == pytest.approx(1.0)
    lib = np.asarray(population_adata.X.sum(axis=1)).ravel()
    np.testing.assert_allclose(sf, lib / lib.mean())


def test_sum_factors_positive_and_centered(population_adata):
    sf = compute_sum_factors(population_adata)
    assert np.all(sf > 0)
    assert sf.mean() == pytest.approx(1.0)


def test_sum_factors_track_truth(population_adata):
    truth = population_adata.obs['true_size_factor'].to_numpy()
    sf = compute_sum_factors(population_adata, clusters=population_adata.obs['group'])
    assert np.corrcoef(np.log(sf), np.log(truth))[0, 1] > 0.8


def test_sum_factors_scale_with_counts(population_adata):
    X = population_adata.X
    base = compute_sum_factors(X, min_mean=0, center=False)
    scaled = compute_sum_factors(X * 3, min_mean=0, center=False)
    np.testing.assert_allclose(scaled, base * 3, rtol=1e-6)


def test_sum_factors_ref_cluster(population_adata):
    groups = population_adata.obs['group'].to_numpy()
    one = compute_sum_factors(population_adata, clusters=groups, ref_cluster='G0')
    two = compute_sum_factors(population_adata, clusters=groups, ref_cluster='G2')
    # 聚类内部的相对大小与参考聚类无关
    g1 = groups == 'G1'
    np.testing.assert_allclose(one[g1] / one[g1].mean(), two[g1] / two[g1].mean(), rtol=1e-6)
    assert np.corrcoef(one, two)[0, 1] > 0.95

    with pytest.raises(ValueError):
        compute_sum_factors(population_adata, clusters=groups, ref_cluster='G9')


def test_sum_factors_small_cluster_uses_available_pools(simulate_populations):
    adata = simulate_populations(seed=2, n_per_group=15, n_groups=2)
    sf = compute_sum_factors(adata, clusters=adata.obs['group'])
    assert len(sf) == 30
    assert np.all(sf > 0)


def test_sum_factors_zero_cell(population_adata):
    X = population_adata.X.toarray()
    X[3] = 0
    with pytest.raises(DataQualityError):
        compute_sum_factors(sparse.csr_matrix(X))
    with pytest.raises(DataQualityError):
        library_size_factors(X)


def test_sum_factors_cluster_length(population_adata):
    with pytest.raises(ValueError):
        compute_sum_factors(population_adata, clusters=['a', 'b'])


def test_quick_cluster_single_when_small(population_adata):
    labels = quick_cluster(population_adata, min_size=200)
    assert list(labels.categories) == ['1']
    assert len(labels) == population_adata.n_obs


def test_quick_cluster_respects_min_size(population_adata):
    labels = quick_cluster(population_adata, min_size=50)
    counts = labels.value_counts()
    assert counts.min() >= 50
    assert counts.sum() == population_adata.n_obs
    # '1' 为最大的聚类
    assert counts['1'] == counts.max()


def test_log_normalize(normalized_adata, population_adata):
    sf = normalized_adata.obs['size_factor'].to_numpy()
    counts = population_adata.X.toarray()
    expected = np.log2(counts / sf[:, None] + 1)

    np.testing.assert_allclose(normalized_adata.X.toarray(), expected, rtol=1e-5, atol=1e-6)
    np.testing.assert_array_equal(normalized_adata.layers['counts'].toarray(), counts)
    np.testing.assert_allclose(normalized_adata.layers['logcounts'].toarray(), expected, rtol=1e-5, atol=1e-6)


def test_log_normalize_pseudo_count(population_adata):
    adata = population_adata.copy()
    sf = np.ones(adata.n_obs)
    log_normalize(adata, size_factors=sf, pseudo_count=0.5, base=10)
    expected = np.log10(population_adata.X.toarray() + 0.5)
    np.testing.assert_allclose(adata.X, expected, rtol=1e-6)


def test_log_normalize_rejects_bad_size_factors(population_adata):
    sf = np.ones(population_adata.n_obs)
    sf[0] = 0
    with pytest.raises(DataQualityError):
        log_normalize(population_adata.copy(), size_factors=sf)
    with pytest.raises(ValueError):
        log_normalize(population_adata.copy(), size_factors=[1.0, 2.0])


def test_normalize_data(tmp_path, population_adata):
    result = normalize_data(population_adata, min_size=50, output_dir=str(tmp_path))

    assert result.obs['size_factor'].mean() == pytest.approx(1.0)
    assert 'quick_cluster' in result.obs
    assert {'counts', 'logcounts'} <= set(result.layers)
    np.testing.assert_array_equal(result.layers['counts'].toarray(), population_adata.X.toarray())
    assert 'size_factor' not in population_adata.obs
    assert (tmp_path / 'normalization' / 'size_factors.png').exists()


def test_normalize_data_without_quick_cluster(population_adata):
    result = normalize_data(population_adata, use_quick_cluster=False)
    assert (result.obs['quick_cluster'] == '1').all()
    assert np.all(result.obs['size_factor'] > 0)

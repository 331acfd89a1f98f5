"""
近邻图与聚类测试
"""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from sc_workflow.clustering import (
    find_nearest_neighbors,
    build_snn_graph,
    cluster_graph,
    relabel_by_size,
    data_clustering,
    cluster_composition
)


def _blobs(seed=0, n_per_blob=60, n_blobs=3, n_dims=10, spread=30.0):
    rng = np.random.default_rng(seed)
    labels = np.repeat(np.arange(n_blobs), n_per_blob)
    centers = rng.normal(0, spread, size=(n_blobs, n_dims))
    return centers[labels] + rng.normal(size=(len(labels), n_dims)), labels


def _is_pure(truth, predicted):
    table = pd.crosstab(np.asarray(predicted), np.asarray(truth))
    return bool(((table > 0).sum(axis=1) == 1).all())


def test_exact_neighbors():
    X, _ = _blobs()
    indices, distances, info = find_nearest_neighbors(X, k=5)

    assert indices.shape == (len(X), 5)
    assert not np.any(indices == np.arange(len(X))[:, None])
    assert np.all(np.diff(distances, axis=1) >= 0)
    np.testing.assert_allclose(distances[:, 0], np.linalg.norm(X - X[indices[:, 0]], axis=1), rtol=1e-5)
    assert info == {'method': 'exact', 'approximate': False, 'k': 5}


def test_approx_neighbors_recall():
    X, _ = _blobs(n_per_blob=200)
    exact, _, _ = find_nearest_neighbors(X, k=10)
    approx, _, info = find_nearest_neighbors(X, k=10, method='approx', random_state=0)

    assert info['approximate']
    recall = np.mean([len(set(a) & set(b)) / 10 for a, b in zip(exact, approx)])
    assert recall > 0.9


def test_neighbors_invalid():
    X, _ = _blobs(n_per_blob=3, n_blobs=1)
    with pytest.raises(ValueError):
        find_nearest_neighbors(X, k=3)
    with pytest.raises(ValueError):
        find_nearest_neighbors(X, k=1, method='kd')


@pytest.mark.parametrize('weighting', ['rank', 'number', 'jaccard'])
def test_snn_graph(weighting):
    X, _ = _blobs()
    k = 10
    graph, info = build_snn_graph(X, k=k, weighting=weighting)

    assert sparse.isspmatrix_csr(graph)
    assert abs(graph - graph.T).max() == 0
    assert graph.diagonal().sum() == 0
    weights = graph.data
    assert np.all(weights > 0)
    if weighting == 'rank':
        assert np.all(weights <= k)
    elif weighting == 'number':
        assert np.all(weights <= k + 1)
        np.testing.assert_array_equal(weights, np.round(weights))
    else:
        assert np.all(weights <= 1)
    assert info['weighting'] == weighting


def test_snn_graph_links_neighbors():
    X, _ = _blobs()
    indices, _, _ = find_nearest_neighbors(X, k=10)
    graph, _ = build_snn_graph(X, k=10)
    # 互为近邻的细胞必然相连
    dense = graph.toarray()
    assert np.all(dense[np.arange(len(X)), indices[:, 0]] > 0)


def test_snn_graph_separates_blobs():
    X, labels = _blobs()
    graph, _ = build_snn_graph(X, k=10)
    coo = graph.tocoo()
    assert np.all(labels[coo.row] == labels[coo.col])


@pytest.mark.parametrize('method', ['walktrap', 'louvain', 'leiden'])
def test_cluster_graph_recovers_blobs(method):
    X, labels = _blobs()
    graph, _ = build_snn_graph(X, k=10)
    clusters = cluster_graph(graph, method=method, random_state=0)

    assert len(clusters) == len(labels)
    assert len(clusters.categories) >= 3
    assert _is_pure(labels, clusters)


def test_cluster_graph_reproducible():
    X, _ = _blobs(n_dims=3, spread=3)
    graph, _ = build_snn_graph(X, k=10)
    one = cluster_graph(graph, method='louvain', random_state=1)
    two = cluster_graph(graph, method='louvain', random_state=1)
    assert list(one) == list(two)


def test_cluster_graph_unknown_method():
    with pytest.raises(ValueError):
        cluster_graph(sparse.identity(3, format='csr'), method='kmeans')


def test_relabel_by_size():
    labels = relabel_by_size(['b', 'a', 'a', 'c', 'a', 'b'])
    assert list(labels) == ['2', '1', '1', '3', '1', '2']
    assert list(labels.categories) == ['1', '2', '3']


def test_cluster_composition(population_adata):
    adata = population_adata.copy()
    adata.obs['cluster'] = pd.Categorical(np.where(adata.obs['group'] == 'G0', '1', '2'))
    table = cluster_composition(adata, 'SampleName')

    assert list(table.index) == ['1', '2']
    assert table.loc['1', 'n_cells'] == 100
    assert table.loc['1', 'S1'] + table.loc['1', 'S2'] == 100
    np.testing.assert_allclose(table[['prop_S1', 'prop_S2']].sum(axis=1), 1)


def test_data_clustering(tmp_path, normalized_adata):
    result = data_clustering(
        normalized_adata, max_rank=10, embedding='tsne', perplexity=20,
        group_keys=['group'], output_dir=str(tmp_path)
    )

    truth = result.obs['group'].to_numpy()
    clusters = result.obs['cluster']
    table = pd.crosstab(clusters.to_numpy(), truth)
    assert table.max(axis=1).sum() / result.n_obs > 0.95
    assert len(clusters.cat.categories) >= 3

    assert 'snn_connectivities' in result.obsp
    assert result.uns['snn']['use_rep'] == 'X_pca'
    assert result.obsm['X_tsne'].shape == (result.n_obs, 2)
    assert 'cluster' not in normalized_adata.obs

    out = tmp_path / 'clustering'
    for name in ('gene_variance.csv', 'mean_variance.png', 'pca_variance.png',
                 'tsne_cluster.png', 'tsne_group.png', 'composition_group.csv'):
        assert (out / name).exists()


@pytest.mark.parametrize('correction', ['combat', 'harmony'])
def test_data_clustering_batch_correction(normalized_adata, correction):
    result = data_clustering(
        normalized_adata, trend_model='empirical', max_rank=10, embedding='none',
        batch_key='SampleName', batch_correction=correction
    )
    assert 'cluster' in result.obs
    if correction == 'combat':
        assert 'combat' in result.layers
        assert result.uns['snn']['use_rep'] == 'X_pca'
    else:
        assert 'X_pca_harmony' in result.obsm
        assert result.uns['snn']['use_rep'] == 'X_pca_harmony'


def test_data_clustering_invalid_batch(normalized_adata):
    with pytest.raises(ValueError):
        data_clustering(normalized_adata, batch_correction='harmony', batch_key=None)
    with pytest.raises(ValueError):
        data_clustering(normalized_adata, trend_model='gamma')

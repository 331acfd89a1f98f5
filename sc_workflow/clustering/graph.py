"""
细胞相似性图模块

- k 近邻搜索：精确 (scikit-learn) 与近似 (pynndescent) 可互换
- 共享近邻 (SNN) 图
- 社区检测：walktrap / louvain (igraph)，leiden (scanpy)
"""

import random
import logging
from typing import Tuple, Dict

import numpy as np
import pandas as pd
import anndata as ad
import scanpy as sc
import igraph as ig
from scipy import sparse
from sklearn.neighbors import NearestNeighbors
from pynndescent import NNDescent

logger = logging.getLogger(__name__)

NEIGHBOR_METHODS = ('exact', 'approx')
WEIGHTINGS = ('rank', 'number', 'jaccard')
CLUSTER_METHODS = ('walktrap', 'leiden', 'louvain')


def _drop_self(indices: np.ndarray, distances: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    n, m = indices.shape
    is_self = indices == np.arange(n)[:, None]
    # 存在重复点时自身可能不在结果中，此时去掉最远的一个
    is_self[~is_self.any(axis=1), -1] = True
    keep = ~is_self
    return indices[keep].reshape(n, m - 1), distances[keep].reshape(n, m - 1)


def find_nearest_neighbors(
    X,
    k: int = 10,
    method: str = 'exact',
    random_state: int = 0
) -> Tuple[np.ndarray, np.ndarray, Dict]:
    """
    查找每个细胞的 k 个最近邻（不含自身）

    参数：
    ----------
    X : array-like
        细胞×维度的坐标（如 PCA）
    k : int
        近邻数
    method : str
        'exact' 精确搜索，'approx' 近似搜索（pynndescent）
    random_state : int
        近似搜索的随机种子

    返回：
    ----------
    indices : np.ndarray
        n×k 的近邻序号，按距离升序
    distances : np.ndarray
        n×k 的距离
    info : dict
        搜索方法信息，approximate 为 True 表示结果可能不是精确近邻
    """
    if method not in NEIGHBOR_METHODS:
        raise ValueError(f"未知的近邻搜索方法: {method}，可选 {NEIGHBOR_METHODS}")
    X = np.asarray(X, dtype=np.float64)
    n = X.shape[0]
    if k < 1:
        raise ValueError("k 必须为正整数")
    if n <= k:
        raise ValueError(f"细胞数 ({n}) 必须大于近邻数 k ({k})")

    if method == 'exact':
        nn = NearestNeighbors(n_neighbors=k + 1).fit(X)
        distances, indices = nn.kneighbors(X)
    else:
        logger.info("使用近似近邻搜索 (pynndescent)，结果可能与精确近邻不同")
        index = NNDescent(X, n_neighbors=k + 1, random_state=random_state)
        indices, distances = index.neighbor_graph

    indices, distances = _drop_self(indices, distances)
    info = {'method': method, 'approximate': method == 'approx', 'k': int(k)}
    return indices, distances, info


def build_snn_graph(
    X,
    k: int = 10,
    weighting: str = 'rank',
    neighbor_method: str = 'exact',
    random_state: int = 0
) -> Tuple[sparse.csr_matrix, Dict]:
    """
    构建共享近邻 (SNN) 图

    两个细胞之间有边，当且仅当它们的近邻集合（包含自身）有交集。边权重：
    - rank: k - r/2，r 为共享近邻在两个集合中排名之和的最小值（自身排名为 0）
    - number: 共享近邻个数
    - jaccard: 共享近邻集合的 Jaccard 指数

    参数：
    ----------
    X : array-like
        细胞×维度的坐标
    k : int
        近邻数（默认 10）
    weighting : str
        边权重类型
    neighbor_method : str
        'exact' 或 'approx'，只影响近邻搜索，不影响后续建图
    random_state : int
        近似搜索的随机种子

    返回：
    ----------
    graph : scipy.sparse.csr_matrix
        对称的 n×n 权重矩阵
    info : dict
        近邻搜索与权重参数
    """
    if weighting not in WEIGHTINGS:
        raise ValueError(f"未知的权重类型: {weighting}，可选 {WEIGHTINGS}")

    indices, _, info = find_nearest_neighbors(X, k=k, method=neighbor_method, random_state=random_state)
    n = indices.shape[0]

    table = pd.DataFrame({
        'cell': np.repeat(np.arange(n), k + 1),
        'neighbor': np.hstack([np.arange(n)[:, None], indices]).ravel(),
        'rank': np.tile(np.arange(k + 1), n)
    })
    pairs = table.merge(table, on='neighbor', suffixes=('_a', '_b'))
    pairs = pairs[pairs['cell_a'] < pairs['cell_b']]
    grouped = (pairs['rank_a'] + pairs['rank_b']).groupby([pairs['cell_a'], pairs['cell_b']])

    if weighting == 'rank':
        weights = np.maximum(k - grouped.min() / 2, 1e-6)
    elif weighting == 'number':
        weights = grouped.size().astype(np.float64)
    else:
        shared = grouped.size().astype(np.float64)
        weights = shared / (2 * (k + 1) - shared)

    a = weights.index.get_level_values(0).to_numpy()
    b = weights.index.get_level_values(1).to_numpy()
    w = weights.to_numpy()
    graph = sparse.coo_matrix((np.r_[w, w], (np.r_[a, b], np.r_[b, a])), shape=(n, n)).tocsr()

    info['weighting'] = weighting
    return graph, info


def _to_igraph(graph: sparse.spmatrix) -> ig.Graph:
    upper = sparse.triu(graph, k=1).tocoo()
    g = ig.Graph(n=graph.shape[0], edges=list(zip(upper.row.tolist(), upper.col.tolist())), directed=False)
    g.es['weight'] = upper.data.tolist()
    return g


def relabel_by_size(membership) -> pd.Categorical:
    """按聚类大小从 1 开始重新编号"""
    membership = np.asarray(membership)
    ids, sizes = np.unique(membership, return_counts=True)
    order = ids[np.argsort(-sizes, kind='stable')]
    mapping = {old: str(new + 1) for new, old in enumerate(order)}
    labels = [mapping[m] for m in membership]
    return pd.Categorical(labels, categories=[str(i + 1) for i in range(len(order))])


def cluster_graph(
    graph: sparse.spmatrix,
    method: str = 'walktrap',
    resolution: float = 1.0,
    random_state: int = 0,
    steps: int = 4
) -> pd.Categorical:
    """
    在 SNN 图上进行社区检测

    参数：
    ----------
    graph : scipy.sparse matrix
        对称权重矩阵
    method : str
        'walktrap'、'leiden' 或 'louvain'
    resolution : float
        leiden / louvain 的分辨率
    random_state : int
        随机种子
    steps : int
        walktrap 的随机游走步数

    返回：
    ----------
    pd.Categorical
        聚类标签（'1' 为最大的聚类）；标签只在同一次运行内有意义
    """
    if method not in CLUSTER_METHODS:
        raise ValueError(f"未知的聚类方法: {method}，可选 {CLUSTER_METHODS}")
    n = graph.shape[0]

    if method == 'leiden':
        tmp = ad.AnnData(obs=pd.DataFrame(index=[str(i) for i in range(n)]))
        sc.tl.leiden(
            tmp,
            resolution=resolution,
            adjacency=sparse.csr_matrix(graph),
            random_state=random_state,
            directed=False,
            key_added='cluster'
        )
        membership = tmp.obs['cluster'].astype(int).to_numpy()
    elif method == 'walktrap':
        g = _to_igraph(graph)
        membership = g.community_walktrap(weights='weight', steps=steps).as_clustering().membership
    else:
        g = _to_igraph(graph)
        ig.set_random_number_generator(random.Random(random_state))
        try:
            membership = g.community_multilevel(weights='weight', resolution=resolution).membership
        finally:
            ig.set_random_number_generator(random)

    return relabel_by_size(membership)

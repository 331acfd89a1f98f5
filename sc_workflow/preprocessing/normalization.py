"""
标准化模块

提供基于细胞池反卷积的 size factor 估计与 log 标准化：
- 文库大小 size factor
- 预聚类 (quick_cluster)
- 池化反卷积 size factor (compute_sum_factors)
- log2 标准化表达量
"""

import os
import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import sparse
from scipy.sparse.linalg import spsolve
import matplotlib.pyplot as plt

from ..clustering.graph import build_snn_graph, cluster_graph, relabel_by_size
from ..io.writer import save_figure
from ..utils.errors import DataQualityError
from ..utils.matrix import get_counts, row_sums, col_means

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZES = tuple(range(21, 102, 5))
LOW_WEIGHT = 1e-6


def library_size_factors(counts) -> np.ndarray:
    """
    文库大小 size factor（均值为 1）

    参数：
    ----------
    counts : AnnData 或矩阵
        细胞×基因原始计数

    返回：
    ----------
    np.ndarray
    """
    lib = row_sums(get_counts(counts))
    if np.any(lib <= 0):
        raise DataQualityError(f"{int(np.sum(lib <= 0))} 个细胞的总计数为 0，无法计算 size factor")
    return lib / lib.mean()


def _generate_ring(lib: np.ndarray) -> np.ndarray:
    """按文库大小把细胞排成环：奇数位升序，偶数位降序，首尾相接"""
    order = np.argsort(lib, kind='stable')
    ring = np.r_[order[0::2], order[1::2][::-1]]
    return np.r_[ring, ring]


def _pooled_factors(X: sparse.csr_matrix, sizes: Sequence[int], min_mean: float):
    """
    单个聚类内的池化反卷积

    返回每个细胞的 size factor（相对于该聚类伪细胞）以及伪细胞的平均表达谱（计数尺度，全部基因）
    """
    lib = row_sums(X)
    if np.any(lib <= 0):
        raise DataQualityError(f"{int(np.sum(lib <= 0))} 个细胞的总计数为 0，无法计算 size factor")

    exprs = sparse.diags(1 / lib) @ X
    ave_all = col_means(exprs) * lib.mean()
    keep = ave_all >= min_mean
    if not keep.any():
        raise DataQualityError(f"没有平均表达量 ≥ {min_mean} 的基因，请降低 min_mean")

    exprs = exprs[:, keep].toarray()
    ave = ave_all[keep]
    n = len(lib)

    pool_sizes = [s for s in sizes if s <= n] or [n]
    ring = _generate_ring(lib)
    cumulative = np.vstack([np.zeros(exprs.shape[1]), np.cumsum(exprs[ring], axis=0)])
    starts = np.arange(n)

    rows, cols, values, rhs = [], [], [], []
    for i, size in enumerate(pool_sizes):
        pooled = cumulative[starts + size] - cumulative[starts]
        rhs.append(np.median(pooled / ave, axis=1))
        rows.append(np.repeat(i * n + starts, size))
        cols.append(ring[starts[:, None] + np.arange(size)].ravel())
        values.append(np.ones(n * size))

    # 低权重的单细胞方程保证方程组满秩
    n_pool_eq = len(pool_sizes) * n
    weight = np.sqrt(LOW_WEIGHT)
    rows.append(n_pool_eq + starts)
    cols.append(starts)
    values.append(np.full(n, weight))
    rhs.append(np.full(n, weight / ave.sum()))

    design = sparse.csr_matrix(
        (np.concatenate(values), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_pool_eq + n, n)
    )
    theta = spsolve((design.T @ design).tocsc(), design.T @ np.concatenate(rhs))
    theta = np.atleast_1d(theta)
    if not np.all(np.isfinite(theta)):
        raise DataQualityError("反卷积线性方程组奇异，无法求解 size factor")

    return theta * lib, ave_all


def compute_sum_factors(
    counts,
    clusters=None,
    ref_cluster=None,
    sizes: Sequence[int] = DEFAULT_POOL_SIZES,
    min_mean: float = 0.1,
    center: bool = True
) -> np.ndarray:
    """
    基于细胞池反卷积的 size factor 估计

    每个聚类内把细胞按文库大小排成环，沿环取不同大小的连续细胞池，
    池的表达量总和与伪细胞（聚类平均）的中位数比值给出池内 size factor 之和；
    求解稀疏最小二乘得到单个细胞的 size factor。
    不同聚类再按伪细胞之间的中位数比值缩放到参考聚类。

    参数：
    ----------
    counts : AnnData 或矩阵
        细胞×基因原始计数
    clusters : array-like, optional
        预聚类标签（默认全部细胞为一类）
    ref_cluster : optional
        参考聚类（默认伪细胞中非零基因最多的聚类）
    sizes : sequence of int
        细胞池大小（默认 21, 26, ..., 101），大于聚类细胞数的池会被跳过
    min_mean : float
        伪细胞平均计数低于该值的基因不参与计算（默认 0.1）
    center : bool
        True 时 size factor 均值为 1；False 时以参考伪细胞的计数为单位，
        此时所有计数乘以常数 k，所有 size factor 也乘以 k

    返回：
    ----------
    np.ndarray
        严格为正的 size factor
    """
    X = get_counts(counts)
    n = X.shape[0]
    sizes = sorted(set(int(s) for s in sizes))
    if not sizes or sizes[0] < 1:
        raise ValueError("细胞池大小必须为正整数")

    if clusters is None:
        labels = np.zeros(n, dtype=int)
    else:
        labels = np.asarray(clusters)
        if len(labels) != n:
            raise ValueError(f"clusters 长度 ({len(labels)}) 与细胞数 ({n}) 不一致")

    factors = np.empty(n)
    profiles = {}
    for cluster in pd.unique(labels):
        idx = np.flatnonzero(labels == cluster)
        cluster_factors, profile = _pooled_factors(X[idx], sizes, min_mean)
        factors[idx] = cluster_factors
        profiles[cluster] = (idx, profile)

    if ref_cluster is None:
        ref_cluster = max(profiles, key=lambda c: np.count_nonzero(profiles[c][1]))
    elif ref_cluster not in profiles:
        raise ValueError(f"参考聚类 {ref_cluster!r} 不存在")

    ref_profile = profiles[ref_cluster][1]
    ref_lib = ref_profile.sum()
    for cluster, (idx, profile) in profiles.items():
        if cluster == ref_cluster:
            continue
        cur_lib = profile.sum()
        average = (profile / cur_lib + ref_profile / ref_lib) / 2 * (cur_lib + ref_lib) / 2
        use = (average >= min_mean) & (ref_profile > 0)
        if not use.any():
            raise DataQualityError(f"聚类 {cluster!r} 与参考聚类没有共同的表达基因，无法缩放")
        rescale = np.median(profile[use] / ref_profile[use])
        if not np.isfinite(rescale) or rescale <= 0:
            raise DataQualityError(f"聚类 {cluster!r} 的缩放系数无效: {rescale}")
        factors[idx] *= rescale

    factors *= ref_lib
    if center:
        factors /= factors.mean()

    bad = ~np.isfinite(factors) | (factors <= 0)
    if bad.any():
        raise DataQualityError(
            f"{int(bad.sum())} 个细胞的 size factor 非正，请先过滤低质量细胞或调整 sizes / min_mean"
        )
    return factors


def _merge_small_clusters(graph: sparse.spmatrix, labels, min_size: int) -> pd.Categorical:
    """把小于 min_size 的聚类并入连接权重最大的相邻聚类"""
    labels = np.asarray(labels, dtype=object)
    while True:
        names, sizes = np.unique(labels, return_counts=True)
        if len(names) <= 1 or sizes.min() >= min_size:
            break
        smallest = names[np.argmin(sizes)]
        members = labels == smallest
        links = pd.Series(row_sums(graph[members].T)).groupby(labels).sum().drop(smallest)
        target = links.idxmax() if links.max() > 0 else names[np.argmax(sizes)]
        labels[members] = target
    return relabel_by_size(labels)


def quick_cluster(
    counts,
    min_size: int = 100,
    k: int = 10,
    n_pcs: int = 50,
    method: str = 'walktrap',
    random_state: int = 0
) -> pd.Categorical:
    """
    为池化反卷积做的快速预聚类

    文库大小标准化 → log2 → PCA → SNN 图 → 社区检测，
    小于 min_size 的聚类被合并，保证每个聚类有足够的细胞组成细胞池。

    参数：
    ----------
    counts : AnnData 或矩阵
        细胞×基因原始计数
    min_size : int
        最小聚类大小（默认 100）
    k : int
        SNN 图近邻数
    n_pcs : int
        主成分数
    method : str
        社区检测方法
    random_state : int
        随机种子

    返回：
    ----------
    pd.Categorical
        预聚类标签
    """
    X = get_counts(counts)
    n, n_genes = X.shape
    if n < 2 * min_size:
        logger.warning("细胞数 (%d) 少于 2 倍 min_size (%d)，全部细胞作为一个聚类", n, min_size)
        return pd.Categorical(['1'] * n, categories=['1'])

    sf = library_size_factors(X)
    logcounts = (sparse.diags(1 / sf) @ X).log1p() / np.log(2)

    tmp = ad.AnnData(X=sparse.csr_matrix(logcounts))
    sc.tl.pca(tmp, n_comps=min(n_pcs, n - 1, n_genes - 1), random_state=random_state)

    graph, _ = build_snn_graph(tmp.obsm['X_pca'], k=k, weighting='rank')
    labels = cluster_graph(graph, method=method, random_state=random_state)
    return _merge_small_clusters(graph, labels, min_size)


def log_normalize(
    adata: ad.AnnData,
    size_factors=None,
    pseudo_count: float = 1,
    base: float = 2
) -> ad.AnnData:
    """
    计算 log 标准化表达量 log_base(x / sf + pseudo_count)

    原始计数保存在 layers['counts']，结果写入 X 和 layers['logcounts']。

    参数：
    ----------
    adata : AnnData
        AnnData 对象（原地修改）
    size_factors : array-like, optional
        size factor（默认使用 obs['size_factor']）
    pseudo_count : float
        伪计数（默认 1）
    base : float
        对数底（默认 2）

    返回：
    ----------
    adata : AnnData
    """
    sf = np.asarray(adata.obs['size_factor'] if size_factors is None else size_factors, dtype=np.float64)
    if len(sf) != adata.n_obs:
        raise ValueError("size factor 长度与细胞数不一致")
    if np.any(~np.isfinite(sf) | (sf <= 0)):
        raise DataQualityError("size factor 必须全部为正")

    if 'counts' not in adata.layers:
        adata.layers['counts'] = adata.X.copy()
    normed = sparse.diags(1 / sf) @ get_counts(adata)

    if pseudo_count == 1:
        adata.X = sparse.csr_matrix(normed)
        sc.pp.log1p(adata, base=base)
    else:
        adata.X = np.log(normed.toarray() + pseudo_count) / np.log(base)
    adata.layers['logcounts'] = adata.X.copy()
    return adata


def normalize_data(
    adata: ad.AnnData,
    use_quick_cluster: bool = True,
    min_size: int = 100,
    cluster_method: str = 'walktrap',
    min_mean: float = 0.1,
    sizes: Sequence[int] = DEFAULT_POOL_SIZES,
    random_state: int = 0,
    output_dir: Optional[str] = None
) -> ad.AnnData:
    """
    标准化流程

    参数：
    ----------
    adata : AnnData
        质控后的原始计数
    use_quick_cluster : bool
        是否先预聚类再分别计算 size factor（默认 True）
    min_size : int
        预聚类的最小聚类大小
    cluster_method : str
        预聚类的社区检测方法
    min_mean : float
        参与反卷积的基因最低平均计数
    sizes : sequence of int
        细胞池大小
    random_state : int
        随机种子
    output_dir : str, optional
        输出目录，提供时绘制 size factor 与文库大小的对比图

    返回：
    ----------
    adata : AnnData
        obs['size_factor']、layers['counts']、layers['logcounts']，X 为 log 表达量
    """
    print("=" * 60)
    print("开始标准化流程...")
    print("=" * 60)

    adata = adata.copy()
    if 'counts' not in adata.layers:
        adata.layers['counts'] = adata.X.copy()

    print("\n[1/3] 预聚类...")
    if use_quick_cluster:
        clusters = quick_cluster(adata, min_size=min_size, method=cluster_method, random_state=random_state)
    else:
        clusters = pd.Categorical(['1'] * adata.n_obs, categories=['1'])
    adata.obs['quick_cluster'] = clusters
    print(f"   预聚类数: {len(clusters.categories)}")

    print(f"\n[2/3] 池化反卷积计算 size factor (min_mean={min_mean})...")
    size_factors = compute_sum_factors(adata, clusters=np.asarray(clusters), sizes=sizes, min_mean=min_mean)
    adata.obs['size_factor'] = size_factors
    lib_factors = library_size_factors(adata)
    print(f"   size factor 范围: {size_factors.min():.3f} - {size_factors.max():.3f}")
    print(f"   与文库大小因子的相关系数: {np.corrcoef(size_factors, lib_factors)[0, 1]:.3f}")

    print("\n[3/3] log2 标准化...")
    log_normalize(adata)

    if output_dir is not None:
        fig, ax = plt.subplots(figsize=(7, 6))
        for label in clusters.categories:
            mask = np.asarray(clusters == label)
            ax.scatter(lib_factors[mask], size_factors[mask], s=6, label=label)
        ax.set_xscale('log')
        ax.set_yscale('log')
        ax.set_xlabel('Library Size Factor', fontsize=12)
        ax.set_ylabel('Deconvolution Size Factor', fontsize=12)
        ax.set_title('Size Factors', fontsize=14, fontweight='bold')
        ax.legend(title='quick cluster', markerscale=2, fontsize=8)
        save_figure(fig, os.path.join(output_dir, 'normalization', 'size_factors.png'))

    print("\n" + "=" * 60)
    print("标准化完成！")
    print("=" * 60)
    return adata

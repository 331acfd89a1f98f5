"""
聚类流程模块

方差建模 → 去噪 PCA → （批次校正）→ SNN 图 → 社区检测 → 二维嵌入
"""

import os
from typing import Optional, List

import numpy as np
import pandas as pd
import scanpy as sc
import scanpy.external as sce
import anndata as ad
import matplotlib.pyplot as plt

from .variance import model_gene_var, model_gene_var_by_poisson, get_top_hvgs, plot_mean_variance
from .reduction import denoise_pca, run_embedding
from .graph import build_snn_graph, cluster_graph
from ..io.writer import save_csv, save_figure

BATCH_METHODS = ('none', 'harmony', 'combat')


def cluster_composition(adata: ad.AnnData, groupby: str, cluster_key: str = 'cluster') -> pd.DataFrame:
    """
    每个聚类中各分组的细胞数与比例

    返回：
    ----------
    pd.DataFrame
        行为聚类，列为分组的细胞数，另有 n_cells 与各分组比例（prop_ 前缀）
    """
    counts = pd.crosstab(adata.obs[cluster_key].astype(str), adata.obs[groupby].astype(str))
    props = counts.div(counts.sum(axis=1), axis=0).add_prefix('prop_')
    table = counts.copy()
    table.insert(0, 'n_cells', counts.sum(axis=1))
    return pd.concat([table, props], axis=1)


def _plot_pca_variance(adata: ad.AnnData, output_path: str):
    pca = adata.uns['pca']
    fig, ax = plt.subplots(figsize=(7, 5))
    ax.plot(np.arange(1, len(pca['variance_ratio']) + 1), pca['variance_ratio'] * 100, 'o-', markersize=4)
    ax.set_xlabel('PC', fontsize=12)
    ax.set_ylabel('Variance Explained (%)', fontsize=12)
    ax.set_title(f"PCs kept: {pca['n_pcs_kept']}", fontsize=14, fontweight='bold')
    save_figure(fig, output_path)


def data_clustering(
    adata: ad.AnnData,
    trend_model: str = 'poisson',
    min_mean: float = 0.1,
    frac: float = 0.3,
    min_rank: int = 5,
    max_rank: int = 50,
    batch_key: Optional[str] = None,
    batch_correction: str = 'none',
    neighbor_method: str = 'exact',
    k: int = 10,
    weighting: str = 'rank',
    method: str = 'walktrap',
    resolution: float = 1.0,
    embedding: str = 'tsne',
    perplexity: float = 30,
    random_state: int = 0,
    group_keys: Optional[List[str]] = None,
    output_dir: Optional[str] = None
) -> ad.AnnData:
    """
    聚类与可视化

    参数：
    ----------
    adata : AnnData
        标准化后的数据（layers['logcounts']，obs['size_factor']）
    trend_model : str
        技术方差模型，'poisson' 或 'empirical'
    min_mean : float
        方差趋势拟合的最低平均表达
    frac : float
        empirical 模型的 LOWESS 窗口比例
    min_rank, max_rank : int
        保留主成分数的上下限
    batch_key : str, optional
        批次列名
    batch_correction : str
        'harmony'、'combat' 或 'none'
    neighbor_method : str
        'exact' 或 'approx'
    k : int
        SNN 图近邻数
    weighting : str
        SNN 边权重类型
    method : str
        社区检测方法
    resolution : float
        leiden / louvain 分辨率
    embedding : str
        'tsne'、'umap' 或 'none'
    perplexity : float
        t-SNE perplexity
    random_state : int
        随机种子
    group_keys : list, optional
        额外绘制嵌入图的 obs 列
    output_dir : str, optional
        输出目录

    返回：
    ----------
    adata : AnnData
        var 中有方差分解结果，obsm['X_pca']，obsp['snn_connectivities']，obs['cluster']
    """
    if trend_model not in ('poisson', 'empirical'):
        raise ValueError(f"未知的技术方差模型: {trend_model}")
    if batch_correction not in BATCH_METHODS:
        raise ValueError(f"未知的批次校正方法: {batch_correction}，可选 {BATCH_METHODS}")
    if batch_correction != 'none' and (batch_key is None or batch_key not in adata.obs):
        raise ValueError(f"批次校正需要有效的 batch_key，当前为: {batch_key}")

    print("=" * 60)
    print("开始聚类流程...")
    print("=" * 60)

    adata = adata.copy()

    print(f"\n[1/5] 基因方差建模 ({trend_model})...")
    if trend_model == 'poisson':
        decomposition = model_gene_var_by_poisson(adata)
    else:
        decomposition = model_gene_var(adata, min_mean=min_mean, frac=frac)
    hvgs = get_top_hvgs(decomposition)
    print(f"   生物学方差 > 0 的基因: {len(hvgs)}")

    print(f"\n[2/5] 去噪 PCA (min_rank={min_rank}, max_rank={max_rank})...")
    pca_layer = None
    if batch_correction == 'combat':
        print(f"   使用 Combat 校正批次 ({batch_key})...")
        adata.layers['combat'] = sc.pp.combat(adata, key=batch_key, inplace=False)
        pca_layer = 'combat'
    n_pcs = denoise_pca(
        adata, subset=hvgs, min_rank=min_rank, max_rank=max_rank,
        layer=pca_layer, random_state=random_state
    )
    print(f"   保留主成分数: {n_pcs}")

    use_rep = 'X_pca'
    if batch_correction == 'harmony':
        print(f"\n[3/5] 使用 Harmony 进行批次效应校正 ({batch_key})...")
        sce.pp.harmony_integrate(
            adata, batch_key, basis='X_pca', adjusted_basis='X_pca_harmony',
            random_state=random_state
        )
        use_rep = 'X_pca_harmony'
        print("   Harmony整合完成")
    else:
        print(f"\n[3/5] 构建 SNN 图 (k={k}, weighting={weighting}, {neighbor_method})...")

    graph, info = build_snn_graph(
        adata.obsm[use_rep], k=k, weighting=weighting,
        neighbor_method=neighbor_method, random_state=random_state
    )
    adata.obsp['snn_connectivities'] = graph
    info['use_rep'] = use_rep
    adata.uns['snn'] = info

    print(f"\n[4/5] 社区检测 ({method})...")
    adata.obs['cluster'] = cluster_graph(graph, method=method, resolution=resolution, random_state=random_state)
    n_clusters = len(adata.obs['cluster'].cat.categories)
    print(f"   聚类完成，共 {n_clusters} 个cluster")

    print(f"\n[5/5] 二维嵌入与可视化 ({embedding})...")
    basis = None
    if embedding != 'none':
        basis = run_embedding(adata, method=embedding, use_rep=use_rep,
                              random_state=random_state, perplexity=perplexity)

    if output_dir is not None:
        out = os.path.join(output_dir, 'clustering')
        save_csv(decomposition, os.path.join(out, 'gene_variance.csv'))
        plot_mean_variance(decomposition, os.path.join(out, 'mean_variance.png'), highlight=hvgs)
        _plot_pca_variance(adata, os.path.join(out, 'pca_variance.png'))

        colors = ['cluster']
        for key in [batch_key] + list(group_keys or []):
            if key is not None and key in adata.obs and key not in colors:
                colors.append(key)
        if basis is not None:
            for color in colors:
                ax = sc.pl.embedding(adata, basis=basis, color=color, title=f'{embedding.upper()} by {color}', show=False)
                save_figure(ax.figure, os.path.join(out, f'{embedding}_{color}.png'))
        for key in colors[1:]:
            save_csv(cluster_composition(adata, key), os.path.join(out, f'composition_{key}.csv'))

    print("\n" + "=" * 60)
    print("聚类完成！")
    print("=" * 60)
    print(f"细胞总数: {adata.n_obs:,}")
    print(f"主成分数: {n_pcs}")
    print(f"聚类数: {n_clusters}")
    if info['approximate']:
        print("⚠️  近邻搜索为近似结果")
    return adata

"""
降维模块

- denoise_pca: 根据技术方差确定保留的主成分数
- run_embedding: t-SNE / UMAP 二维嵌入
"""

import logging
from typing import Optional

import numpy as np
import scanpy as sc
import anndata as ad

from ..utils.errors import DataQualityError

logger = logging.getLogger(__name__)

EMBEDDING_METHODS = ('tsne', 'umap')


def choose_n_pcs(variance: np.ndarray, tech_var: float, total_var: float) -> int:
    """
    保留最少的主成分，使被丢弃的方差不超过总技术方差

    参数：
    ----------
    variance : np.ndarray
        各主成分解释的方差（降序）
    tech_var : float
        所用基因技术方差之和
    total_var : float
        所用基因总方差之和

    返回：
    ----------
    int
    """
    discarded = total_var - np.cumsum(variance)
    below = np.flatnonzero(discarded <= tech_var)
    if len(below) == 0:
        return len(variance)
    return int(below[0] + 1)


def denoise_pca(
    adata: ad.AnnData,
    subset=None,
    min_rank: int = 5,
    max_rank: int = 50,
    layer: Optional[str] = None,
    random_state: int = 0
) -> int:
    """
    去噪 PCA

    只用生物学方差为正的基因做 PCA，假设技术噪声平均分布在后面的主成分上，
    丢弃解释方差之和约等于总技术方差的尾部主成分。

    参数：
    ----------
    adata : AnnData
        需要 var['total'] / var['tech'] / var['bio']（方差分解结果）和 log 表达量
    subset : list 或 bool 数组, optional
        参与 PCA 的基因（默认 var['bio'] > 0）
    min_rank, max_rank : int
        保留主成分数的上下限（默认 5 / 50）
    layer : str, optional
        log 表达量所在的 layer（默认 logcounts，不存在时用 X）
    random_state : int
        随机种子

    返回：
    ----------
    int
        保留的主成分数；结果写入 obsm['X_pca'] 和 uns['pca']
    """
    for col in ('total', 'tech', 'bio'):
        if col not in adata.var:
            raise KeyError(f"var 中缺少方差分解结果 '{col}'，请先运行 model_gene_var")
    if min_rank > max_rank:
        raise ValueError("min_rank 不能大于 max_rank")

    if subset is None:
        mask = (adata.var['bio'] > 0).to_numpy()
    else:
        subset = np.asarray(subset)
        mask = subset if subset.dtype == bool else adata.var_names.isin(subset)
    n_genes = int(mask.sum())
    if n_genes < 2:
        raise DataQualityError(f"参与 PCA 的基因数 ({n_genes}) 不足")

    if layer is None:
        layer = 'logcounts' if 'logcounts' in adata.layers else None
    X = adata.layers[layer] if layer is not None else adata.X
    tmp = ad.AnnData(X=X[:, mask])

    n_comps = min(max_rank, adata.n_obs - 1, n_genes - 1)
    sc.tl.pca(tmp, n_comps=n_comps, random_state=random_state)
    variance = tmp.uns['pca']['variance']

    tech_var = float(adata.var['tech'].to_numpy()[mask].sum())
    total_var = float(adata.var['total'].to_numpy()[mask].sum())
    n_keep = choose_n_pcs(variance, tech_var, total_var)
    n_keep = int(np.clip(n_keep, min(min_rank, n_comps), n_comps))

    loadings = np.zeros((adata.n_vars, n_keep))
    loadings[mask] = tmp.varm['PCs'][:, :n_keep]

    adata.obsm['X_pca'] = tmp.obsm['X_pca'][:, :n_keep]
    adata.varm['PCs'] = loadings
    adata.var['pca_used'] = mask
    adata.uns['pca'] = {
        'variance': variance[:n_keep],
        'variance_ratio': tmp.uns['pca']['variance_ratio'][:n_keep],
        'n_pcs_kept': n_keep,
        'n_genes_used': n_genes,
        'tech_var': tech_var,
        'total_var': total_var
    }
    return n_keep


def run_embedding(
    adata: ad.AnnData,
    method: str = 'tsne',
    use_rep: str = 'X_pca',
    random_state: int = 0,
    perplexity: float = 30,
    n_neighbors: int = 15
) -> str:
    """
    二维嵌入（仅用于可视化）

    返回：
    ----------
    str
        结果所在的 obsm 键（'X_tsne' 或 'X_umap'）
    """
    if method not in EMBEDDING_METHODS:
        raise ValueError(f"未知的嵌入方法: {method}，可选 {EMBEDDING_METHODS}")
    if use_rep not in adata.obsm:
        raise KeyError(f"obsm 中缺少 {use_rep}")

    if method == 'tsne':
        # perplexity 需小于细胞数的 1/3
        max_perplexity = max((adata.n_obs - 1) / 3, 1)
        if perplexity > max_perplexity:
            logger.warning("perplexity %.1f 对 %d 个细胞过大，改为 %.1f", perplexity, adata.n_obs, max_perplexity)
            perplexity = max_perplexity
        sc.tl.tsne(adata, use_rep=use_rep, perplexity=perplexity, random_state=random_state)
        return 'X_tsne'

    sc.pp.neighbors(
        adata,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        use_rep=use_rep,
        random_state=random_state
    )
    sc.tl.umap(adata, random_state=random_state)
    return 'X_umap'

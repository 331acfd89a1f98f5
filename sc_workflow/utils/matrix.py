"""
矩阵工具函数
"""

from typing import Optional

import numpy as np
import anndata as ad
from scipy import sparse


def get_counts(data, layer: Optional[str] = 'counts') -> sparse.csr_matrix:
    """
    取出细胞×基因的原始计数矩阵（CSR, float64）

    参数：
    ----------
    data : AnnData 或矩阵
        AnnData 时优先使用 layers[layer]，不存在则使用 X
    layer : str, optional
        计数所在的 layer

    返回：
    ----------
    scipy.sparse.csr_matrix
    """
    if isinstance(data, ad.AnnData):
        X = data.layers[layer] if layer is not None and layer in data.layers else data.X
    else:
        X = data

    if sparse.issparse(X):
        X = sparse.csr_matrix(X, dtype=np.float64)
    else:
        X = sparse.csr_matrix(np.asarray(X, dtype=np.float64))
    if X.nnz and X.data.min() < 0:
        raise ValueError("计数矩阵中存在负值")
    return X


def row_sums(X) -> np.ndarray:
    return np.asarray(X.sum(axis=1)).ravel()


def col_means(X) -> np.ndarray:
    return np.asarray(X.mean(axis=0)).ravel()

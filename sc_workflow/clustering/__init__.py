"""
聚类模块

提供基因方差建模、降维、SNN 图构建与社区检测功能
"""

from .variance import (
    fit_trend,
    model_gene_var,
    model_gene_var_by_poisson,
    get_top_hvgs,
    plot_mean_variance
)
from .reduction import choose_n_pcs, denoise_pca, run_embedding
from .graph import find_nearest_neighbors, build_snn_graph, cluster_graph, relabel_by_size
from .clustering import data_clustering, cluster_composition

__all__ = [
    'fit_trend',
    'model_gene_var',
    'model_gene_var_by_poisson',
    'get_top_hvgs',
    'plot_mean_variance',
    'choose_n_pcs',
    'denoise_pca',
    'run_embedding',
    'find_nearest_neighbors',
    'build_snn_graph',
    'cluster_graph',
    'relabel_by_size',
    'data_clustering',
    'cluster_composition'
]

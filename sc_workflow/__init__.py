"""
单细胞RNA-seq参考分析流程

基于 UMI 计数的单细胞RNA测序数据处理工具包

主要功能：
- 10x 矩阵 / 压缩包 / h5ad 读取，文件映射分块访问
- 空液滴识别 (emptyDrops)
- 基于 MAD 的自适应质控
- 池化反卷积 size factor 与 log 标准化
- 基因方差分解、去噪 PCA
- SNN 图聚类与二维嵌入
- 标记基因检测、细胞周期分期
- 断点续传与内存监控
"""

__version__ = '1.0.0'
__author__ = 'thesecondfox'

# IO模块
from .io import (
    read_10x_mtx,
    read_10x_archive,
    read_input,
    read_sample,
    annotate_genes,
    read_h5ad,
    save_h5ad,
    save_csv,
    save_figure,
    BackedMatrix
)

# 预处理模块
from .preprocessing import (
    barcode_ranks,
    empty_drops,
    call_cells,
    is_outlier,
    quality_control,
    compute_sum_factors,
    quick_cluster,
    log_normalize,
    normalize_data
)

# 聚类模块
from .clustering import (
    model_gene_var,
    model_gene_var_by_poisson,
    get_top_hvgs,
    denoise_pca,
    run_embedding,
    find_nearest_neighbors,
    build_snn_graph,
    cluster_graph,
    data_clustering
)

# 注释模块
from .annotation import find_markers, marker_detection, classify_cell_cycle

# 工具模块
from .utils import MemoryMonitor, CheckpointManager, DataQualityError

__all__ = [
    # Version
    '__version__',
    '__author__',

    # IO
    'read_10x_mtx',
    'read_10x_archive',
    'read_input',
    'read_sample',
    'annotate_genes',
    'read_h5ad',
    'save_h5ad',
    'save_csv',
    'save_figure',
    'BackedMatrix',

    # Preprocessing
    'barcode_ranks',
    'empty_drops',
    'call_cells',
    'is_outlier',
    'quality_control',
    'compute_sum_factors',
    'quick_cluster',
    'log_normalize',
    'normalize_data',

    # Clustering
    'model_gene_var',
    'model_gene_var_by_poisson',
    'get_top_hvgs',
    'denoise_pca',
    'run_embedding',
    'find_nearest_neighbors',
    'build_snn_graph',
    'cluster_graph',
    'data_clustering',

    # Annotation
    'find_markers',
    'marker_detection',
    'classify_cell_cycle',

    # Utils
    'MemoryMonitor',
    'CheckpointManager',
    'DataQualityError'
]

"""
预处理模块

提供细胞识别、质量控制和标准化功能
"""

from .cell_calling import (
    BarcodeRanks,
    barcode_ranks,
    good_turing_proportions,
    estimate_ambient_alpha,
    empty_drops_pvalues,
    empty_drops,
    classify_barcodes,
    call_cells
)
from .qc import is_outlier, per_cell_qc_metrics, quality_control, plot_qc_metrics
from .normalization import (
    library_size_factors,
    compute_sum_factors,
    quick_cluster,
    log_normalize,
    normalize_data
)

__all__ = [
    'BarcodeRanks',
    'barcode_ranks',
    'good_turing_proportions',
    'estimate_ambient_alpha',
    'empty_drops_pvalues',
    'empty_drops',
    'classify_barcodes',
    'call_cells',
    'is_outlier',
    'per_cell_qc_metrics',
    'quality_control',
    'plot_qc_metrics',
    'library_size_factors',
    'compute_sum_factors',
    'quick_cluster',
    'log_normalize',
    'normalize_data'
]

"""
注释模块

提供标记基因检测和细胞周期分期功能
"""

from .markers import find_markers, combine_pvalues, top_markers, plot_marker_heatmap, marker_detection
from .cell_cycle import S_GENES, G2M_GENES, classify_cell_cycle

__all__ = [
    'find_markers',
    'combine_pvalues',
    'top_markers',
    'plot_marker_heatmap',
    'marker_detection',
    'S_GENES',
    'G2M_GENES',
    'classify_cell_cycle'
]

"""
IO 模块

提供数据读取、写入以及磁盘矩阵访问功能
"""

from .reader import (
    read_10x_mtx,
    read_10x_archive,
    read_input,
    read_sample,
    annotate_genes,
    read_h5ad
)
from .writer import save_h5ad, save_csv, save_figure
from .backed import BackedMatrix

__all__ = [
    'read_10x_mtx',
    'read_10x_archive',
    'read_input',
    'read_sample',
    'annotate_genes',
    'read_h5ad',
    'save_h5ad',
    'save_csv',
    'save_figure',
    'BackedMatrix'
]

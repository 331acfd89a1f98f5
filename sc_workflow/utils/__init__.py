"""
工具模块

包含内存监控、断点管理、异常定义等辅助功能
"""

from .memory_monitor import MemoryMonitor
from .checkpoint import CheckpointManager, DEFAULT_STEPS
from .errors import DataQualityError

__all__ = [
    'MemoryMonitor',
    'CheckpointManager',
    'DEFAULT_STEPS',
    'DataQualityError'
]

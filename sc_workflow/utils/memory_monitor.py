"""
内存监控模块

在流程的各步骤之间记录进程内存使用，导出报告
"""

import os
import logging
from typing import Optional
from datetime import datetime

import psutil
import pandas as pd
import matplotlib.pyplot as plt


class MemoryMonitor:
    """
    内存监控器，用于跟踪流程各步骤的内存使用

    功能：
    - 在步骤边界记录进程内存
    - 系统内存超过阈值时写入告警日志
    - 导出内存使用表与趋势图
    """

    def __init__(
        self,
        threshold_percent: float = 80.0,
        enable_logging: bool = True,
        log_file: Optional[str] = None
    ):
        """
        初始化内存监控器

        参数：
        ----------
        threshold_percent : float
            系统内存使用率告警阈值（默认 80%）
        enable_logging : bool
            是否启用日志记录（默认 True）
        log_file : str, optional
            日志文件路径（如果为 None，则输出到控制台）
        """
        self.threshold_percent = threshold_percent
        self.enable_logging = enable_logging
        self.process = psutil.Process(os.getpid())
        self.records = []

        if enable_logging:
            self._setup_logging(log_file)

    def _setup_logging(self, log_file: Optional[str] = None):
        """配置日志系统"""
        self.logger = logging.getLogger('MemoryMonitor')
        self.logger.setLevel(logging.INFO)

        # 避免重复添加handler
        if not self.logger.handlers:
            if log_file:
                handler = logging.FileHandler(log_file)
            else:
                handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(handler)

    def get_memory_usage(self) -> float:
        """获取当前进程常驻内存（GB）"""
        return self.process.memory_info().rss / 1024**3

    def check_threshold(self) -> bool:
        """
        检查系统内存是否超过阈值

        返回：
        ----------
        bool
            如果超过阈值返回 True
        """
        percent = psutil.virtual_memory().percent
        if percent >= self.threshold_percent:
            if self.enable_logging:
                self.logger.warning(
                    f"内存使用率达到 {percent:.1f}% (阈值: {self.threshold_percent}%)"
                )
            return True
        return False

    def checkpoint(self, step_name: str):
        """
        记录一个步骤的内存使用

        参数：
        ----------
        step_name : str
            步骤名称
        """
        mem_gb = self.get_memory_usage()
        self.records.append({
            'step': step_name,
            'timestamp': datetime.now().isoformat(timespec='seconds'),
            'memory_gb': mem_gb,
            'system_percent': psutil.virtual_memory().percent
        })
        print(f"   📊 内存使用: {mem_gb:.2f} GB ({step_name})")
        self.check_threshold()

    def get_summary(self) -> pd.DataFrame:
        """获取内存使用摘要表"""
        df = pd.DataFrame(self.records)
        if len(df) > 0:
            df['memory_increase_gb'] = df['memory_gb'].diff()
        return df

    def get_peak_memory(self) -> float:
        """已记录步骤中的峰值内存（GB）"""
        if not self.records:
            return self.get_memory_usage()
        return max(r['memory_gb'] for r in self.records)

    def plot_memory_usage(self, output_path: str):
        """绘制内存使用趋势图"""
        df = self.get_summary()
        if len(df) == 0:
            return

        fig, ax = plt.subplots(figsize=(12, 6))
        ax.plot(range(len(df)), df['memory_gb'], marker='o', linewidth=2, markersize=8)
        ax.set_xticks(range(len(df)))
        ax.set_xticklabels(df['step'], rotation=45, ha='right')
        ax.set_ylabel('Memory Usage (GB)', fontsize=12)
        ax.set_xlabel('Pipeline Step', fontsize=12)
        ax.set_title('Memory Usage Throughout Pipeline', fontsize=14, fontweight='bold')
        ax.grid(True, alpha=0.3)
        plt.tight_layout()
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        fig.savefig(output_path, dpi=150, bbox_inches='tight')
        plt.close(fig)
        print(f"   💾 内存使用图已保存: {output_path}")

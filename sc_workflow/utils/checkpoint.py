"""
断点管理模块

提供流程断点续传功能
"""

import os
import json
import traceback
from typing import Optional, List, Dict
from datetime import datetime


DEFAULT_STEPS = [
    ('step1_read', '步骤1: 数据读取'),
    ('step2_cell_calling', '步骤2: 空液滴识别'),
    ('step3_qc', '步骤3: 质量控制'),
    ('step4_normalize', '步骤4: 标准化'),
    ('step5_cluster', '步骤5: 降维与聚类'),
    ('step6_markers', '步骤6: 标记基因'),
]


class CheckpointManager:
    """
    断点管理器 - 支持从中断处继续运行

    功能：
    - 记录每个步骤的完成状态与中间结果文件
    - 校验中间结果文件是否存在、大小是否一致
    - 记录失败步骤及错误追踪
    - 显示当前进度
    """

    def __init__(self, output_dir: str, steps: Optional[List[tuple]] = None):
        """
        初始化断点管理器

        参数：
        ----------
        output_dir : str
            输出目录
        steps : list of (step_id, step_name), optional
            流程步骤及其显示名称（默认 DEFAULT_STEPS）
        """
        self.output_dir = output_dir
        self.checkpoint_file = os.path.join(output_dir, '.checkpoint.json')
        self.error_log_file = os.path.join(output_dir, '.error_log.txt')
        self.steps = list(steps) if steps is not None else list(DEFAULT_STEPS)
        self.steps_order = [step_id for step_id, _ in self.steps]
        self.checkpoints = self.load_checkpoints()

    def load_checkpoints(self) -> dict:
        """加载已有的检查点并校验结果文件"""
        if not os.path.exists(self.checkpoint_file):
            return {}
        try:
            with open(self.checkpoint_file, 'r') as f:
                checkpoints = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"⚠️  加载检查点失败: {str(e)}")
            print("   将从头开始运行")
            return {}

        for step, data in checkpoints.items():
            if not data.get('completed', False):
                continue
            file_path = data.get('file')
            if file_path and not os.path.exists(file_path):
                print(f"⚠️  警告: 步骤 {step} 的数据文件不存在: {file_path}")
                data['valid'] = False
            elif file_path and data.get('file_size') not in (None, os.path.getsize(file_path)):
                print(f"⚠️  警告: 文件大小不匹配 {os.path.basename(file_path)}")
                data['valid'] = False
            else:
                data['valid'] = True
        return checkpoints

    def _dump(self):
        os.makedirs(self.output_dir, exist_ok=True)
        with open(self.checkpoint_file, 'w') as f:
            json.dump(self.checkpoints, f, indent=2, default=str)

    def save_checkpoint(self, step: str, **kwargs):
        """
        保存检查点

        参数：
        ----------
        step : str
            步骤名称
        **kwargs
            其他要保存的信息（file 为中间结果路径，会同时记录文件大小）
        """
        data = {
            'completed': True,
            'timestamp': datetime.now().isoformat(),
            'valid': True,
            **kwargs
        }
        if 'file' in kwargs and os.path.exists(kwargs['file']):
            data['file_size'] = os.path.getsize(kwargs['file'])

        self.checkpoints[step] = data
        self._dump()
        print(f"   💾 断点已保存: {step}")

    def mark_step_failed(self, step: str, error: BaseException):
        """
        标记步骤失败，并将错误追加到错误日志

        参数：
        ----------
        step : str
            步骤名称
        error : Exception
            捕获到的异常
        """
        info = {
            'failed': True,
            'timestamp': datetime.now().isoformat(),
            'error_type': type(error).__name__,
            'error_message': str(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        }
        self.checkpoints[step] = info
        self._dump()

        with open(self.error_log_file, 'a') as f:
            f.write(f"\n{'=' * 80}\n")
            f.write(f"步骤: {step}\n")
            f.write(f"时间: {info['timestamp']}\n")
            f.write(f"错误类型: {info['error_type']}\n")
            f.write(f"错误信息: {info['error_message']}\n")
            f.write(f"详细追踪:\n{info['traceback']}\n")

        print(f"   ❌ 步骤 {step} 失败，错误已记录")
        print(f"   错误日志: {self.error_log_file}")

    def is_completed(self, step: str) -> bool:
        """检查某个步骤是否已完成且结果有效"""
        data = self.checkpoints.get(step, {})
        return data.get('completed', False) and data.get('valid', True)

    def is_failed(self, step: str) -> bool:
        """检查某个步骤是否失败过"""
        return self.checkpoints.get(step, {}).get('failed', False)

    def get_checkpoint_data(self, step: str) -> Dict:
        return self.checkpoints.get(step, {})

    def reset(self):
        """重置所有检查点（从头开始）"""
        self.checkpoints = {}
        if os.path.exists(self.checkpoint_file):
            os.remove(self.checkpoint_file)
        print("✅ 已重置所有检查点")

    def get_last_checkpoint(self) -> Optional[str]:
        """
        获取最后一个完成的步骤

        返回：
        ----------
        str or None
            最后完成的步骤名称
        """
        for step in reversed(self.steps_order):
            if self.is_completed(step):
                return step
        return None

    def get_next_step(self) -> Optional[str]:
        """获取下一个需要执行的步骤"""
        for step in self.steps_order:
            if not self.is_completed(step):
                return step
        return None

    def print_status(self):
        """打印当前进度状态"""
        print("\n" + "=" * 80)
        print("当前分析进度")
        print("=" * 80)
        for step_id, step_name in self.steps:
            data = self.get_checkpoint_data(step_id)
            if self.is_failed(step_id):
                print(f"❌ {step_name} - 失败")
                print(f"   错误: {data.get('error_message', '未知错误')}")
            elif self.is_completed(step_id):
                print(f"✅ {step_name}")
                timestamp = data.get('timestamp', '')
                if timestamp:
                    print(f"   完成时间: {timestamp[:19]}")
                file_path = data.get('file', '')
                if file_path and os.path.exists(file_path):
                    size_mb = os.path.getsize(file_path) / 1024**2
                    print(f"   文件: {os.path.basename(file_path)} ({size_mb:.1f} MB)")
                if 'n_cells' in data:
                    print(f"   细胞数: {data['n_cells']:,}")
                if 'n_clusters' in data:
                    print(f"   聚类数: {data['n_clusters']}")
            else:
                print(f"⏳ {step_name} - 待执行")
        print("=" * 80)

        next_step = self.get_next_step()
        if next_step:
            print(f"\n📍 下一步: {dict(self.steps)[next_step]}\n")
        else:
            print("\n🎉 所有步骤已完成！\n")

    def get_progress_percentage(self) -> float:
        """
        获取进度百分比

        返回：
        ----------
        float
            进度百分比 (0-100)
        """
        completed = sum(1 for step in self.steps_order if self.is_completed(step))
        return completed / len(self.steps_order) * 100

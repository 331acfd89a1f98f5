"""
内存监控测试
"""

import sys
import subprocess

from sc_workflow.utils import MemoryMonitor


def test_memory_monitor_records(tmp_path):
    monitor = MemoryMonitor(enable_logging=False)
    monitor.checkpoint("开始")
    monitor.checkpoint("结束")

    summary = monitor.get_summary()
    assert list(summary['step']) == ["开始", "结束"]
    assert (summary['memory_gb'] > 0).all()
    assert monitor.get_peak_memory() == summary['memory_gb'].max()

    out = tmp_path / 'memory_usage.png'
    monitor.plot_memory_usage(str(out))
    assert out.exists()


def test_import_keeps_matplotlib_backend():
    # 导入包不应切换用户已选择的绘图后端
    code = (
        "import matplotlib\n"
        "matplotlib.use('svg')\n"
        "import sc_workflow\n"
        "print(matplotlib.get_backend())\n"
    )
    result = subprocess.run([sys.executable, '-c', code], capture_output=True, text=True, check=True)
    assert result.stdout.strip().splitlines()[-1] == 'svg'

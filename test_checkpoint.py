"""
断点续传功能测试
"""

import os
import json

import pytest

from sc_workflow.utils import CheckpointManager, DEFAULT_STEPS


def _write(path, text="done\n"):
    with open(path, 'w') as f:
        f.write(text)


def test_checkpoint_basic(tmp_path):
    """基本的断点保存和恢复"""
    ckpt = CheckpointManager(str(tmp_path))
    assert ckpt.get_next_step() == DEFAULT_STEPS[0][0]

    for step_id, _ in DEFAULT_STEPS[:3]:
        path = tmp_path / f"{step_id}.txt"
        _write(path)
        ckpt.save_checkpoint(step_id, file=str(path), n_cells=100)

    ckpt = CheckpointManager(str(tmp_path))
    assert ckpt.is_completed('step1_read')
    assert ckpt.is_completed('step3_qc')
    assert not ckpt.is_completed('step4_normalize')
    assert ckpt.get_last_checkpoint() == 'step3_qc'
    assert ckpt.get_next_step() == 'step4_normalize'
    assert ckpt.get_progress_percentage() == pytest.approx(50.0)
    assert ckpt.get_checkpoint_data('step1_read')['n_cells'] == 100


def test_checkpoint_with_failure(tmp_path):
    """失败步骤被记录，修复后可以继续"""
    ckpt = CheckpointManager(str(tmp_path))
    path = tmp_path / 'step1.txt'
    _write(path)
    ckpt.save_checkpoint('step1_read', file=str(path))

    try:
        raise RuntimeError("模拟失败")
    except RuntimeError as e:
        ckpt.mark_step_failed('step2_cell_calling', e)

    ckpt = CheckpointManager(str(tmp_path))
    assert ckpt.is_failed('step2_cell_calling')
    assert not ckpt.is_completed('step2_cell_calling')
    assert ckpt.get_next_step() == 'step2_cell_calling'

    with open(ckpt.error_log_file) as f:
        log = f.read()
    assert 'RuntimeError' in log
    assert '模拟失败' in log

    ckpt.save_checkpoint('step2_cell_calling')
    assert not ckpt.is_failed('step2_cell_calling')
    assert ckpt.is_completed('step2_cell_calling')


def test_checkpoint_validation(tmp_path):
    """结果文件缺失或被修改时断点失效"""
    ckpt = CheckpointManager(str(tmp_path))
    missing = tmp_path / 'missing.txt'
    changed = tmp_path / 'changed.txt'
    _write(missing)
    _write(changed)
    ckpt.save_checkpoint('step1_read', file=str(missing))
    ckpt.save_checkpoint('step2_cell_calling', file=str(changed))

    os.remove(missing)
    _write(changed, "a much longer content than before\n")

    ckpt = CheckpointManager(str(tmp_path))
    assert not ckpt.is_completed('step1_read')
    assert not ckpt.is_completed('step2_cell_calling')


def test_checkpoint_corrupted_file(tmp_path):
    with open(tmp_path / '.checkpoint.json', 'w') as f:
        f.write("{not json")
    ckpt = CheckpointManager(str(tmp_path))
    assert ckpt.checkpoints == {}


def test_checkpoint_reset(tmp_path):
    ckpt = CheckpointManager(str(tmp_path))
    ckpt.save_checkpoint('step1_read')
    assert os.path.exists(ckpt.checkpoint_file)

    ckpt.reset()
    assert not os.path.exists(ckpt.checkpoint_file)
    assert CheckpointManager(str(tmp_path)).checkpoints == {}


def test_checkpoint_file_is_json(tmp_path):
    ckpt = CheckpointManager(str(tmp_path), steps=[('a', 'A'), ('b', 'B')])
    ckpt.save_checkpoint('a', stats={'n': 1})
    with open(ckpt.checkpoint_file) as f:
        data = json.load(f)
    assert data['a']['completed'] is True
    assert data['a']['stats'] == {'n': 1}
    assert ckpt.get_progress_percentage() == pytest.approx(50.0)

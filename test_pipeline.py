"""
完整流程测试（含断点续传）
"""

import os
import json

import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy import sparse

from sc_workflow.main import main
from sc_workflow.io import read_h5ad


def _simulate_raw(seed=0, n_empty=1500, n_per_type=100, n_types=3, n_genes=300):
    """空液滴 + 三种细胞类型的原始条码矩阵，前 5 个基因为线粒体基因"""
    rng = np.random.default_rng(seed)
    ambient = rng.dirichlet(np.ones(n_genes))
    base = rng.uniform(1, 4, size=n_genes)

    empties = rng.poisson(ambient * 30, size=(n_empty, n_genes))
    cells = []
    for t in range(n_types):
        means = base.copy()
        means[10 + t * 20:10 + (t + 1) * 20] *= 6
        sf = rng.lognormal(0, 0.3, size=(n_per_type, 1))
        cells.append(rng.poisson(means * sf * 2))
    counts = np.vstack([empties] + cells).astype(np.float32)

    adata = ad.AnnData(X=sparse.csr_matrix(counts))
    adata.obs_names = [f"BC{i:05d}" for i in range(counts.shape[0])]
    adata.var_names = [f"MT-{j}" if j < 5 else f"Gene{j}" for j in range(n_genes)]
    adata.obs['cell_type'] = ['empty'] * n_empty + [f"T{t}" for t in range(n_types) for _ in range(n_per_type)]
    return adata


@pytest.fixture
def raw_input(tmp_path):
    path = tmp_path / 'sample1.h5ad'
    _simulate_raw().write_h5ad(path)
    return str(path)


def _args(raw_input, output_dir, *extra):
    return [
        '--input', raw_input,
        '--output_dir', output_dir,
        '--niters', '500',
        '--min_size', '20',
        '--max_rank', '10',
        '--perplexity', '20',
        '--n_top', '5',
        *extra
    ]


def test_pipeline_end_to_end(tmp_path, raw_input):
    out = str(tmp_path / 'results')
    main(_args(raw_input, out))

    with open(os.path.join(out, '.checkpoint.json')) as f:
        checkpoints = json.load(f)
    assert all(checkpoints[step]['completed'] for step in (
        'step1_read', 'step2_cell_calling', 'step3_qc',
        'step4_normalize', 'step5_cluster', 'step6_markers'
    ))

    final = read_h5ad(os.path.join(out, '06_final_data.h5ad'))
    assert (final.obs['cell_type'] != 'empty').all()
    assert final.n_obs >= 250
    assert final.obs['cluster'].nunique() >= 3
    assert 'markers' in final.uns
    assert {'counts', 'logcounts'} <= set(final.layers)
    assert 'X_tsne' in final.obsm

    for name in ('config_used.yaml', '02_empty_drops.csv', '03_qc_statistics.csv',
                 'memory_usage.csv', 'memory_usage.png'):
        assert os.path.exists(os.path.join(out, name))
    assert os.path.exists(os.path.join(out, 'cell_calling', 'barcode_rank.png'))
    assert os.path.exists(os.path.join(out, 'markers', 'markers_summary.csv'))

    empty_drops = pd.read_csv(os.path.join(out, '02_empty_drops.csv'), index_col=0)
    assert len(empty_drops) == 1800

    # 再次运行时所有步骤都已完成，直接跳过
    mtime = os.path.getmtime(os.path.join(out, '06_final_data.h5ad'))
    main(_args(raw_input, out, '--resume'))
    assert os.path.getmtime(os.path.join(out, '06_final_data.h5ad')) == mtime


def test_pipeline_resume_after_reset_of_last_step(tmp_path, raw_input):
    out = str(tmp_path / 'results')
    main(_args(raw_input, out, '--embedding', 'none'))

    os.remove(os.path.join(out, '05_clustered_data.h5ad'))
    os.remove(os.path.join(out, '06_final_data.h5ad'))
    main(_args(raw_input, out, '--resume', '--embedding', 'none', '--test', 't'))

    final = read_h5ad(os.path.join(out, '06_final_data.h5ad'))
    assert final.uns['markers']['test'] == 't'


def test_pipeline_requires_input(tmp_path):
    with pytest.raises(SystemExit):
        main(['--output_dir', str(tmp_path / 'empty')])


def test_pipeline_show_progress(tmp_path):
    main(['--output_dir', str(tmp_path), '--show-progress'])
    assert not os.path.exists(os.path.join(tmp_path, 'config_used.yaml'))


def test_pipeline_failure_is_recorded(tmp_path):
    out = str(tmp_path / 'results')
    with pytest.raises(SystemExit):
        main(['--input', str(tmp_path / 'missing.h5ad'), '--output_dir', out])
    with open(os.path.join(out, '.checkpoint.json')) as f:
        checkpoints = json.load(f)
    assert checkpoints['step1_read']['failed'] is True
    assert os.path.exists(os.path.join(out, '.error_log.txt'))


def test_pipeline_backed_requires_h5ad(tmp_path):
    out = str(tmp_path / 'results')
    with pytest.raises(SystemExit):
        main(['--input', str(tmp_path / 'filtered_feature_bc_matrix'), '--backed', '--output_dir', out])
    with open(os.path.join(out, '.checkpoint.json')) as f:
        checkpoints = json.load(f)
    assert checkpoints['step1_read']['error_type'] == 'ValueError'
    assert 'backed' in checkpoints['step1_read']['error_message']

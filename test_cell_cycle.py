"""
细胞周期分期测试
"""

import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy import sparse

from sc_workflow.annotation import S_GENES, G2M_GENES, classify_cell_cycle
from sc_workflow.utils.errors import DataQualityError


@pytest.fixture
def cycling_adata():
    """三组细胞：G1（基线）、S 期基因上调、G2M 期基因上调"""
    rng = np.random.default_rng(5)
    genes = S_GENES + G2M_GENES + [f"BG{j}" for j in range(200)]
    n_s, n_g2m = len(S_GENES), len(G2M_GENES)
    base = np.r_[rng.uniform(1, 3, size=n_s + n_g2m), rng.uniform(1, 10, size=200)]

    truth = np.repeat(['G1', 'S', 'G2M'], 60)
    means = np.tile(base, (len(truth), 1))
    means[truth == 'S', :n_s] *= 6
    means[truth == 'G2M', n_s:n_s + n_g2m] *= 6
    counts = rng.poisson(means)

    adata = ad.AnnData(X=sparse.csr_matrix(np.log2(counts + 1.0)))
    adata.obs_names = [f"Cell{i}" for i in range(len(truth))]
    adata.var_names = [f"ENSG{j:05d}" for j in range(len(genes))]
    adata.var['symbol'] = genes
    adata.obs['truth'] = truth
    return adata


def test_classify_cell_cycle(cycling_adata):
    classify_cell_cycle(cycling_adata, gene_symbols='symbol')

    obs = cycling_adata.obs
    assert {'S_score', 'G2M_score', 'phase'} <= set(obs.columns)
    assert set(obs['phase'].cat.categories) <= {'G1', 'S', 'G2M'}
    majority = pd.crosstab(obs['truth'], obs['phase']).idxmax(axis=1)
    assert majority.to_dict() == {'G1': 'G1', 'S': 'S', 'G2M': 'G2M'}
    assert (obs.loc[obs['truth'] == 'S', 'S_score'] > 0).mean() > 0.9


def test_classify_cell_cycle_symbols_as_names(cycling_adata):
    adata = cycling_adata.copy()
    adata.var_names = adata.var['symbol'].to_numpy()
    classify_cell_cycle(adata)
    # 与通过 gene_symbols 指定基因名的结果一致
    classify_cell_cycle(cycling_adata, gene_symbols='symbol')
    np.testing.assert_allclose(adata.obs['S_score'], cycling_adata.obs['S_score'])


def test_classify_cell_cycle_no_genes(population_adata):
    with pytest.raises(DataQualityError):
        classify_cell_cycle(population_adata)

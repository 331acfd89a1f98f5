"""
测试用的模拟数据
"""

import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy import sparse


def _simulate_droplets(seed=0, n_empty=90, n_cells=10, n_genes=50, empty_mean=0.5, cell_mean=20.0):
    """空液滴 + 细胞：两者的表达谱不同，空液滴总计数约 25，细胞约 1000"""
    rng = np.random.default_rng(seed)
    ambient = rng.dirichlet(np.ones(n_genes))
    cell_profile = rng.dirichlet(np.ones(n_genes) * 0.3)

    empties = rng.poisson(ambient * empty_mean * n_genes, size=(n_empty, n_genes))
    cells = rng.poisson(cell_profile * cell_mean * n_genes, size=(n_cells, n_genes))
    counts = np.vstack([empties, cells]).astype(np.float32)

    adata = ad.AnnData(X=sparse.csr_matrix(counts))
    adata.obs_names = [f"BC{i:03d}" for i in range(counts.shape[0])]
    adata.var_names = [f"Gene{j}" for j in range(n_genes)]
    adata.obs['SampleName'] = pd.Categorical(['S1'] * counts.shape[0])
    adata.obs['truth'] = ['empty'] * n_empty + ['cell'] * n_cells
    return adata


def _simulate_populations(seed=0, n_per_group=100, n_groups=3, n_genes=200, n_markers=20, fold=5.0, sf_sd=0.3):
    """
    若干细胞群体的 UMI 计数

    每个群体有 n_markers 个高表达标记基因，size factor 服从对数正态分布。
    """
    rng = np.random.default_rng(seed)
    base = rng.uniform(1, 5, size=n_genes)
    n = n_per_group * n_groups
    labels = np.repeat(np.arange(n_groups), n_per_group)
    size_factors = rng.lognormal(0, sf_sd, size=n)

    means = np.tile(base, (n, 1))
    for g in range(n_groups):
        markers = slice(g * n_markers, (g + 1) * n_markers)
        means[labels == g, markers] *= fold
    counts = rng.poisson(means * size_factors[:, None]).astype(np.float32)

    adata = ad.AnnData(X=sparse.csr_matrix(counts))
    adata.obs_names = [f"Cell{i}" for i in range(n)]
    adata.var_names = [f"Gene{j}" for j in range(n_genes)]
    adata.obs['group'] = pd.Categorical([f"G{g}" for g in labels])
    adata.obs['true_size_factor'] = size_factors
    adata.obs['SampleName'] = pd.Categorical(np.where(np.arange(n) % 2 == 0, 'S1', 'S2'))
    return adata


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def droplet_adata():
    return _simulate_droplets()


@pytest.fixture
def simulate_droplets():
    return _simulate_droplets


@pytest.fixture
def population_adata():
    return _simulate_populations()


@pytest.fixture
def simulate_populations():
    return _simulate_populations


@pytest.fixture
def normalized_adata(population_adata):
    """已完成 log 标准化（使用真实 size factor）的群体数据"""
    from sc_workflow.preprocessing import log_normalize

    adata = population_adata.copy()
    sf = adata.obs['true_size_factor'].to_numpy()
    adata.obs['size_factor'] = sf / sf.mean()
    return log_normalize(adata)

"""
基因方差建模模块

把每个基因 log 表达量的方差分解为技术成分和生物学成分：
- model_gene_var: 用 LOWESS 趋势拟合方差-均值关系
- model_gene_var_by_poisson: 假设 Poisson 噪声，精确计算技术方差
"""

import logging
from typing import Optional, List

import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse, stats
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests
import matplotlib.pyplot as plt

from ..io.writer import save_figure
from ..utils.errors import DataQualityError
from ..utils.matrix import col_means

logger = logging.getLogger(__name__)

DECOMPOSITION_COLUMNS = ['mean', 'total', 'tech', 'bio', 'p_value', 'FDR']
# λ 超过该值时用 delta 方法近似
POISSON_EXACT_LIMIT = 200
MAX_SIZE_FACTOR_QUANTILES = 200


def _log_expression(adata: ad.AnnData, layer: Optional[str]):
    if layer is not None:
        return adata.layers[layer]
    if 'logcounts' in adata.layers:
        return adata.layers['logcounts']
    return adata.X


def _mean_var(X):
    n = X.shape[0]
    if n < 2:
        raise DataQualityError("至少需要 2 个细胞才能计算方差")
    if sparse.issparse(X):
        X = sparse.csr_matrix(X, dtype=np.float64)
        mean = col_means(X)
        sq_mean = col_means(X.multiply(X))
        var = (sq_mean - mean ** 2) * n / (n - 1)
        return mean, np.maximum(var, 0)
    X = np.asarray(X, dtype=np.float64)
    return X.mean(axis=0), X.var(axis=0, ddof=1)


def _decompose(
    var_names,
    mean: np.ndarray,
    total: np.ndarray,
    tech: np.ndarray,
    n_cells: int
) -> pd.DataFrame:
    bio = total - tech
    pvals = np.full(len(mean), np.nan)
    testable = tech > 0
    df = n_cells - 1
    pvals[testable] = stats.chi2.sf(total[testable] / tech[testable] * df, df)

    fdr = np.full(len(mean), np.nan)
    if testable.any():
        fdr[testable] = multipletests(pvals[testable], method='fdr_bh')[1]

    return pd.DataFrame({
        'mean': mean,
        'total': total,
        'tech': tech,
        'bio': bio,
        'p_value': pvals,
        'FDR': fdr
    }, index=var_names)


def _store(adata: ad.AnnData, decomposition: pd.DataFrame, method: str, **params):
    for col in DECOMPOSITION_COLUMNS:
        adata.var[col] = decomposition[col].values
    adata.uns['gene_var'] = {'method': method, **params}


def fit_trend(mean: np.ndarray, var: np.ndarray, min_mean: float = 0.1, frac: float = 0.3):
    """
    拟合方差-均值趋势

    参数：
    ----------
    mean, var : np.ndarray
        每个基因的均值和方差
    min_mean : float
        只用均值 ≥ min_mean 的基因拟合
    frac : float
        LOWESS 平滑窗口比例

    返回：
    ----------
    callable
        趋势函数；低于拟合范围时线性趋向原点，高于拟合范围时保持常数，结果不小于 0
    """
    use = (mean >= min_mean) & np.isfinite(var)
    if use.sum() < 3:
        raise DataQualityError(f"均值 ≥ {min_mean} 的基因少于 3 个，无法拟合方差趋势")

    fitted = lowess(var[use], mean[use], frac=frac, return_sorted=True)
    # 相同均值取平均，保证插值节点严格递增
    curve = pd.Series(fitted[:, 1]).groupby(fitted[:, 0]).mean()
    xs = curve.index.to_numpy(dtype=np.float64)
    ys = curve.to_numpy(dtype=np.float64)

    def trend(x):
        x = np.atleast_1d(np.asarray(x, dtype=np.float64))
        out = np.interp(x, xs, ys)
        below = x < xs[0]
        if xs[0] > 0:
            out[below] = ys[0] * x[below] / xs[0]
        return np.maximum(out, 0)

    return trend


def model_gene_var(
    adata: ad.AnnData,
    layer: Optional[str] = None,
    min_mean: float = 0.1,
    frac: float = 0.3,
    store: bool = True
) -> pd.DataFrame:
    """
    基于经验趋势的方差分解

    假设大多数基因的变异以技术噪声为主，方差-均值趋势即技术方差；
    生物学方差 = 总方差 - 技术方差（可以为负）。

    参数：
    ----------
    adata : AnnData
        log 表达量（默认 layers['logcounts']，不存在时用 X）
    layer : str, optional
        指定 log 表达量所在的 layer
    min_mean : float
        参与趋势拟合的最低平均表达（默认 0.1）
    frac : float
        LOWESS 平滑窗口比例（默认 0.3）
    store : bool
        是否写入 adata.var

    返回：
    ----------
    pd.DataFrame
        mean, total, tech, bio, p_value, FDR
    """
    mean, total = _mean_var(_log_expression(adata, layer))
    trend = fit_trend(mean, total, min_mean=min_mean, frac=frac)
    decomposition = _decompose(adata.var_names, mean, total, trend(mean), adata.n_obs)
    if store:
        _store(adata, decomposition, 'empirical', min_mean=min_mean, frac=frac)
    return decomposition


def _poisson_log_moments(mu: float, size_factors: np.ndarray, pseudo_count: float = 1):
    """
    X ~ Poisson(mu * sf) 时 log2(X / sf + pseudo_count) 在每个 size factor 下的期望与方差
    """
    lam = mu * size_factors
    means = np.empty(len(size_factors))
    variances = np.empty(len(size_factors))

    large = lam >= POISSON_EXACT_LIMIT
    if large.any():
        sf = size_factors[large]
        means[large] = np.log2(mu + pseudo_count)
        variances[large] = mu / sf / ((mu + pseudo_count) * np.log(2)) ** 2

    small = ~large
    if small.any():
        sf = size_factors[small]
        lam_small = lam[small]
        upper = int(np.ceil(lam_small.max() + 10 * np.sqrt(lam_small.max()) + 10))
        x = np.arange(upper + 1)
        pmf = stats.poisson.pmf(x[None, :], lam_small[:, None])
        values = np.log2(x[None, :] / sf[:, None] + pseudo_count)
        m = (pmf * values).sum(axis=1)
        means[small] = m
        variances[small] = (pmf * (values - m[:, None]) ** 2).sum(axis=1)

    return means, variances


def poisson_tech_curve(size_factors, max_mean: float, npts: int = 100, pseudo_count: float = 1) -> pd.DataFrame:
    """
    Poisson 噪声下 log 表达量的均值-方差曲线

    参数：
    ----------
    size_factors : array-like
        细胞的 size factor；超过 200 个时取 200 个分位数
    max_mean : float
        网格覆盖的最大标准化平均计数
    npts : int
        网格点数

    返回：
    ----------
    pd.DataFrame
        列 mu（标准化计数均值）、mean（log 表达均值）、var（技术方差）
    """
    sf = np.asarray(size_factors, dtype=np.float64)
    if len(sf) > MAX_SIZE_FACTOR_QUANTILES:
        sf = np.quantile(sf, np.linspace(0, 1, MAX_SIZE_FACTOR_QUANTILES))

    grid = np.r_[0, np.geomspace(1e-3, max(max_mean, 1e-2) * 1.5, npts)]
    rows = []
    for mu in grid:
        m, v = _poisson_log_moments(mu, sf, pseudo_count)
        # 总方差 = 细胞内方差的均值 + 细胞间均值的方差
        rows.append((mu, m.mean(), v.mean() + m.var()))
    return pd.DataFrame(rows, columns=['mu', 'mean', 'var'])


def model_gene_var_by_poisson(
    adata: ad.AnnData,
    size_factor_key: str = 'size_factor',
    counts_layer: str = 'counts',
    layer: Optional[str] = None,
    npts: int = 100,
    store: bool = True
) -> pd.DataFrame:
    """
    基于 Poisson 噪声的方差分解

    假设 UMI 计数的技术噪声服从 Poisson 分布，在一组平均计数的网格上精确计算
    log 表达量的期望与方差，再按每个基因的 log 均值插值得到技术方差。结果是确定的。

    参数：
    ----------
    adata : AnnData
        需要 layers[counts_layer] 原始计数、obs[size_factor_key] 和 log 表达量
    size_factor_key : str
        size factor 所在的 obs 列
    counts_layer : str
        原始计数 layer
    layer : str, optional
        log 表达量 layer
    npts : int
        网格点数（默认 100）
    store : bool
        是否写入 adata.var

    返回：
    ----------
    pd.DataFrame
        mean, total, tech, bio, p_value, FDR
    """
    if size_factor_key not in adata.obs:
        raise KeyError(f"obs 中缺少 size factor 列: {size_factor_key}")
    sf = adata.obs[size_factor_key].to_numpy(dtype=np.float64)
    if np.any(~np.isfinite(sf) | (sf <= 0)):
        raise DataQualityError("size factor 必须全部为正")

    counts = adata.layers[counts_layer] if counts_layer in adata.layers else adata.X
    normed = sparse.diags(1 / sf) @ sparse.csr_matrix(counts, dtype=np.float64)
    max_mean = float(col_means(normed).max())

    curve = poisson_tech_curve(sf, max_mean, npts=npts)
    mean, total = _mean_var(_log_expression(adata, layer))
    tech = np.interp(mean, curve['mean'].to_numpy(), curve['var'].to_numpy())

    decomposition = _decompose(adata.var_names, mean, total, tech, adata.n_obs)
    if store:
        _store(adata, decomposition, 'poisson', npts=npts)
    return decomposition


def get_top_hvgs(
    decomposition: pd.DataFrame,
    n: Optional[int] = None,
    prop: Optional[float] = None,
    var_threshold: float = 0
) -> List[str]:
    """
    按生物学方差选择高变基因

    参数：
    ----------
    decomposition : pd.DataFrame
        方差分解结果
    n : int, optional
        选择的基因数
    prop : float, optional
        选择的基因比例（n 未指定时使用）
    var_threshold : float
        生物学方差的最低值（默认 0）

    返回：
    ----------
    list
        基因名，按生物学方差降序
    """
    ranked = decomposition['bio'].dropna().sort_values(ascending=False, kind='stable')
    ranked = ranked[ranked > var_threshold]
    if n is None and prop is not None:
        n = int(round(prop * len(decomposition)))
    if n is not None:
        ranked = ranked.iloc[:n]
    return ranked.index.tolist()


def plot_mean_variance(decomposition: pd.DataFrame, output_path: str, highlight=None):
    """绘制方差-均值关系与技术方差趋势"""
    fig, ax = plt.subplots(figsize=(8, 6))
    ax.scatter(decomposition['mean'], decomposition['total'], s=4, c='grey', alpha=0.6, rasterized=True)
    if highlight is not None:
        hv = decomposition.loc[list(highlight)]
        ax.scatter(hv['mean'], hv['total'], s=6, c='tab:red', label=f'HVG ({len(hv)})', rasterized=True)
        ax.legend(markerscale=3)
    curve = decomposition.sort_values('mean')
    ax.plot(curve['mean'], curve['tech'], color='dodgerblue', linewidth=2)
    ax.set_xlabel('Mean of log-expression', fontsize=12)
    ax.set_ylabel('Variance of log-expression', fontsize=12)
    ax.set_title('Mean-Variance Trend', fontsize=14, fontweight='bold')
    save_figure(fig, output_path)

"""
空液滴识别模块

根据条码计数分布区分真实细胞与空液滴：
- barcode rank 曲线的 knee / inflection 点
- Good-Turing 平滑的环境 RNA 表达谱
- 基于 Dirichlet-多项分布的 Monte-Carlo 检验 (emptyDrops)
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse
from scipy.interpolate import make_smoothing_spline
from scipy.optimize import minimize_scalar
from scipy.special import gammaln
from statsmodels.stats.multitest import multipletests
from joblib import Parallel, delayed
import matplotlib.pyplot as plt

from ..io.writer import save_figure
from ..utils.errors import DataQualityError
from ..utils.matrix import get_counts, row_sums

logger = logging.getLogger(__name__)

ITERATIONS_PER_PARTITION = 1000
MAX_BLOCK_ELEMENTS = 5_000_000


@dataclass
class BarcodeRanks:
    """barcode rank 曲线及其转折点"""
    table: pd.DataFrame
    knee: float
    inflection: float


def barcode_ranks(
    data,
    lower: float = 100,
    fit_bounds: Optional[Tuple[float, float]] = None,
    exclude_from: int = 50,
    lam: Optional[float] = None
) -> BarcodeRanks:
    """
    计算 barcode rank 曲线的 knee 与 inflection 点

    在 log10(rank) - log10(total) 曲线上：
    inflection 为一阶导数最小（下降最陡）处的总计数；
    knee 为平滑样条曲率最小处的总计数，位于 inflection 左侧，因此 knee ≥ inflection。

    参数：
    ----------
    data : AnnData, 矩阵或一维数组
        细胞×基因计数矩阵，或每个条码的总计数
    lower : float
        只使用总计数大于 lower 的条码（默认 100）
    fit_bounds : (float, float), optional
        样条拟合使用的总计数范围（只取其中不低于 inflection 的点）；默认使用曲线最陡点左侧的区间
    exclude_from : int
        计算导数时跳过排名前 exclude_from 的点（默认 50）
    lam : float, optional
        平滑样条的惩罚系数（默认由 GCV 选择）

    返回：
    ----------
    BarcodeRanks
        table 含 rank / total / fitted 三列（与输入条码顺序一致），以及 knee 和 inflection
    """
    if isinstance(data, ad.AnnData) or sparse.issparse(data) or np.ndim(data) == 2:
        totals = row_sums(get_counts(data))
        names = data.obs_names if isinstance(data, ad.AnnData) else None
    else:
        totals = np.asarray(data, dtype=np.float64)
        names = None

    n = len(totals)
    order = np.argsort(-totals, kind='stable')
    sorted_totals = totals[order]

    # 相同总计数的条码取平均排名
    starts = np.flatnonzero(np.r_[True, sorted_totals[1:] != sorted_totals[:-1]])
    lengths = np.diff(np.r_[starts, n])
    run_rank = np.cumsum(lengths) - (lengths - 1) / 2
    run_totals = sorted_totals[starts]

    keep = np.flatnonzero(run_totals > lower)
    if len(keep) < 3:
        raise DataQualityError(f"总计数大于 {lower} 的唯一取值不足 3 个，无法计算 knee / inflection")

    x = np.log10(run_rank[keep])
    y = np.log10(run_totals[keep])

    d1n = np.diff(y) / np.diff(x)
    skip = min(len(d1n) - 1, int(np.sum(x <= np.log10(exclude_from))))
    tail = d1n[skip:]
    right = skip + int(np.argmin(tail))
    left = skip + int(np.argmax(tail[:right - skip + 1]))
    inflection = 10 ** y[right]

    if fit_bounds is None:
        window = np.arange(left, right + 1)
    else:
        window = np.flatnonzero((y > np.log10(fit_bounds[0])) & (y < np.log10(fit_bounds[1])))
        # knee 只在 inflection 左侧寻找
        window = window[window <= right]
        if len(window) == 0:
            raise DataQualityError(
                f"fit_bounds={fit_bounds} 范围内没有不低于 inflection ({inflection:.0f}) 的点"
            )

    fitted_runs = np.full(len(run_totals), np.nan)
    if len(window) >= 5:
        spline = make_smoothing_spline(x[window], y[window], lam=lam)
        d1 = spline.derivative(1)(x[window])
        d2 = spline.derivative(2)(x[window])
        curvature = d2 / (1 + d1 ** 2) ** 1.5
        knee = 10 ** y[window[int(np.argmin(curvature))]]
        fitted_runs[keep[window]] = 10 ** spline(x[window])
    else:
        knee = 10 ** y[window[0]]

    run_id = np.repeat(np.arange(len(starts)), lengths)
    rank = np.empty(n)
    fitted = np.empty(n)
    rank[order] = run_rank[run_id]
    fitted[order] = fitted_runs[run_id]

    table = pd.DataFrame({'rank': rank, 'total': totals, 'fitted': fitted}, index=names)
    return BarcodeRanks(table=table, knee=float(knee), inflection=float(inflection))


def good_turing_proportions(counts) -> np.ndarray:
    """
    Simple Good-Turing 平滑的基因比例

    未在环境 RNA 中观察到的基因也获得正的概率。

    参数：
    ----------
    counts : array-like
        每个基因在环境条码中的总计数

    返回：
    ----------
    np.ndarray
        和为 1 的基因比例
    """
    counts = np.round(np.asarray(counts, dtype=np.float64)).astype(np.int64)
    if counts.sum() <= 0:
        raise DataQualityError("环境 RNA 计数为 0，无法估计表达谱")

    observed = counts > 0
    r, n_r = np.unique(counts[observed], return_counts=True)
    n_total = np.sum(r * n_r)
    p0 = n_r[0] / n_total if r[0] == 1 else 0.0

    if len(r) < 2:
        r_star = r.astype(np.float64)
    else:
        q = np.r_[0, r[:-1]]
        t = np.r_[r[1:], 2 * r[-1] - q[-1]]
        z = 2 * n_r / (t - q)
        slope, _ = np.polyfit(np.log(r), np.log(z), 1)

        r_star = np.empty(len(r))
        use_turing = True
        for i, ri in enumerate(r):
            lgt = (ri + 1) * (1 + 1 / ri) ** slope
            if use_turing and i + 1 < len(r) and r[i + 1] == ri + 1:
                ratio = n_r[i + 1] / n_r[i]
                turing = (ri + 1) * ratio
                spread = 1.96 * np.sqrt((ri + 1) ** 2 * ratio / n_r[i] * (1 + ratio))
                if abs(turing - lgt) > spread:
                    r_star[i] = turing
                    continue
            # 一旦切换到平滑估计就不再回到 Turing 估计
            use_turing = False
            r_star[i] = lgt

    prop = np.zeros(len(counts))
    prop[observed] = ((1 - p0) * r_star / np.sum(n_r * r_star))[np.searchsorted(r, counts[observed])]

    n_zero = int(np.sum(~observed))
    if n_zero:
        # 没有单次出现的基因时，未观察基因取最小观察比例的一半
        unseen = p0 / n_zero if p0 > 0 else prop[observed].min() / 2
        prop[~observed] = unseen
    return prop / prop.sum()


def estimate_ambient_alpha(
    ambient: sparse.spmatrix,
    prop: np.ndarray,
    bounds: Tuple[float, float] = (0.01, 10000)
) -> float:
    """
    估计环境条码的 Dirichlet-多项分布浓度参数 alpha（最大似然）

    参数：
    ----------
    ambient : sparse matrix
        环境条码×基因计数矩阵
    prop : np.ndarray
        环境 RNA 基因比例
    bounds : (float, float)
        alpha 的搜索区间

    返回：
    ----------
    float
        alpha 估计值
    """
    ambient = sparse.csr_matrix(ambient)
    totals = np.asarray(ambient.sum(axis=1)).ravel()
    ambient = ambient[totals > 0].tocoo()
    totals = totals[totals > 0]
    if len(totals) == 0:
        raise DataQualityError("没有非零的环境条码，无法估计 alpha")

    x = ambient.data
    per_prop = prop[ambient.col]

    def neg_loglik(log_alpha):
        alpha = np.exp(log_alpha)
        prop_alpha = per_prop * alpha
        return -(gammaln(alpha) * len(totals) - np.sum(gammaln(totals + alpha))
                 + np.sum(gammaln(x + prop_alpha)) - np.sum(gammaln(prop_alpha)))

    result = minimize_scalar(neg_loglik, bounds=np.log(bounds), method='bounded')
    return float(np.exp(result.x))


def _observed_logprob(X: sparse.csr_matrix, prop: np.ndarray, alpha: float) -> np.ndarray:
    """每个条码计数谱在环境模型下对数概率中与数据有关的部分"""
    coo = X.tocoo()
    x = coo.data
    if np.isinf(alpha):
        term = x * np.log(prop[coo.col]) - gammaln(x + 1)
    else:
        a = alpha * prop[coo.col]
        term = gammaln(x + a) - gammaln(a) - gammaln(x + 1)
    return np.bincount(coo.row, weights=term, minlength=X.shape[0])


def _logprob_constant(totals: np.ndarray, alpha: float) -> np.ndarray:
    if np.isinf(alpha):
        return gammaln(totals + 1)
    return gammaln(totals + 1) + gammaln(alpha) - gammaln(totals + alpha)


def _sample_rows(probs: np.ndarray, n_draws: int, rng: np.random.Generator) -> np.ndarray:
    """每行按各自的概率向量独立抽取 n_draws 个基因"""
    rows, n_genes = probs.shape
    cdf = np.cumsum(probs, axis=1)
    cdf /= cdf[:, -1:]
    cdf[:, -1] = 1.0

    # 每行加上行号偏移，一次 searchsorted 完成全部行
    offsets = np.arange(rows)[:, None]
    u = rng.random((rows, n_draws)) + offsets
    flat = np.searchsorted((cdf + offsets).ravel(), u.ravel(), side='right')
    genes = flat.reshape(rows, n_draws) - offsets * n_genes
    return np.minimum(genes, n_genes - 1)


def _occurrence_counts(genes: np.ndarray, n_genes: int) -> np.ndarray:
    """genes[i, j] 在第 i 行前 j 个位置中已经出现的次数"""
    rows, cols = genes.shape
    keys = (np.arange(rows)[:, None] * n_genes + genes).ravel()
    order = np.argsort(keys, kind='stable')
    sorted_keys = keys[order]

    positions = np.arange(len(keys))
    group_start = np.where(np.r_[True, sorted_keys[1:] != sorted_keys[:-1]], positions, 0)
    group_start = np.maximum.accumulate(group_start)

    occ = np.empty(len(keys), dtype=np.int64)
    occ[order] = positions - group_start
    return occ.reshape(rows, cols)


def _simulate_partition(
    prop: np.ndarray,
    alpha: float,
    unique_totals: np.ndarray,
    obs_sorted: np.ndarray,
    bounds: np.ndarray,
    n_iter: int,
    seed: np.random.SeedSequence
) -> np.ndarray:
    """
    一个分区内的 Monte-Carlo 模拟

    每次迭代从（Dirichlet 扰动后的）环境谱中抽取一条长度为最大总计数的分子序列，
    序列前缀即各个总计数下的模拟计数谱。返回每个条码模拟概率不高于观测值的次数。
    """
    rng = np.random.default_rng(seed)
    n_genes = len(prop)
    max_total = int(unique_totals[-1])
    log_prop = np.log(prop)
    prop_alpha = None if np.isinf(alpha) else alpha * prop
    tol = 1e-10 * np.maximum(1.0, np.abs(obs_sorted))

    n_below = np.zeros(len(obs_sorted), dtype=np.int64)
    block = max(1, min(n_iter, MAX_BLOCK_ELEMENTS // max_total))
    done = 0
    while done < n_iter:
        rows = min(block, n_iter - done)
        if prop_alpha is None:
            genes = rng.choice(n_genes, size=(rows, max_total), p=prop)
        else:
            probs = rng.dirichlet(prop_alpha, size=rows)
            bad = ~np.isfinite(probs).all(axis=1) | (probs.sum(axis=1) <= 0)
            probs[bad] = prop
            genes = _sample_rows(probs, max_total, rng)

        occ = _occurrence_counts(genes, n_genes)
        if prop_alpha is None:
            increments = log_prop[genes] - np.log1p(occ)
        else:
            increments = np.log(occ + prop_alpha[genes]) - np.log1p(occ)
        sims = np.sort(np.cumsum(increments, axis=1)[:, unique_totals - 1], axis=0)

        for u in range(len(unique_totals)):
            lo, hi = bounds[u], bounds[u + 1]
            n_below[lo:hi] += np.searchsorted(sims[:, u], obs_sorted[lo:hi] + tol[lo:hi], side='right')
        done += rows

    return n_below


def empty_drops_pvalues(
    data,
    lower: float = 100,
    niters: int = 10000,
    test_ambient: bool = False,
    ignore: Optional[float] = None,
    alpha: Optional[float] = None,
    random_state: Optional[int] = None,
    n_jobs: int = 1
) -> pd.DataFrame:
    """
    检验每个条码的计数谱是否显著偏离环境 RNA 谱

    参数：
    ----------
    data : AnnData 或矩阵
        细胞（条码）×基因的原始计数
    lower : float
        总计数 ≤ lower 的条码用于构建环境谱，且默认不参与检验（默认 100）
    niters : int
        Monte-Carlo 迭代次数（默认 10000）
    test_ambient : bool
        是否同时检验总计数 ≤ lower 的非零条码（用于诊断）
    ignore : float, optional
        总计数 ≤ ignore 的条码不参与检验
    alpha : float, optional
        Dirichlet 浓度参数；None 表示由环境条码估计，np.inf 表示多项分布模型
    random_state : int, optional
        随机种子；结果只取决于种子，与 n_jobs 无关
    n_jobs : int
        并行进程数（joblib）

    返回：
    ----------
    pd.DataFrame
        Total / LogProb / PValue / Limited 四列，未检验的条码为缺失值；
        attrs 中记录 alpha、lower、niters
    """
    if niters < 1:
        raise ValueError("niters 必须为正整数")

    X = get_counts(data)
    names = data.obs_names if isinstance(data, ad.AnnData) else None
    totals = row_sums(X)
    ambient_mask = totals <= lower

    # 所有条码中都为 0 的基因不参与计算
    gene_keep = np.asarray(X.sum(axis=0)).ravel() > 0
    X = X[:, gene_keep]
    ambient_counts = np.asarray(X[ambient_mask].sum(axis=0)).ravel()
    if ambient_counts.sum() <= 0:
        raise DataQualityError(f"没有总计数 ≤ {lower} 的非零条码，无法构建环境 RNA 谱")

    prop = good_turing_proportions(ambient_counts)
    if alpha is None:
        alpha = estimate_ambient_alpha(X[ambient_mask], prop)
        logger.info("环境 RNA Dirichlet 浓度参数 alpha = %.3f", alpha)

    tested = totals > 0 if test_ambient else ~ambient_mask
    if ignore is not None:
        tested &= totals > ignore

    logprob = np.full(len(totals), np.nan)
    pvalue = np.full(len(totals), np.nan)
    limited = pd.array([pd.NA] * len(totals), dtype='boolean')

    if tested.any():
        test_totals = np.round(totals[tested]).astype(np.int64)
        obs = _observed_logprob(X[tested], prop, alpha)

        unique_totals, uidx = np.unique(test_totals, return_inverse=True)
        order = np.argsort(uidx, kind='stable')
        bounds = np.searchsorted(uidx[order], np.arange(len(unique_totals) + 1))

        n_parts = int(np.ceil(niters / ITERATIONS_PER_PARTITION))
        sizes = [ITERATIONS_PER_PARTITION] * (n_parts - 1) + [niters - ITERATIONS_PER_PARTITION * (n_parts - 1)]
        seeds = np.random.SeedSequence(random_state).spawn(n_parts)

        partial = Parallel(n_jobs=n_jobs)(
            delayed(_simulate_partition)(prop, alpha, unique_totals, obs[order], bounds, size, seed)
            for size, seed in zip(sizes, seeds)
        )
        n_below = np.empty(len(obs), dtype=np.int64)
        n_below[order] = np.sum(partial, axis=0)

        logprob[tested] = obs + _logprob_constant(test_totals, alpha)
        pvalue[tested] = (n_below + 1) / (niters + 1)
        limited[np.flatnonzero(tested)] = n_below == 0

    results = pd.DataFrame(
        {'Total': totals, 'LogProb': logprob, 'PValue': pvalue, 'Limited': limited},
        index=names
    )
    results.attrs.update({'alpha': float(alpha), 'lower': float(lower), 'niters': int(niters)})
    return results


def empty_drops(
    data,
    lower: float = 100,
    retain: Optional[float] = None,
    niters: int = 10000,
    test_ambient: bool = False,
    ignore: Optional[float] = None,
    alpha: Optional[float] = None,
    random_state: Optional[int] = None,
    n_jobs: int = 1,
    exclude_from: int = 50
) -> pd.DataFrame:
    """
    emptyDrops：检验 + 高计数条码保留 + BH 校正

    总计数 ≥ retain 的条码视为一定是细胞，其 p 值在校正时按 0 处理。

    参数：
    ----------
    retain : float, optional
        保留阈值，默认取 barcode rank 曲线的 knee 点
    exclude_from : int
        计算 knee 时跳过的高排名点数
    其他参数同 empty_drops_pvalues

    返回：
    ----------
    pd.DataFrame
        在 empty_drops_pvalues 的结果上增加 FDR 列；attrs 中记录 retain
    """
    results = empty_drops_pvalues(
        data, lower=lower, niters=niters, test_ambient=test_ambient, ignore=ignore,
        alpha=alpha, random_state=random_state, n_jobs=n_jobs
    )

    if retain is None:
        retain = barcode_ranks(results['Total'].to_numpy(), lower=lower, exclude_from=exclude_from).knee

    pvals = results['PValue'].to_numpy(copy=True)
    tested = ~np.isnan(pvals)
    pvals[tested & (results['Total'].to_numpy() >= retain)] = 0

    fdr = np.full(len(pvals), np.nan)
    if tested.any():
        fdr[tested] = multipletests(pvals[tested], method='fdr_bh')[1]
    results['FDR'] = fdr
    results.attrs['retain'] = float(retain)
    return results


def classify_barcodes(results: pd.DataFrame, fdr_threshold: float = 0.01) -> pd.Categorical:
    """
    根据 emptyDrops 结果给出条码状态

    - cell: FDR < 阈值
    - limited: 不显著，但 p 值受迭代次数限制（增加 niters 可能变为显著）
    - empty: 不显著
    - untested: 未参与检验
    """
    fdr = results['FDR'].to_numpy()
    limited = results['Limited'].fillna(False).to_numpy(dtype=bool)

    status = np.full(len(results), 'untested', dtype=object)
    tested = ~np.isnan(fdr)
    is_cell = tested & (fdr < fdr_threshold)
    status[tested & ~is_cell] = 'empty'
    status[tested & ~is_cell & limited] = 'limited'
    status[is_cell] = 'cell'
    return pd.Categorical(status, categories=['cell', 'limited', 'empty', 'untested'])


def plot_barcode_ranks(ranks: BarcodeRanks, output_path: str, status=None):
    """
    绘制 barcode rank 曲线并标注 knee / inflection

    参数：
    ----------
    ranks : BarcodeRanks
        barcode_ranks 的返回值
    output_path : str
        输出图片路径
    status : array-like, optional
        条码状态（classify_barcodes 的结果），用于着色
    """
    table = ranks.table
    positive = table['total'].to_numpy() > 0

    fig, ax = plt.subplots(figsize=(8, 6))
    if status is None:
        ax.scatter(table['rank'][positive], table['total'][positive], s=4, c='grey', rasterized=True)
    else:
        status = pd.Series(np.asarray(status), index=table.index)
        colors = {'cell': 'tab:red', 'limited': 'tab:orange', 'empty': 'tab:blue', 'untested': 'lightgrey'}
        for label, color in colors.items():
            mask = positive & (status == label).to_numpy()
            if mask.any():
                ax.scatter(table['rank'][mask], table['total'][mask], s=4, c=color,
                           label=f"{label} ({mask.sum():,})", rasterized=True)
        ax.legend(markerscale=3)

    fitted = table.dropna(subset=['fitted']).sort_values('rank')
    if len(fitted):
        ax.plot(fitted['rank'], fitted['fitted'], color='black', linewidth=1.5)
    ax.axhline(ranks.knee, linestyle='--', color='dodgerblue', label='knee')
    ax.axhline(ranks.inflection, linestyle='--', color='forestgreen', label='inflection')
    ax.text(1, ranks.knee, f" knee={ranks.knee:.0f}", va='bottom', color='dodgerblue')
    ax.text(1, ranks.inflection, f" inflection={ranks.inflection:.0f}", va='top', color='forestgreen')
    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('Barcode Rank', fontsize=12)
    ax.set_ylabel('Total UMI Count', fontsize=12)
    ax.set_title('Barcode Rank Plot', fontsize=14, fontweight='bold')
    save_figure(fig, output_path)


def call_cells(
    adata: ad.AnnData,
    lower: float = 100,
    retain: Optional[float] = None,
    niters: int = 10000,
    fdr_threshold: float = 0.01,
    test_ambient: bool = False,
    ignore: Optional[float] = None,
    random_state: Optional[int] = 100,
    n_jobs: int = 1,
    output_dir: Optional[str] = None
) -> Tuple[ad.AnnData, pd.DataFrame]:
    """
    空液滴识别流程

    参数：
    ----------
    adata : AnnData
        包含全部条码（含空液滴）的原始计数（不会被修改）
    lower : float
        环境 RNA 条码的总计数上限（默认 100）
    retain : float, optional
        总计数不低于此值的条码直接判为细胞（默认 knee 点）
    niters : int
        Monte-Carlo 迭代次数（默认 10000）
    fdr_threshold : float
        FDR 低于此值的条码判为细胞（默认 0.01）
    test_ambient : bool
        是否检验低计数条码
    ignore : float, optional
        总计数 ≤ ignore 的条码不参与检验
    random_state : int, optional
        随机种子（默认 100）
    n_jobs : int
        并行进程数
    output_dir : str, optional
        输出目录，提供时绘制 barcode rank 图

    返回：
    ----------
    adata_cells : AnnData
        仅包含判为细胞的条码，obs 中保存检验结果
    results : pd.DataFrame
        全部条码的 emptyDrops 结果
    """
    print("=" * 60)
    print("开始空液滴识别...")
    print("=" * 60)

    adata = adata.copy()

    print(f"\n[1/3] 计算 barcode rank 曲线 (lower={lower})...")
    ranks = barcode_ranks(adata, lower=lower)
    print(f"   knee = {ranks.knee:.0f}, inflection = {ranks.inflection:.0f}")

    print(f"\n[2/3] emptyDrops 检验 (niters={niters}, n_jobs={n_jobs})...")
    results = empty_drops(
        adata, lower=lower, retain=retain if retain is not None else ranks.knee,
        niters=niters, test_ambient=test_ambient, ignore=ignore,
        random_state=random_state, n_jobs=n_jobs
    )
    status = classify_barcodes(results, fdr_threshold=fdr_threshold)

    adata.obs['barcode_rank'] = ranks.table['rank'].values
    adata.obs['empty_drops_total'] = results['Total'].values
    adata.obs['empty_drops_logprob'] = results['LogProb'].values
    adata.obs['empty_drops_pvalue'] = results['PValue'].values
    adata.obs['empty_drops_fdr'] = results['FDR'].values
    adata.obs['empty_drops_limited'] = results['Limited'].values
    adata.obs['cell_call'] = status

    counts = pd.Series(status).value_counts()
    n_cells = int(counts.get('cell', 0))
    n_limited = int(counts.get('limited', 0))
    adata.uns['cell_calling'] = {
        'knee': ranks.knee,
        'inflection': ranks.inflection,
        'lower': float(lower),
        'retain': results.attrs['retain'],
        'alpha': results.attrs['alpha'],
        'niters': int(niters),
        'fdr_threshold': float(fdr_threshold),
        'n_cells': n_cells,
        'n_limited': n_limited
    }

    print("\n[3/3] 过滤空液滴...")
    for label in status.categories:
        print(f"   {label}: {int(counts.get(label, 0)):,}")
    if n_limited > 0:
        print(f"\n⚠️  警告：{n_limited} 个条码的 p 值受迭代次数限制，建议增大 niters 重新运行")

    if output_dir is not None:
        plot_barcode_ranks(ranks, os.path.join(output_dir, 'cell_calling', 'barcode_rank.png'), status=status)

    adata_cells = adata[np.asarray(status == 'cell')].copy()

    print("\n" + "=" * 60)
    print("空液滴识别完成！")
    print("=" * 60)
    print(f"条码总数: {adata.n_obs:,}")
    print(f"识别细胞数: {adata_cells.n_obs:,} (FDR < {fdr_threshold})")

    return adata_cells, results

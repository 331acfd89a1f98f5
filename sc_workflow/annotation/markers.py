"""
标记基因检测模块

在每对聚类之间做差异检验，再把同一聚类对其他所有聚类的 p 值合并：
- any: Simes 方法，只要对某个聚类显著即可；附带 Top 排名
- all: 取最大 p 值（交并检验），要求对所有聚类都显著
- some: Holm 校正后取中间的 p 值，要求对大约一半的聚类显著
"""

import os
import logging
from typing import Optional, Dict

import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests
import matplotlib.pyplot as plt
import seaborn as sns

from ..io.writer import save_csv, save_figure

logger = logging.getLogger(__name__)

TESTS = ('wilcox', 't')
DIRECTIONS = ('any', 'up', 'down')
PVAL_TYPES = ('any', 'all', 'some')
GENE_CHUNK_SIZE = 2000

_ALTERNATIVE = {'any': 'two-sided', 'up': 'greater', 'down': 'less'}


def _pairwise_tests(X, labels: np.ndarray, groups, test: str, direction: str):
    """
    所有有序聚类对的检验结果

    返回 p 值、logFC、AUC 三个 (m, m, n_genes) 数组，[i, j] 为聚类 i 对聚类 j 的结果
    """
    m = len(groups)
    n_genes = X.shape[1]
    pvals = np.full((m, m, n_genes), np.nan)
    logfc = np.full((m, m, n_genes), np.nan)
    auc = np.full((m, m, n_genes), np.nan)
    alternative = _ALTERNATIVE[direction]
    members = [np.flatnonzero(labels == g) for g in groups]

    for start in range(0, n_genes, GENE_CHUNK_SIZE):
        cols = slice(start, min(start + GENE_CHUNK_SIZE, n_genes))
        block = X[:, cols]
        block = block.toarray() if sparse.issparse(block) else np.asarray(block)
        values = [block[idx].astype(np.float64) for idx in members]
        means = [v.mean(axis=0) for v in values]

        for i in range(m):
            for j in range(m):
                if i == j:
                    continue
                x, y = values[i], values[j]
                logfc[i, j, cols] = means[i] - means[j]
                with np.errstate(divide='ignore', invalid='ignore'):
                    if test == 'wilcox':
                        res = stats.mannwhitneyu(x, y, alternative=alternative, method='asymptotic', axis=0)
                        auc[i, j, cols] = res.statistic / (len(x) * len(y))
                    else:
                        res = stats.ttest_ind(x, y, equal_var=False, alternative=alternative, axis=0)
                pvals[i, j, cols] = res.pvalue

    # 两组都没有方差时检验无意义，视为不显著
    pvals[np.isnan(pvals)] = 1
    for i in range(m):
        pvals[i, i] = np.nan
    return pvals, logfc, auc


def combine_pvalues(pvals: np.ndarray, pval_type: str = 'any'):
    """
    合并每个基因在多个比较中的 p 值

    参数：
    ----------
    pvals : np.ndarray
        基因×比较的 p 值矩阵
    pval_type : str
        'any'（Simes）、'all'（最大值）或 'some'（Holm 校正后的中间值）

    返回：
    ----------
    combined : np.ndarray
        合并后的 p 值
    chosen : np.ndarray
        每个基因用于汇总效应量的比较序号
    """
    if pval_type not in PVAL_TYPES:
        raise ValueError(f"未知的 p 值合并方式: {pval_type}，可选 {PVAL_TYPES}")
    m = pvals.shape[1]
    order = np.argsort(pvals, axis=1, kind='stable')
    sorted_p = np.take_along_axis(pvals, order, axis=1)

    if pval_type == 'any':
        combined = np.min(sorted_p * m / np.arange(1, m + 1), axis=1)
        chosen = order[:, 0]
    elif pval_type == 'all':
        combined = sorted_p[:, -1]
        chosen = order[:, -1]
    else:
        holm = np.maximum.accumulate(sorted_p * (m - np.arange(m)), axis=1)
        middle = max(int(np.ceil(m * 0.5)), 1) - 1
        combined = holm[:, middle]
        chosen = order[:, middle]

    return np.minimum(combined, 1), chosen


def _top_ranks(pvals: np.ndarray) -> np.ndarray:
    """每个比较内按 p 值排名，取各比较中的最小排名"""
    ranks = np.column_stack([stats.rankdata(pvals[:, j], method='ordinal') for j in range(pvals.shape[1])])
    return ranks.min(axis=1)


def find_markers(
    adata: ad.AnnData,
    groupby: str = 'cluster',
    test: str = 'wilcox',
    direction: str = 'any',
    pval_type: str = 'any',
    layer: Optional[str] = None
) -> Dict[str, pd.DataFrame]:
    """
    检测每个聚类的标记基因

    参数：
    ----------
    adata : AnnData
        log 表达量（默认 layers['logcounts']，不存在时用 X）
    groupby : str
        分组列名
    test : str
        'wilcox'（Wilcoxon 秩和检验）或 't'（Welch t 检验）
    direction : str
        'up' 只检验上调，'down' 只检验下调，'any' 双侧
    pval_type : str
        p 值合并方式
    layer : str, optional
        log 表达量所在的 layer

    返回：
    ----------
    dict
        聚类 → DataFrame（行为基因，按显著性排序）。列包括
        p.value、FDR、summary.logFC、logFC.<聚类>、AUC.<聚类>（仅 wilcox）、Top（仅 any）
    """
    if test not in TESTS:
        raise ValueError(f"未知的检验方法: {test}，可选 {TESTS}")
    if direction not in DIRECTIONS:
        raise ValueError(f"未知的方向: {direction}，可选 {DIRECTIONS}")
    if pval_type not in PVAL_TYPES:
        raise ValueError(f"未知的 p 值合并方式: {pval_type}，可选 {PVAL_TYPES}")
    if groupby not in adata.obs:
        raise KeyError(f"obs 中缺少分组列: {groupby}")

    labels = adata.obs[groupby].astype(str).to_numpy()
    groups = list(pd.unique(labels))
    if isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        groups = [str(c) for c in adata.obs[groupby].cat.categories if str(c) in set(labels)]
    if len(groups) < 2:
        raise ValueError(f"标记基因检测至少需要 2 个分组，当前只有 {len(groups)} 个")

    if layer is None:
        layer = 'logcounts' if 'logcounts' in adata.layers else None
    X = adata.layers[layer] if layer is not None else adata.X

    pvals, logfc, auc = _pairwise_tests(X, labels, groups, test, direction)

    results = {}
    for i, group in enumerate(groups):
        others = [j for j in range(len(groups)) if j != i]
        p = pvals[i, others].T
        fc = logfc[i, others].T
        combined, chosen = combine_pvalues(p, pval_type)

        table = pd.DataFrame(index=adata.var_names.copy())
        if pval_type == 'any':
            table['Top'] = _top_ranks(p)
        table['p.value'] = combined
        table['FDR'] = multipletests(combined, method='fdr_bh')[1]
        table['summary.logFC'] = fc[np.arange(len(fc)), chosen]
        for k, j in enumerate(others):
            table[f'logFC.{groups[j]}'] = fc[:, k]
        if test == 'wilcox':
            for k, j in enumerate(others):
                table[f'AUC.{groups[j]}'] = auc[i, j]

        if direction != 'any':
            sign = 1 if direction == 'up' else -1
            consistent = np.all(sign * fc >= 0, axis=1)
            if test == 'wilcox':
                consistent &= np.all(sign * (auc[i, others].T - 0.5) >= 0, axis=1)
            dropped = int((~consistent).sum())
            if dropped:
                logger.info("聚类 %s: %d 个基因的效应方向与 %s 不一致，不予报告", group, dropped, direction)
            table = table[consistent]

        sort_cols = ['Top', 'p.value'] if pval_type == 'any' else ['p.value']
        results[group] = table.sort_values(sort_cols, kind='stable')

    return results


def top_markers(markers: Dict[str, pd.DataFrame], n_top: int = 10) -> Dict[str, list]:
    """每个聚类的前 n_top 个标记基因（有 Top 列时取 Top ≤ n_top）"""
    top = {}
    for group, table in markers.items():
        if 'Top' in table:
            top[group] = table.index[table['Top'] <= n_top].tolist()
        else:
            top[group] = table.index[:n_top].tolist()
    return top


def plot_marker_heatmap(
    adata: ad.AnnData,
    genes: list,
    groupby: str,
    output_path: str,
    layer: Optional[str] = None
):
    """
    绘制标记基因在各聚类中平均表达的热图（按基因标准化）
    """
    if layer is None:
        layer = 'logcounts' if 'logcounts' in adata.layers else None
    sub = adata[:, genes]
    X = sub.layers[layer] if layer is not None else sub.X
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    means = pd.DataFrame(X, columns=genes).groupby(adata.obs[groupby].to_numpy(), observed=True).mean().T

    z = means.sub(means.mean(axis=1), axis=0).div(means.std(axis=1).replace(0, 1), axis=0)
    height = max(4, 0.25 * len(genes))
    fig, ax = plt.subplots(figsize=(max(6, 0.6 * means.shape[1] + 3), height))
    sns.heatmap(z, cmap='RdBu_r', center=0, ax=ax, cbar_kws={'label': 'z-score'})
    ax.set_xlabel(groupby, fontsize=12)
    ax.set_ylabel('')
    ax.set_title('Top Marker Genes', fontsize=14, fontweight='bold')
    save_figure(fig, output_path)


def marker_detection(
    adata: ad.AnnData,
    groupby: str = 'cluster',
    test: str = 'wilcox',
    direction: str = 'up',
    pval_type: str = 'any',
    fdr_threshold: float = 0.05,
    n_top: int = 10,
    output_dir: Optional[str] = None
) -> Dict[str, pd.DataFrame]:
    """
    标记基因检测流程

    参数：
    ----------
    adata : AnnData
        聚类后的数据（原地写入 uns['markers']）
    groupby : str
        分组列名（默认 'cluster'）
    test, direction, pval_type : str
        见 find_markers
    fdr_threshold : float
        统计显著标记基因数时的 FDR 阈值
    n_top : int
        每个聚类保存/绘图的标记基因数
    output_dir : str, optional
        输出目录

    返回：
    ----------
    dict
        find_markers 的结果
    """
    print("=" * 60)
    print("开始标记基因检测...")
    print("=" * 60)

    print(f"\n[1/2] 两两比较 (test={test}, direction={direction}, pval_type={pval_type})...")
    markers = find_markers(adata, groupby=groupby, test=test, direction=direction, pval_type=pval_type)
    top = top_markers(markers, n_top=n_top)

    summary = pd.DataFrame({
        'n_significant': {g: int((t['FDR'] <= fdr_threshold).sum()) for g, t in markers.items()},
        'top_genes': {g: ','.join(genes) for g, genes in top.items()}
    })
    summary.index.name = groupby
    print(summary[['n_significant']].to_string())

    adata.uns['markers'] = {
        'groupby': groupby,
        'test': test,
        'direction': direction,
        'pval_type': pval_type,
        'top': {g: ','.join(genes) for g, genes in top.items()}
    }

    print("\n[2/2] 保存结果...")
    if output_dir is not None:
        out = os.path.join(output_dir, 'markers')
        for group, table in markers.items():
            save_csv(table, os.path.join(out, f'markers_{groupby}_{group}.csv'))
        save_csv(summary, os.path.join(out, 'markers_summary.csv'))
        genes = list(dict.fromkeys(g for genes in top.values() for g in genes))
        if genes:
            plot_marker_heatmap(adata, genes, groupby, os.path.join(out, 'top_markers_heatmap.png'))

    print("\n" + "=" * 60)
    print("标记基因检测完成！")
    print("=" * 60)
    return markers

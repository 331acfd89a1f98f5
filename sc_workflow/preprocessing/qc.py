"""
质量控制模块

提供单细胞数据质控功能，包括：
- QC 指标计算（总计数、检测基因数、线粒体比例）
- 基于 MAD 的自适应离群值检测
- 双胞检测（可选）
- 细胞过滤
"""

import os
from typing import Union, Tuple, Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
import matplotlib.pyplot as plt
import seaborn as sns
from tqdm import tqdm
import scrublet as scr

from ..io.writer import save_figure

MAD_CONSTANT = 1.4826


def is_outlier(
    values,
    nmads: float = 3.0,
    type: str = 'both',
    log: bool = False,
    batch=None,
    subset=None,
    min_diff: Optional[float] = None
) -> pd.Series:
    """
    基于中位数绝对偏差 (MAD) 的离群值检测

    参数：
    ----------
    values : array-like 或 pd.Series
        每个细胞的 QC 指标（不会被修改）
    nmads : float
        允许偏离中位数的 MAD 倍数（默认 3）
    type : str
        'lower'（只检测偏低）、'higher'（只检测偏高）或 'both'
    log : bool
        是否在 log2 尺度上计算
    batch : array-like, optional
        批次标签，每个批次分别计算中位数与 MAD
    subset : array-like of bool, optional
        只用这些细胞计算中位数与 MAD（所有细胞都会被判定）
    min_diff : float, optional
        阈值与中位数的最小距离

    返回：
    ----------
    pd.Series
        可空布尔型，True 为离群值；输入为 NaN 的细胞为 <NA>。
        attrs['thresholds'] 保存每个批次的上下限（原始尺度）
    """
    if type not in ('both', 'lower', 'higher'):
        raise ValueError(f"type 必须是 'both'、'lower' 或 'higher'，而不是 {type!r}")
    if nmads < 0:
        raise ValueError("nmads 不能为负")

    index = values.index if isinstance(values, pd.Series) else pd.RangeIndex(len(values))
    x = np.array(values, dtype=np.float64)
    if log:
        with np.errstate(divide='ignore'):
            x = np.log2(x)

    missing = np.isnan(x)
    use = np.ones(len(x), dtype=bool) if subset is None else np.asarray(subset, dtype=bool)
    groups = np.zeros(len(x), dtype=int) if batch is None else pd.factorize(np.asarray(batch), use_na_sentinel=False)[0]
    labels = ['all'] if batch is None else [str(v) for v in pd.unique(np.asarray(batch))]

    flags = np.zeros(len(x), dtype=bool)
    thresholds = {}
    for g, label in enumerate(labels):
        members = groups == g
        ref = x[members & use & ~missing]
        if len(ref) == 0:
            lower, higher = np.nan, np.nan
        else:
            median = np.median(ref)
            diff = nmads * MAD_CONSTANT * np.median(np.abs(ref - median))
            if min_diff is not None:
                diff = max(diff, min_diff)
            lower = -np.inf if type == 'higher' else median - diff
            higher = np.inf if type == 'lower' else median + diff

        flags[members] = (x[members] < lower) | (x[members] > higher)
        thresholds[label] = {
            'lower': float(2 ** lower if log else lower),
            'higher': float(2 ** higher if log else higher)
        }

    result = pd.Series(pd.array(flags, dtype='boolean'), index=index)
    result[missing] = pd.NA
    result.attrs['thresholds'] = thresholds
    return result


def per_cell_qc_metrics(
    adata: ad.AnnData,
    mito_prefix: Sequence[str] = ('MT-', 'mt-'),
    chromosome_key: str = 'chromosome',
    mito_chromosome: Sequence[str] = ('MT', 'chrM', 'M')
) -> ad.AnnData:
    """
    计算每个细胞的 QC 指标

    obs 中写入 total_counts / n_genes_by_counts / pct_counts_mt，
    var 中写入 mean_counts / n_cells_by_counts / mt。
    已有的指标会被重新计算而不是修改。

    线粒体基因优先按染色体注释判断（染色体未知的基因不算线粒体基因），
    没有染色体注释时按基因名前缀判断。
    """
    if chromosome_key in adata.var.columns and adata.var[chromosome_key].notna().any():
        adata.var['mt'] = adata.var[chromosome_key].isin(list(mito_chromosome)).values
    else:
        symbols = adata.var['symbol'] if 'symbol' in adata.var.columns else pd.Series(adata.var_names)
        adata.var['mt'] = symbols.astype(str).str.startswith(tuple(mito_prefix)).values

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=['mt'],
        percent_top=None,
        log1p=False,
        inplace=True,
        layer='counts' if 'counts' in adata.layers else None
    )
    return adata


def _run_scrublet(adata: ad.AnnData, sample_key: str, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    scores = np.zeros(adata.n_obs)
    labels = np.zeros(adata.n_obs, dtype=bool)
    counts = adata.layers['counts'] if 'counts' in adata.layers else adata.X
    for sample in tqdm(adata.obs[sample_key].unique(), desc="Detecting doublets"):
        idx = np.flatnonzero((adata.obs[sample_key] == sample).values)
        scrub = scr.Scrublet(counts[idx])
        score, _ = scrub.scrub_doublets(
            min_counts=2,
            min_cells=3,
            min_gene_variability_pctl=85,
            n_prin_comps=30,
            verbose=False
        )
        scores[idx] = score
        labels[idx] = score > threshold
    return scores, labels


def quality_control(
    adata: ad.AnnData,
    nmads: float = 3.0,
    batch_key: Optional[str] = None,
    min_genes: Optional[int] = None,
    max_genes: Optional[int] = None,
    max_pct_mito: Optional[float] = None,
    doublet_method: str = 'none',
    doublet_threshold: float = 0.25,
    return_stats: bool = True,
    output_dir: Optional[str] = None
) -> Union[ad.AnnData, Tuple[ad.AnnData, pd.DataFrame]]:
    """
    单细胞数据质控流程

    参数：
    ----------
    adata : AnnData
        空液滴识别后的原始计数
    nmads : float
        自适应阈值的 MAD 倍数（默认 3）
    batch_key : str, optional
        批次列名，每个批次分别计算阈值
    min_genes, max_genes : int, optional
        额外的固定基因数阈值
    max_pct_mito : float, optional
        额外的固定线粒体比例阈值（%）
    doublet_method : str
        双胞检测方法，可选 "scrublet" 或 "none"
    doublet_threshold : float
        双胞预测阈值（默认 0.25）
    return_stats : bool
        是否返回质控统计表（默认 True）
    output_dir : str, optional
        输出目录，提供时绘制质控图

    返回：
    ----------
    adata_filtered : AnnData
        质控后的 AnnData 对象
    qc_stats : pd.DataFrame (可选)
        每个样品的质控统计表
    """
    print("=" * 60)
    print("开始质控流程...")
    print("=" * 60)

    adata = adata.copy()

    # 1. 计算QC指标
    print("\n[1/4] 计算质控指标...")
    per_cell_qc_metrics(adata)
    print(f"   线粒体基因数: {int(adata.var['mt'].sum())}")

    # 2. 自适应阈值
    print(f"\n[2/4] 基于 MAD 的离群值检测 (nmads={nmads})...")
    batch = adata.obs[batch_key].values if batch_key else None
    outliers = {
        'low_lib_size': is_outlier(adata.obs['total_counts'], nmads, type='lower', log=True, batch=batch),
        'low_n_features': is_outlier(adata.obs['n_genes_by_counts'], nmads, type='lower', log=True, batch=batch),
        'high_subsets_mito': is_outlier(adata.obs['pct_counts_mt'], nmads, type='higher', batch=batch),
    }
    thresholds = {}
    for name, flags in outliers.items():
        adata.obs[name] = flags.fillna(False).to_numpy(dtype=bool)
        thresholds[name] = flags.attrs['thresholds']
        print(f"   {name}: {int(adata.obs[name].sum())} 个细胞")

    # 3. 固定阈值与双胞
    print("\n[3/4] 固定阈值与双胞检测...")
    fixed = np.zeros(adata.n_obs, dtype=bool)
    if min_genes is not None:
        fixed |= adata.obs['n_genes_by_counts'].values < min_genes
    if max_genes is not None:
        fixed |= adata.obs['n_genes_by_counts'].values > max_genes
    if max_pct_mito is not None:
        fixed |= adata.obs['pct_counts_mt'].values > max_pct_mito
    adata.obs['fixed_threshold'] = fixed
    print(f"   固定阈值过滤: {int(fixed.sum())} 个细胞")

    sample_key = 'SampleName' if 'SampleName' in adata.obs.columns else batch_key
    if sample_key is None:
        adata.obs['SampleName'] = 'sample'
        sample_key = 'SampleName'

    if doublet_method.lower() == 'scrublet':
        print(f"   使用 Scrublet 检测双胞 (阈值={doublet_threshold})...")
        scores, labels = _run_scrublet(adata, sample_key, doublet_threshold)
        adata.obs['doublet_score'] = scores
        adata.obs['is_doublet'] = labels
        print(f"   检测到 {int(labels.sum())} 个双胞 ({labels.mean() * 100:.2f}%)")
    elif doublet_method.lower() == 'none':
        print("   跳过双胞检测...")
        adata.obs['is_doublet'] = False
    else:
        raise ValueError(f"未知的双胞检测方法: {doublet_method}")

    adata.obs['discard'] = (
        adata.obs['low_lib_size'] | adata.obs['low_n_features'] | adata.obs['high_subsets_mito']
        | adata.obs['fixed_threshold'] | adata.obs['is_doublet']
    ).values

    # 4. 统计每个样品的过滤情况
    print("\n[4/4] 统计过滤结果...")
    qc_stats_list = []
    for sample, obs in adata.obs.groupby(sample_key, observed=True):
        kept = obs[~obs['discard']]
        qc_stats_list.append({
            'SampleName': sample,
            'cells_before_qc': len(obs),
            'cells_after_qc': len(kept),
            'cells_filtered': int(obs['discard'].sum()),
            'pct_filtered': obs['discard'].mean() * 100,
            'n_low_lib_size': int(obs['low_lib_size'].sum()),
            'n_low_n_features': int(obs['low_n_features'].sum()),
            'n_high_mito': int(obs['high_subsets_mito'].sum()),
            'n_fixed_threshold': int(obs['fixed_threshold'].sum()),
            'n_doublet': int(obs['is_doublet'].sum()),
            'median_genes': kept['n_genes_by_counts'].median(),
            'median_counts': kept['total_counts'].median(),
            'mean_pct_mito': kept['pct_counts_mt'].mean()
        })
    qc_stats_df = pd.DataFrame(qc_stats_list)

    adata.uns['qc'] = {'nmads': float(nmads), 'thresholds': thresholds}

    if output_dir is not None:
        plot_qc_metrics(adata, output_dir, groupby=sample_key)

    adata_filtered = adata[~adata.obs['discard'].values].copy()

    print("\n" + "=" * 60)
    print("质控完成！")
    print("=" * 60)
    print(f"过滤前总细胞数: {adata.n_obs:,}")
    print(f"过滤后总细胞数: {adata_filtered.n_obs:,}")
    print(f"总过滤比例: {(adata.n_obs - adata_filtered.n_obs) / max(adata.n_obs, 1) * 100:.2f}%")
    print("\n各样品质控统计：")
    print(qc_stats_df[['SampleName', 'cells_before_qc', 'cells_after_qc', 'pct_filtered']].to_string(index=False))

    # 标记异常样品（过滤比例>50%）
    abnormal_samples = qc_stats_df[qc_stats_df['pct_filtered'] > 50]
    if len(abnormal_samples) > 0:
        print("\n⚠️  警告：以下样品过滤比例超过50%，建议检查：")
        print(abnormal_samples[['SampleName', 'cells_before_qc', 'cells_after_qc', 'pct_filtered']].to_string(index=False))

    if return_stats:
        return adata_filtered, qc_stats_df
    return adata_filtered


def plot_qc_metrics(adata: ad.AnnData, output_dir: str, groupby: Optional[str] = None):
    """
    绘制质控指标可视化图，被过滤的细胞以橙色标出

    参数：
    ----------
    adata : AnnData
        包含质控指标与 discard 列的 AnnData 对象
    output_dir : str
        输出目录
    groupby : str, optional
        分组列（如 SampleName）
    """
    qc_dir = os.path.join(output_dir, 'qc_plots')
    obs = adata.obs.copy()
    obs['group'] = obs[groupby].astype(str) if groupby else 'all'
    obs['status'] = np.where(obs['discard'].astype(bool), 'discard', 'keep')
    palette = {'keep': 'tab:blue', 'discard': 'tab:orange'}

    metrics = [
        ('total_counts', 'UMI Counts per Cell', True),
        ('n_genes_by_counts', 'Genes per Cell', True),
        ('pct_counts_mt', 'Mitochondrial %', False),
    ]
    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    for ax, (metric, title, log_scale) in zip(axes, metrics):
        sns.violinplot(data=obs, x='group', y=metric, color='lightgrey', inner=None, cut=0, ax=ax)
        sns.stripplot(data=obs, x='group', y=metric, hue='status',
                      palette=palette,
                      size=2, jitter=0.3, ax=ax)
        if log_scale:
            ax.set_yscale('log')
        ax.set_title(title, fontweight='bold')
        ax.set_xlabel('')
        ax.tick_params(axis='x', rotation=45)
    save_figure(fig, os.path.join(qc_dir, 'qc_violin.png'))

    fig, ax = plt.subplots(figsize=(8, 6))
    sns.scatterplot(data=obs, x='total_counts', y='pct_counts_mt', hue='status',
                    palette=palette, s=8, linewidth=0, ax=ax)
    ax.set_xscale('log')
    ax.set_title('Mitochondrial % vs UMI Counts', fontweight='bold', fontsize=14)
    save_figure(fig, os.path.join(qc_dir, 'qc_scatter.png'))

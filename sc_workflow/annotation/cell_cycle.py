"""
细胞周期分期模块

用 S 期与 G2/M 期基因集打分，给出 G1 / S / G2M 分期
"""

from typing import Optional, List

import numpy as np
import scanpy as sc
import anndata as ad

from ..utils.errors import DataQualityError

# Tirosh et al. (2016) 人类细胞周期基因
S_GENES = [
    'MCM5', 'PCNA', 'TYMS', 'FEN1', 'MCM2', 'MCM4', 'RRM1', 'UNG', 'GINS2', 'MCM6',
    'CDCA7', 'DTL', 'PRIM1', 'UHRF1', 'MLF1IP', 'HELLS', 'RFC2', 'RPA2', 'NASP',
    'RAD51AP1', 'GMNN', 'WDR76', 'SLBP', 'CCNE2', 'UBR7', 'POLD3', 'MSH2', 'ATAD2',
    'RAD51', 'RRM2', 'CDC45', 'CDC6', 'EXO1', 'TIPIN', 'DSCC1', 'BLM', 'CASP8AP2',
    'USP1', 'CLSPN', 'POLA1', 'CHAF1B', 'BRIP1', 'E2F8'
]

G2M_GENES = [
    'HMGB2', 'CDK1', 'NUSAP1', 'UBE2C', 'BIRC5', 'TPX2', 'TOP2A', 'NDC80', 'CKS2',
    'NUF2', 'CKS1B', 'MKI67', 'TMPO', 'CENPF', 'TACC3', 'FAM64A', 'SMC4', 'CCNB2',
    'CKAP2L', 'CKAP2', 'AURKB', 'BUB1', 'KIF11', 'ANP32E', 'TUBB4B', 'GTSE1', 'KIF20B',
    'HJURP', 'CDCA3', 'HN1', 'CDC20', 'TTK', 'CDC25C', 'KIF2C', 'RANGAP1', 'NCAPD2',
    'DLGAP5', 'CDCA2', 'CDCA8', 'ECT2', 'KIF23', 'HMMR', 'AURKA', 'PSRC1', 'ANLN',
    'LBR', 'CKAP5', 'CENPE', 'CTCF', 'NEK2', 'G2E3', 'GAS2L3', 'CBX5', 'CENPA'
]


def classify_cell_cycle(
    adata: ad.AnnData,
    s_genes: Optional[List[str]] = None,
    g2m_genes: Optional[List[str]] = None,
    gene_symbols: Optional[str] = None,
    layer: Optional[str] = None,
    random_state: int = 0
) -> ad.AnnData:
    """
    细胞周期分期

    参数：
    ----------
    adata : AnnData
        log 表达量（默认 layers['logcounts']，不存在时用 X）
    s_genes, g2m_genes : list, optional
        S 期 / G2M 期基因（默认人类基因集）
    gene_symbols : str, optional
        var 中基因符号所在的列（var_names 为 Ensembl ID 时使用，如 'symbol'）
    layer : str, optional
        log 表达量所在的 layer
    random_state : int
        对照基因抽样的随机种子

    返回：
    ----------
    adata : AnnData
        obs 中增加 S_score、G2M_score、phase
    """
    s_genes = S_GENES if s_genes is None else list(s_genes)
    g2m_genes = G2M_GENES if g2m_genes is None else list(g2m_genes)

    if layer is None:
        layer = 'logcounts' if 'logcounts' in adata.layers else None
    X = adata.layers[layer] if layer is not None else adata.X

    names = adata.var_names
    if gene_symbols is not None:
        names = adata.var[gene_symbols].astype(str)
    tmp = ad.AnnData(X=X, obs=adata.obs[[]].copy())
    tmp.var_names = np.asarray(names)
    tmp.var_names_make_unique()

    s_present = [g for g in s_genes if g in tmp.var_names]
    g2m_present = [g for g in g2m_genes if g in tmp.var_names]
    print(f"细胞周期基因: S 期 {len(s_present)}/{len(s_genes)}，G2M 期 {len(g2m_present)}/{len(g2m_genes)}")
    if not s_present or not g2m_present:
        raise DataQualityError("数据中没有找到细胞周期基因，请检查 gene_symbols 参数")

    sc.tl.score_genes_cell_cycle(tmp, s_genes=s_present, g2m_genes=g2m_present, random_state=random_state)

    adata.obs['S_score'] = tmp.obs['S_score'].values
    adata.obs['G2M_score'] = tmp.obs['G2M_score'].values
    adata.obs['phase'] = tmp.obs['phase'].astype('category').values

    counts = adata.obs['phase'].value_counts()
    for phase, n in counts.items():
        print(f"   {phase}: {n} ({n / adata.n_obs * 100:.1f}%)")
    return adata

"""
数据读取模块

提供单细胞数据读取功能，支持：
- 10X / BGI 风格的 matrix.mtx + barcodes.tsv + features.tsv(genes.tsv) 目录
- 打包成 tar / tar.gz 的上述目录
- 样品信息表批量读取
- 基因注释（染色体等）合并
"""

import os
import tarfile
import tempfile
from typing import Optional, List

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import io
from scipy.sparse import csr_matrix
from tqdm import tqdm


ARCHIVE_SUFFIXES = ('.tar', '.tar.gz', '.tgz')


def _find_file(data_dir: str, prefixes: List[str]) -> str:
    for prefix in prefixes:
        for fn in sorted(os.listdir(data_dir)):
            if fn.startswith(prefix) and fn.endswith(('.tsv', '.tsv.gz', '.mtx', '.mtx.gz')):
                return os.path.join(data_dir, fn)
    raise FileNotFoundError(f"未找到 {'/'.join(prefixes)} 文件，请检查路径：{data_dir}")


def read_10x_mtx(
    data_dir: str,
    sample_id: Optional[str] = None,
    var_names: str = 'gene_ids'
) -> ad.AnnData:
    """
    从 10X (或 BGI) 输出目录读取单细胞矩阵数据，生成 AnnData 对象。

    参数：
    ----------
    data_dir : str
        存放 matrix.mtx(.gz)、barcodes.tsv(.gz)、features.tsv(.gz) 的目录路径，
        旧版 CellRanger 的 genes.tsv(.gz) 同样支持
    sample_id : str, optional
        样品 ID，用于为细胞条码添加前缀以避免重复
    var_names : str
        使用 'gene_ids' 或 'symbol' 作为基因名（默认 'gene_ids'）

    返回：
    ----------
    adata : AnnData
        细胞×基因的计数矩阵（CSR），var 包含 gene_ids / symbol / feature_types
    """
    if not os.path.isdir(data_dir):
        raise FileNotFoundError(f"输入目录不存在：{data_dir}")
    if var_names not in ('gene_ids', 'symbol'):
        raise ValueError(f"var_names 必须是 'gene_ids' 或 'symbol'，而不是 {var_names!r}")

    matrix_path = _find_file(data_dir, ['matrix'])
    barcodes_path = _find_file(data_dir, ['barcodes'])
    features_path = _find_file(data_dir, ['features', 'genes'])

    matrix = io.mmread(matrix_path)
    barcodes = pd.read_csv(barcodes_path, header=None, sep='\t', dtype=str)
    features = pd.read_csv(features_path, header=None, sep='\t', dtype=str)

    if matrix.shape != (len(features), len(barcodes)):
        raise ValueError(
            f"矩阵维度 {matrix.shape} 与 features ({len(features)}) / barcodes ({len(barcodes)}) 不一致"
        )

    cell_names = barcodes[0].values
    if sample_id is not None:
        cell_names = np.array([f"{sample_id}_{x}" for x in cell_names])

    var = pd.DataFrame({'gene_ids': features[0].values})
    var['symbol'] = features[1].values if features.shape[1] > 1 else features[0].values
    if features.shape[1] > 2:
        var['feature_types'] = features[2].values

    # 转置为细胞×基因矩阵并转换为稀疏格式
    adata = ad.AnnData(X=csr_matrix(matrix.T, dtype=np.float32), var=var)
    adata.obs_names = cell_names
    adata.var_names = var[var_names].values
    adata.var_names_make_unique()
    adata.obs['SampleName'] = sample_id if sample_id is not None else os.path.basename(os.path.normpath(data_dir))
    adata.obs['SampleName'] = adata.obs['SampleName'].astype('category')

    return adata


def read_10x_archive(
    archive_path: str,
    sample_id: Optional[str] = None,
    var_names: str = 'gene_ids'
) -> ad.AnnData:
    """
    读取打包为 tar / tar.gz 的 10X 矩阵目录

    参数：
    ----------
    archive_path : str
        压缩包路径，包内任意层级包含 matrix.mtx 的目录即可
    sample_id : str, optional
        样品 ID
    var_names : str
        同 read_10x_mtx

    返回：
    ----------
    adata : AnnData
    """
    if not os.path.exists(archive_path):
        raise FileNotFoundError(f"压缩包不存在：{archive_path}")

    with tempfile.TemporaryDirectory() as tmp_dir:
        with tarfile.open(archive_path, 'r:*') as tar:
            tar.extractall(tmp_dir, filter='data')

        for root, _, files in os.walk(tmp_dir):
            if any(fn.startswith('matrix') and fn.endswith(('.mtx', '.mtx.gz')) for fn in files):
                if sample_id is None:
                    sample_id = os.path.basename(archive_path).split('.')[0]
                return read_10x_mtx(root, sample_id=sample_id, var_names=var_names)

    raise FileNotFoundError(f"压缩包中未找到 matrix.mtx：{archive_path}")


def read_input(path: str, sample_id: Optional[str] = None) -> ad.AnnData:
    """
    根据路径类型读取单个样品：目录、tar 压缩包或 h5ad 文件
    """
    if os.path.isdir(path):
        return read_10x_mtx(path, sample_id=sample_id)
    if path.endswith(ARCHIVE_SUFFIXES):
        return read_10x_archive(path, sample_id=sample_id)
    if path.endswith('.h5ad'):
        adata = read_h5ad(path)
        if 'SampleName' not in adata.obs:
            adata.obs['SampleName'] = sample_id or os.path.basename(path)[:-len('.h5ad')]
        return adata
    raise ValueError(f"无法识别的输入类型：{path}")


def read_sample(sample_info_path: str) -> ad.AnnData:
    """
    根据样品信息文件批量读取并整合单细胞数据

    参数：
    ----------
    sample_info_path : str
        样品信息 CSV 文件路径
    格式要求：
        必须包含 'Path' 和 'SampleName' 两列，其他列将作为元数据添加到 obs 中。
        Path 可以是矩阵目录、tar 压缩包或 h5ad 文件。
    返回：
    ----------
    adata : AnnData
        整合后的 AnnData 对象
    """
    sample_info = pd.read_csv(sample_info_path)
    missing = {'Path', 'SampleName'} - set(sample_info.columns)
    if missing:
        raise ValueError(f"样品信息表缺少必需列: {sorted(missing)}")

    adata_list = []
    for _, row in tqdm(sample_info.iterrows(), total=len(sample_info), desc="Reading samples"):
        adata_sample = read_input(row['Path'], str(row['SampleName']))

        # 添加元数据
        for col in sample_info.columns:
            if col not in ['Path', 'SampleName']:
                adata_sample.obs[col] = row[col]

        adata_list.append(adata_sample)

    if len(adata_list) == 1:
        return adata_list[0]

    # 合并所有样品
    adata = ad.concat(adata_list, join='outer', merge='same')
    adata.obs['SampleName'] = adata.obs['SampleName'].astype('category')
    return adata


def annotate_genes(
    adata: ad.AnnData,
    annotation_path: str,
    key: str = 'gene_ids',
    columns: Optional[List[str]] = None
) -> ad.AnnData:
    """
    将基因注释表（如染色体位置）合并到 adata.var

    注释表中找不到的基因保留为 NaN（位置未定义），不会被删除。

    参数：
    ----------
    adata : AnnData
        AnnData 对象（原地修改）
    annotation_path : str
        TSV/CSV 注释表，需包含 key 列
    key : str
        用于匹配的基因标识列（默认 'gene_ids'；var 中没有该列时使用 var_names）
    columns : list, optional
        要合并的注释列（默认除 key 外的全部列）

    返回：
    ----------
    adata : AnnData
    """
    sep = ',' if annotation_path.endswith('.csv') else '\t'
    annotation = pd.read_csv(annotation_path, sep=sep, dtype=str)
    if key not in annotation.columns:
        raise ValueError(f"注释表缺少匹配列 {key!r}")

    annotation = annotation.drop_duplicates(key).set_index(key)
    if columns is None:
        columns = list(annotation.columns)

    ids = adata.var[key] if key in adata.var.columns else pd.Series(adata.var_names, index=adata.var_names)
    for col in columns:
        adata.var[col] = ids.map(annotation[col]).values

    n_missing = int(pd.isna(adata.var[columns[0]]).sum()) if columns else 0
    print(f"   基因注释完成: {adata.n_vars - n_missing}/{adata.n_vars} 个基因匹配")
    return adata


def read_h5ad(file_path: str, backed: Optional[str] = None) -> ad.AnnData:
    """
    读取 H5AD 格式的 AnnData 对象

    参数：
    ----------
    file_path : str
        H5AD 文件路径
    backed : str, optional
        'r' 表示以只读 backed 模式打开，矩阵保留在磁盘

    返回：
    ----------
    adata : AnnData
        AnnData 对象
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"文件不存在：{file_path}")
    return sc.read_h5ad(file_path, backed=backed)

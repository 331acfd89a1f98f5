"""
磁盘矩阵访问模块

以 backed 模式打开 h5ad 文件，按行块读取计数矩阵，并缓存最近读取的块
"""

import threading
from collections import OrderedDict
from typing import Iterator, Tuple

import numpy as np
import pandas as pd
import anndata as ad
import scanpy as sc
from scipy import sparse


class BackedMatrix:
    """
    按行块访问磁盘上的 AnnData 矩阵

    - 重复访问同一块时直接使用缓存，不再读盘
    - 同一进程内的读取通过锁串行化，避免共享 HDF5 句柄被并发访问
    - 跨进程的读共享依赖 HDF5 自身的文件锁
    """

    def __init__(self, file_path: str, chunk_size: int = 5000, cache_size: int = 4):
        """
        参数：
        ----------
        file_path : str
            h5ad 文件路径
        chunk_size : int
            每块的细胞数（默认 5000）
        cache_size : int
            缓存的块数（默认 4）
        """
        if chunk_size < 1 or cache_size < 1:
            raise ValueError("chunk_size 与 cache_size 必须为正整数")
        self.file_path = file_path
        self.chunk_size = chunk_size
        self.cache_size = cache_size
        self.n_reads = 0
        self._lock = threading.Lock()
        self._cache = OrderedDict()
        self._adata = sc.read_h5ad(file_path, backed='r')

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def shape(self) -> Tuple[int, int]:
        return self._adata.shape

    @property
    def obs(self) -> pd.DataFrame:
        return self._adata.obs

    @property
    def var(self) -> pd.DataFrame:
        return self._adata.var

    @property
    def n_chunks(self) -> int:
        return int(np.ceil(self.shape[0] / self.chunk_size))

    def get_chunk(self, index: int) -> sparse.csr_matrix:
        """读取第 index 块（CSR），优先使用缓存"""
        if not 0 <= index < self.n_chunks:
            raise IndexError(f"块序号越界: {index}")

        with self._lock:
            if index in self._cache:
                self._cache.move_to_end(index)
                return self._cache[index]

            start = index * self.chunk_size
            stop = min(start + self.chunk_size, self.shape[0])
            block = self._adata.X[start:stop]
            block = block.tocsr() if sparse.issparse(block) else sparse.csr_matrix(np.asarray(block))
            self.n_reads += 1

            self._cache[index] = block
            if len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
            return block

    def iter_chunks(self) -> Iterator[Tuple[int, int, sparse.csr_matrix]]:
        """依次返回 (start, stop, 块矩阵)"""
        for i in range(self.n_chunks):
            start = i * self.chunk_size
            block = self.get_chunk(i)
            yield start, start + block.shape[0], block

    def row_sums(self) -> np.ndarray:
        """每个细胞（条码）的总计数"""
        totals = np.zeros(self.shape[0])
        for start, stop, block in self.iter_chunks():
            totals[start:stop] = np.asarray(block.sum(axis=1)).ravel()
        return totals

    def subset(self, mask) -> ad.AnnData:
        """
        将选中的细胞读入内存

        参数：
        ----------
        mask : array-like of bool
            长度等于细胞数的布尔向量

        返回：
        ----------
        adata : AnnData
            仅包含选中细胞的内存 AnnData
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape[0] != self.shape[0]:
            raise ValueError("mask 长度与细胞数不一致")

        blocks = []
        for start, stop, block in self.iter_chunks():
            local = mask[start:stop]
            if local.any():
                blocks.append(block[local])
        if blocks:
            X = sparse.vstack(blocks).tocsr()
        else:
            X = sparse.csr_matrix((0, self.shape[1]), dtype=np.float32)

        return ad.AnnData(
            X=X,
            obs=self.obs.iloc[np.flatnonzero(mask)].copy(),
            var=self.var.copy(),
            uns=dict(self._adata.uns)
        )

    def close(self):
        with self._lock:
            self._cache.clear()
            self._adata.file.close()

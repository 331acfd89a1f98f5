"""
空液滴识别测试
"""

import numpy as np
import pandas as pd
import pytest

from sc_workflow.preprocessing.cell_calling import (
    barcode_ranks,
    good_turing_proportions,
    estimate_ambient_alpha,
    empty_drops_pvalues,
    empty_drops,
    classify_barcodes,
    call_cells,
    plot_barcode_ranks
)
from sc_workflow.utils.errors import DataQualityError


@pytest.fixture
def mixture_totals(rng):
    """5000 个低计数条码 + 500 个细胞的总计数"""
    empties = rng.lognormal(np.log(30), 0.6, size=5000)
    cells = rng.lognormal(np.log(5000), 0.5, size=500)
    return np.round(np.r_[empties, cells])


def test_knee_not_below_inflection(mixture_totals):
    ranks = barcode_ranks(mixture_totals, lower=100)
    assert ranks.knee >= ranks.inflection
    assert ranks.inflection > 100
    assert ranks.knee <= mixture_totals.max()


def test_barcode_ranks_table(mixture_totals):
    ranks = barcode_ranks(mixture_totals, lower=100)
    table = ranks.table
    assert len(table) == len(mixture_totals)
    assert table['rank'].iloc[np.argmax(mixture_totals)] == 1
    # 排名与总计数单调相反
    order = np.argsort(-mixture_totals, kind='stable')
    assert np.all(np.diff(table['rank'].to_numpy()[order]) >= 0)


def test_barcode_ranks_average_ties():
    ranks = barcode_ranks(np.array([500, 400, 400, 300, 200, 10]), lower=100, exclude_from=1)
    np.testing.assert_allclose(ranks.table['rank'], [1, 2.5, 2.5, 4, 5, 6])


def test_barcode_ranks_too_few_points():
    with pytest.raises(DataQualityError):
        barcode_ranks(np.array([1000, 500, 20, 10]), lower=100)


def test_barcode_ranks_fit_bounds(mixture_totals):
    ranks = barcode_ranks(mixture_totals, lower=100, fit_bounds=(1000, 1e5))
    assert ranks.knee >= ranks.inflection
    assert 1000 < ranks.knee < 1e5


def test_barcode_ranks_fit_bounds_below_inflection(mixture_totals):
    # 范围内只有空液滴，knee 不能落在 inflection 之下
    with pytest.raises(DataQualityError):
        barcode_ranks(mixture_totals, lower=100, fit_bounds=(101, 200))


def test_barcode_ranks_from_adata(droplet_adata):
    ranks = barcode_ranks(droplet_adata, lower=100)
    assert list(ranks.table.index) == list(droplet_adata.obs_names)
    assert ranks.knee >= ranks.inflection


def test_good_turing_proportions():
    counts = np.array([10, 5, 1, 1, 2, 0, 0, 3])
    prop = good_turing_proportions(counts)
    assert prop.sum() == pytest.approx(1.0)
    assert np.all(prop > 0)
    # 未观察到的基因平分未观察概率
    assert prop[5] == prop[6]
    assert prop[0] > prop[1] > prop[7]


def test_good_turing_all_zero():
    with pytest.raises(DataQualityError):
        good_turing_proportions(np.zeros(5))


def test_estimate_ambient_alpha_in_bounds(droplet_adata):
    X = droplet_adata.X[:90]
    prop = good_turing_proportions(np.asarray(X.sum(axis=0)).ravel())
    alpha = estimate_ambient_alpha(X, prop)
    assert 0.01 <= alpha <= 10000


def test_empty_drops_calls_cells(droplet_adata):
    results = empty_drops(droplet_adata, lower=100, niters=1000, random_state=42)
    status = classify_barcodes(results, fdr_threshold=0.01)

    truth = droplet_adata.obs['truth'].to_numpy()
    called = np.asarray(status) == 'cell'
    assert called.sum() == 10
    assert np.all(truth[called] == 'cell')


def test_empty_drops_untested_are_missing(droplet_adata):
    results = empty_drops(droplet_adata, lower=100, niters=200, random_state=1)
    low = results['Total'].to_numpy() <= 100

    assert results.loc[low, 'PValue'].isna().all()
    assert results.loc[low, 'FDR'].isna().all()
    assert results.loc[low, 'Limited'].isna().all()
    assert results.loc[~low, 'PValue'].notna().all()
    assert results['Limited'].dtype == 'boolean'
    assert set(np.asarray(classify_barcodes(results))[low]) == {'untested'}


def test_empty_drops_pvalue_bounds(droplet_adata):
    results = empty_drops_pvalues(droplet_adata, lower=100, niters=500, random_state=3)
    tested = results['PValue'].dropna()
    assert (tested >= 1 / 501).all()
    assert (tested <= 1).all()
    # 迭代次数限制了最小 p 值
    limited = results['Limited'].fillna(False).to_numpy(dtype=bool)
    np.testing.assert_allclose(results['PValue'].to_numpy()[limited], 1 / 501)
    assert results.attrs['niters'] == 500


def test_empty_drops_reproducible_across_jobs(droplet_adata):
    one = empty_drops_pvalues(droplet_adata, lower=100, niters=2000, random_state=7, n_jobs=1)
    two = empty_drops_pvalues(droplet_adata, lower=100, niters=2000, random_state=7, n_jobs=2)
    pd.testing.assert_frame_equal(one, two)


def test_empty_drops_test_ambient(droplet_adata):
    results = empty_drops_pvalues(droplet_adata, lower=100, niters=100, test_ambient=True, random_state=0)
    nonzero = results['Total'] > 0
    assert results.loc[nonzero, 'PValue'].notna().all()


def test_empty_drops_ignore(droplet_adata):
    results = empty_drops_pvalues(droplet_adata, lower=100, niters=100, ignore=10 ** 6, random_state=0)
    assert results['PValue'].isna().all()


def test_empty_drops_multinomial(droplet_adata):
    results = empty_drops_pvalues(droplet_adata, lower=100, niters=200, alpha=np.inf, random_state=0)
    assert results.attrs['alpha'] == np.inf
    assert results['PValue'].notna().sum() == 10


def test_retain_sets_pvalue_zero_for_fdr(droplet_adata):
    results = empty_drops(droplet_adata, lower=100, retain=0, niters=100, random_state=0)
    tested = results['PValue'].notna()
    assert (results.loc[tested, 'FDR'] == 0).all()
    assert results.attrs['retain'] == 0


def test_classify_limited():
    results = pd.DataFrame({
        'FDR': [0.001, 0.5, 0.5, np.nan],
        'Limited': pd.array([True, True, False, pd.NA], dtype='boolean')
    })
    status = classify_barcodes(results, fdr_threshold=0.01)
    assert list(status) == ['cell', 'limited', 'empty', 'untested']


def test_classify_threshold_is_strict():
    results = pd.DataFrame({
        'FDR': [0.0, 0.01, 0.0099],
        'Limited': pd.array([False, False, False], dtype='boolean')
    })
    status = classify_barcodes(results, fdr_threshold=0.01)
    assert list(status) == ['cell', 'empty', 'cell']


def test_call_cells(tmp_path, droplet_adata):
    obs_before = list(droplet_adata.obs.columns)
    cells, results = call_cells(
        droplet_adata, lower=100, niters=500, random_state=0, output_dir=str(tmp_path)
    )
    assert cells.n_obs == 10
    assert (cells.obs['cell_call'] == 'cell').all()
    assert 'empty_drops_fdr' in cells.obs
    assert cells.uns['cell_calling']['n_cells'] == 10
    assert cells.uns['cell_calling']['knee'] >= cells.uns['cell_calling']['inflection']
    assert len(results) == droplet_adata.n_obs
    assert (tmp_path / 'cell_calling' / 'barcode_rank.png').exists()
    # 输入数据不被修改
    assert list(droplet_adata.obs.columns) == obs_before
    assert 'cell_calling' not in droplet_adata.uns


def test_plot_barcode_ranks(tmp_path, mixture_totals):
    ranks = barcode_ranks(mixture_totals, lower=100)
    status = np.where(mixture_totals > ranks.inflection, 'cell', 'untested')
    out = tmp_path / 'rank.png'
    plot_barcode_ranks(ranks, str(out), status=status)
    assert out.exists()

"""
Tests for the per-taxon negative-binomial likelihood-ratio test.
"""
# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging

# Third-Party Imports
import numpy as np
import pandas as pd
import pytest
from statsmodels.stats.multitest import multipletests

# Local Imports
from conftest import make_table
from eda_16s.errors import ConvergenceWarning, StructuralError
from eda_16s.stats import differential_abundance as da_module
from eda_16s.stats.differential_abundance import (
    RESULT_COLUMNS, adjust_pvalues, build_design, differential_abundance,
    estimate_size_factors, significant_taxa
)

# ==================================== FIXTURES ====================================== #

@pytest.fixture
def da_results(da_table):
    with pytest.warns(ConvergenceWarning):
        return differential_abundance(da_table, verbose=False)

# ================================== SIZE FACTORS ==================================== #

def test_size_factors_follow_depth():
    counts = pd.DataFrame(
        {'t1': [10, 20, 40], 't2': [5, 10, 20], 't3': [0, 3, 6]},
        index=['s1', 's2', 's3']
    )
    for method in ('poscounts', 'ratio', 'total'):
        sf = estimate_size_factors(counts, method)
        assert np.exp(np.log(sf).mean()) == pytest.approx(1.0)
        assert sf['s2'] / sf['s1'] == pytest.approx(2.0, rel=0.2)
        assert sf['s3'] / sf['s2'] == pytest.approx(2.0, rel=0.2)


def test_ratio_size_factors_need_shared_taxa():
    counts = pd.DataFrame({'t1': [0, 2], 't2': [3, 0]}, index=['s1', 's2'])
    with pytest.raises(StructuralError, match="poscounts"):
        estimate_size_factors(counts, 'ratio')
    with pytest.raises(ValueError):
        estimate_size_factors(counts, 'upper-quartile')

# ===================================== DESIGN ======================================= #

def test_build_design_with_interaction(da_table):
    full, reduced = build_design(da_table.sample_metadata, 'treatment', 'treatment_days')
    # intercept + treatment + 2 time + 2 interaction
    assert full.shape[1] == 6
    assert reduced.shape[1] == 4
    assert any(':' in c for c in full.columns)
    assert not any(':' in c for c in reduced.columns)
    assert 'C(time)[T.7]' in full.columns


def test_build_design_orders_time_numerically():
    metadata = pd.DataFrame({
        'treatment': ['a', 'b'] * 3,
        'day': [14, 14, 2, 2, 7, 7],
    })
    full, _ = build_design(metadata, 'treatment', 'day')
    assert 'C(time)[T.7]' in full.columns
    assert 'C(time)[T.14]' in full.columns


def test_build_design_reference_level(da_table):
    full, _ = build_design(
        da_table.sample_metadata, 'treatment', None, treatment_reference='virus'
    )
    assert list(full.columns) == ['Intercept', 'C(treatment)[T.control]']
    with pytest.raises(StructuralError, match="Reference level"):
        build_design(da_table.sample_metadata, 'treatment', None, treatment_reference='mock')


def test_build_design_missing_column(da_table):
    with pytest.raises(StructuralError, match="not found"):
        build_design(da_table.sample_metadata, 'virus_status')

# ================================ DIFFERENTIAL TEST ================================= #

def test_results_cover_every_taxon(da_table, da_results):
    assert list(da_results.index) == list(da_table.taxon_ids)
    assert list(da_results.columns[:len(RESULT_COLUMNS)]) == RESULT_COLUMNS
    assert 'Phylum' in da_results.columns
    assert da_results.attrs['lfc_term'] == 'C(treatment)[T.virus]'


def test_constant_taxon_is_na_without_aborting(da_results):
    row = da_results.loc['const']
    assert np.isnan(row['pvalue']) or row['pvalue'] == 1.0
    assert not row['converged']
    assert row['note'] == 'constant counts'
    assert da_results.drop(index='const')['pvalue'].notna().all()


def test_interaction_taxon_is_significant(da_results):
    assert da_results.loc['t6', 'padj'] < 0.01
    assert da_results.loc['t6', 'stat'] > da_results.drop(index=['t6', 'const'])['stat'].max()


def test_padj_is_monotone_in_pvalue(da_results):
    tested = da_results.dropna(subset=['pvalue']).sort_values('pvalue')
    assert (np.diff(tested['padj'].values) >= -1e-12).all()
    assert (tested['padj'] >= tested['pvalue'] - 1e-12).all()


def test_adjust_pvalues_keeps_missing():
    pvalues = pd.Series([0.01, np.nan, 0.04, 0.03], index=list('abcd'))
    padj = adjust_pvalues(pvalues)
    assert np.isnan(padj['b'])
    assert padj['a'] == pytest.approx(0.03)
    assert padj['d'] == pytest.approx(0.04)
    assert padj['c'] == pytest.approx(0.04)


def test_significant_taxa_leaves_results_untouched(da_results):
    before = da_results.copy()
    hits = significant_taxa(da_results, alpha=0.05)

    assert 't6' in hits.index
    assert (hits['padj'] < 0.05).all()
    pd.testing.assert_frame_equal(da_results, before)


def test_threaded_fits_match_serial(da_table, da_results):
    with pytest.warns(ConvergenceWarning):
        threaded = differential_abundance(da_table, n_jobs=3, verbose=False)
    pd.testing.assert_frame_equal(threaded, da_results)


def test_treatment_only_design(da_table):
    with pytest.warns(ConvergenceWarning):
        results = differential_abundance(da_table, time_column=None, verbose=False)
    assert results.attrs['reduced_design'] == ['Intercept']
    assert results['pvalue'].notna().sum() == da_table.n_taxa - 1


def test_non_integer_counts_rejected(grouped_table):
    relative = grouped_table.with_counts(grouped_table.counts / 7.0)
    with pytest.raises(StructuralError, match="integer"):
        differential_abundance(relative, time_column=None, verbose=False)


def test_small_table_without_time():
    table = make_table(
        {f"s{i}": [10 + i, 30 - i, 5] for i in range(6)},
        metadata=pd.DataFrame(
            {'treatment': ['a', 'a', 'a', 'b', 'b', 'b']},
            index=[f"s{i}" for i in range(6)]
        )
    )
    with pytest.warns(ConvergenceWarning):
        results = differential_abundance(table, time_column=None, verbose=False)
    assert results.loc['t3', 'note'] == 'constant counts'
    assert results.loc[['t1', 't2'], 'pvalue'].between(0, 1).all()


def test_failed_fit_is_na_and_excluded_from_bh(da_table, monkeypatch):
    failing = da_table.counts['t3'].values.astype(float)
    glm = da_module.sm.GLM

    def glm_failing_on_t3(endog, exog, *args, **kwargs):
        if np.array_equal(np.asarray(endog, dtype=float), failing):
            raise np.linalg.LinAlgError("Singular matrix")
        return glm(endog, exog, *args, **kwargs)

    monkeypatch.setattr(da_module.sm, 'GLM', glm_failing_on_t3)
    with pytest.warns(ConvergenceWarning, match="2/7"):
        results = differential_abundance(da_table, verbose=False)

    row = results.loc['t3']
    assert row['note'].startswith('fit failed')
    assert 'Singular matrix' in row['note']
    assert not row['converged']
    assert np.isnan(row['pvalue']) and np.isnan(row['padj'])

    tested = results.drop(index=['t3', 'const'])
    assert tested['pvalue'].notna().all()
    assert tested['converged'].all()
    expected = multipletests(tested['pvalue'].values, method='fdr_bh')[1]
    np.testing.assert_allclose(tested['padj'].values, expected)


def test_summary_log_uses_given_alpha(da_table, caplog):
    with caplog.at_level(logging.INFO, logger='eda_16s'):
        with pytest.warns(ConvergenceWarning):
            results = differential_abundance(da_table, alpha=0.2, verbose=False)

    hits = int((results['padj'] < 0.2).sum())
    summary = [r.getMessage() for r in caplog.records if 'taxa tested' in r.getMessage()]
    assert summary == [f"Differential abundance: 6 taxa tested, {hits} with padj < 0.2"]

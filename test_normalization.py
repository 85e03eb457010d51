"""
Tests for the normalisation transforms and the prevalence estimator.
"""
# ===================================== IMPORTS ====================================== #

# Third-Party Imports
import numpy as np
import pandas as pd
import pytest

# Local Imports
from conftest import make_table
from eda_16s.errors import DivideByZeroError, EmptyInputError
from eda_16s.stats.prevalence import estimate, prevalence_table, summarize_by_rank
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.utils.normalization import (
    clr, log_shift, proportional_abundance, rarefy, relative_abundance
)
from eda_16s.utils.table_filtering import prune_empty_samples

# ================================== NORMALIZATION =================================== #

def test_relative_abundance_rows_sum_to_one(grouped_table):
    relative = relative_abundance(grouped_table)
    np.testing.assert_allclose(relative.sample_sums().values, 1.0, atol=1e-9)
    assert (relative.counts.values >= 0).all()


def test_relative_abundance_zero_row_raises(scenario_table):
    with pytest.raises(DivideByZeroError, match="B"):
        relative_abundance(scenario_table)
    with pytest.raises(ZeroDivisionError):
        proportional_abundance(scenario_table)


def test_transforms_leave_source_untouched(scenario_table):
    pruned = prune_empty_samples(scenario_table)
    before = pruned.counts
    relative = relative_abundance(pruned)
    logged = log_shift(pruned)

    pd.testing.assert_frame_equal(pruned.counts, before)
    assert relative.counts.loc['A', 't1'] == pytest.approx(10 / 15)
    assert logged.counts.loc['A', 't1'] == pytest.approx(np.log(11))


def test_proportional_abundance_scales_to_smallest_total(scenario_table):
    scaled = proportional_abundance(prune_empty_samples(scenario_table))
    # A = 15, C = 9
    np.testing.assert_allclose(scaled.sample_sums().values, [9.0, 9.0])
    assert scaled.counts.loc['A', 't1'] == pytest.approx(6.0)


def test_log_shift_keeps_zeros(scenario_table):
    logged = log_shift(scenario_table)
    assert (logged.counts.loc['B'] == 0).all()


def test_clr_rows_are_centred(grouped_table):
    transformed = clr(grouped_table)
    assert isinstance(transformed, pd.DataFrame)
    np.testing.assert_allclose(transformed.sum(axis=1).values, 0.0, atol=1e-9)


def test_rarefy_is_reproducible(grouped_table):
    first = rarefy(grouped_table, depth=60, seed=1)
    second = rarefy(grouped_table, depth=60, seed=1)

    assert first.equals(second)
    assert (first.sample_sums() == 60).all()
    assert (first.counts.values <= grouped_table.counts.loc[first.sample_ids].values).all()


def test_rarefy_drops_shallow_samples(grouped_table):
    # s2 has 62 reads; every other sample has at least 65
    rarefied = rarefy(grouped_table, depth=65)
    assert 's2' not in rarefied.sample_ids
    assert rarefied.n_samples == 7
    with pytest.raises(EmptyInputError):
        rarefy(grouped_table, depth=10_000)

# ==================================== PREVALENCE ==================================== #

def test_estimate_prevalence(scenario_table):
    result = estimate(scenario_table)
    assert result.loc['t1', 'prevalence'] == 2
    assert result.loc['t2', 'prevalence'] == 1
    assert result.loc['t3', 'total_abundance'] == 8


def test_estimate_without_samples_is_empty(scenario_table):
    empty = AbundanceTable(
        pd.DataFrame(columns=scenario_table.taxon_ids),
        scenario_table.sample_metadata.iloc[:0],
        scenario_table.taxon_lineage
    )
    result = estimate(empty)
    assert result.empty
    assert list(result.columns) == ['prevalence', 'total_abundance']


def test_prevalence_table_adds_fraction_and_lineage(scenario_table):
    table = prevalence_table(scenario_table)
    assert table.index[0] == 't1'
    assert table.loc['t2', 'prevalence_fraction'] == pytest.approx(1 / 3)
    assert table.loc['t1', 'Phylum'] == 'Firmicutes'


def test_summarize_by_rank():
    table = make_table(
        {'s1': [1, 0, 2], 's2': [1, 1, 0]},
        t3=['Bacteria', 'Proteobacteria', None, None, None, None, None],
    )
    summary = summarize_by_rank(table, 'Phylum')
    assert summary.loc['Firmicutes', 'n_taxa'] == 2
    assert summary.loc['Firmicutes', 'mean_prevalence'] == pytest.approx(1.5)
    assert summary.loc['Proteobacteria', 'total_abundance'] == 2

"""
Tests for PERMANOVA, PERMDISP and their combined group-significance record.
"""
# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging

# Third-Party Imports
import numpy as np
import pandas as pd
import pytest
from scipy.spatial.distance import pdist, squareform

# Local Imports
from eda_16s.diversity.beta_diversity import as_distance_matrix
from eda_16s.errors import StructuralError
from eda_16s.stats.permanova import group_significance, permanova, permdisp

# ==================================== FIXTURES ====================================== #

def _clusters(centre_b, spread_a, spread_b, n=6, seed=0):
    rng = np.random.default_rng(seed)
    points = np.vstack([
        rng.normal(0.0, spread_a, size=(n, 2)),
        rng.normal(centre_b, spread_b, size=(n, 2)),
    ])
    ids = [f"s{i}" for i in range(2 * n)]
    grouping = pd.Series(['a'] * n + ['b'] * n, index=ids)
    return as_distance_matrix(squareform(pdist(points)), ids=ids), grouping


@pytest.fixture
def separated():
    """Two tight clusters far apart."""
    return _clusters(centre_b=10.0, spread_a=1.0, spread_b=1.0)


@pytest.fixture
def unequal_spread():
    """Same centre, very different within-group spread."""
    return _clusters(centre_b=0.0, spread_a=0.1, spread_b=10.0)

# ==================================== PERMANOVA ===================================== #

def test_permanova_detects_separation(separated):
    dm, grouping = separated
    result = permanova(dm, grouping, permutations=999, seed=1)

    assert result['test statistic'] > 10
    assert 0 < result['R2'] <= 1
    assert result['p-value'] < 0.05
    assert result['number of permutations'] == 999


def test_permanova_r2_is_between_group_share(separated):
    dm, grouping = separated
    result = permanova(dm, grouping, permutations=0)

    d2 = dm.data ** 2
    n = d2.shape[0]
    ss_total = d2[np.triu_indices(n, 1)].sum() / n
    ss_within = 0.0
    for group in ('a', 'b'):
        members = [list(dm.ids).index(i) for i in grouping.index[grouping == group]]
        block = d2[np.ix_(members, members)]
        ss_within += block[np.triu_indices(len(members), 1)].sum() / len(members)

    assert result['R2'] == pytest.approx(1 - ss_within / ss_total)
    assert np.isnan(result['p-value'])


def test_permanova_is_reproducible(separated):
    dm, grouping = separated
    first = permanova(dm, grouping, permutations=199, seed=5)
    second = permanova(dm, grouping, permutations=199, seed=5)

    assert first['p-value'] == second['p-value']


def test_grouping_series_is_aligned_by_id(separated):
    dm, grouping = separated
    shuffled = grouping.sample(frac=1.0, random_state=0)
    a = permanova(dm, grouping, permutations=0)
    b = permanova(dm, shuffled, permutations=0)
    assert a['test statistic'] == pytest.approx(b['test statistic'])


def test_grouping_errors(separated):
    dm, grouping = separated
    with pytest.raises(StructuralError, match="no group"):
        permanova(dm, grouping.iloc[:-1], permutations=0)
    with pytest.raises(ValueError, match="2 groups"):
        permanova(dm, pd.Series('a', index=grouping.index), permutations=0)

# ===================================== PERMDISP ===================================== #

def test_permdisp_detects_unequal_spread(unequal_spread):
    dm, grouping = unequal_spread
    result = permdisp(dm, grouping, permutations=999, seed=2)
    assert result['p-value'] < 0.05
    assert result['method name'] == 'PERMDISP'


def test_group_significance_flags_heterogeneous_dispersion(unequal_spread, caplog):
    dm, grouping = unequal_spread
    with caplog.at_level(logging.WARNING, logger='eda_16s'):
        result = group_significance(dm, grouping, permutations=499, seed=3)

    assert bool(result['dispersion_heterogeneous']) is True
    assert {'permanova_F', 'permanova_R2', 'permanova_p', 'permdisp_F', 'permdisp_p'} <= set(result.index)
    assert any('dispersions differ' in r.getMessage() for r in caplog.records)


def test_group_significance_homogeneous(separated):
    dm, grouping = separated
    result = group_significance(dm, grouping, permutations=199, seed=3, dispersion_alpha=0.0)
    assert bool(result['dispersion_heterogeneous']) is False
    assert result['permanova_p'] < 0.05

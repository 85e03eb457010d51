"""
Shared synthetic fixtures for the eda_16s tests.
"""
# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import itertools

# Third-Party Imports
import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable

# ==================================== HELPERS ======================================= #

def make_lineage(taxa, **overrides):
    """Bacteria / Firmicutes lineage for every taxon; ``overrides`` maps a taxon
    id to a full list of rank labels."""
    rows = {
        t: overrides.get(t, ['Bacteria', 'Firmicutes', 'Bacilli', 'Lactobacillales',
                             'Lactobacillaceae', 'Lactobacillus', None])
        for t in taxa
    }
    return pd.DataFrame.from_dict(rows, orient='index', columns=constants.RANKS)


def make_table(counts: dict, metadata: pd.DataFrame = None, **lineage_overrides):
    """Build an ``AbundanceTable`` from ``{sample_id: [counts...]}`` with taxa
    ``t1, t2, ...``."""
    n_taxa = len(next(iter(counts.values())))
    taxa = [f"t{i + 1}" for i in range(n_taxa)]
    df = pd.DataFrame.from_dict(counts, orient='index', columns=taxa)
    if metadata is None:
        metadata = pd.DataFrame({'group': ['g'] * len(df)}, index=df.index)
    return AbundanceTable(df, metadata, make_lineage(taxa, **lineage_overrides))

# ==================================== FIXTURES ====================================== #

@pytest.fixture
def scenario_table():
    """Samples A, B (empty) and C over taxa t1-t3."""
    return make_table({'A': [10, 0, 5], 'B': [0, 0, 0], 'C': [3, 3, 3]})


@pytest.fixture
def grouped_table():
    """Eight samples in two treatment groups, four taxa."""
    counts = {
        's1': [50, 10, 0, 5], 's2': [45, 12, 1, 4], 's3': [55, 8, 0, 6], 's4': [60, 11, 2, 3],
        's5': [5, 40, 30, 5], 's6': [4, 38, 25, 6], 's7': [6, 45, 28, 4], 's8': [3, 42, 33, 5],
    }
    metadata = pd.DataFrame(
        {
            'treatment': ['control'] * 4 + ['virus'] * 4,
            'raw_id': [f"R{i}" for i in range(1, 9)],
        },
        index=list(counts)
    )
    return make_table(counts, metadata)


@pytest.fixture
def tree():
    """Balanced rooted tree over t1-t4, every branch of length 1."""
    return TreeNode.read(["((t1:1,t2:1):1,(t3:1,t4:1):1);"], format="newick")


@pytest.fixture
def da_table():
    """Treatment × time design (2 × 3, four replicates) with negative-binomial
    counts.

    ``t1``-``t5`` have no effect, ``t6`` rises 20-fold in the virus group at
    day 14 only (an interaction), and ``const`` is identical in every sample.
    """
    rng = np.random.default_rng(7)
    cells = list(itertools.product(['control', 'virus'], [0, 7, 14], range(4)))
    samples = [f"{trt}_{day}_{rep}" for trt, day, rep in cells]
    metadata = pd.DataFrame(
        {
            'treatment': [trt for trt, _, _ in cells],
            'treatment_days': [day for _, day, _ in cells],
        },
        index=samples
    )
    depth = rng.uniform(0.7, 1.3, size=len(samples))

    def nb(mean, dispersion=0.1):
        n = 1.0 / dispersion
        return rng.negative_binomial(n, n / (n + mean))

    counts = {}
    for t in range(1, 6):
        counts[f"t{t}"] = [nb(80 * d) for d in depth]
    counts['t6'] = [
        nb(40 * d * (20 if trt == 'virus' and day == 14 else 1))
        for (trt, day, _), d in zip(cells, depth)
    ]
    counts['const'] = [5] * len(samples)
    df = pd.DataFrame(counts, index=samples)
    return AbundanceTable(df, metadata, make_lineage(df.columns))

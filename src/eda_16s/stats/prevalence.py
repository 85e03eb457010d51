# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging

# Third-Party Imports
import pandas as pd

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ==================================== FUNCTIONS ===================================== #

def estimate(table: AbundanceTable) -> pd.DataFrame:
    """Per-taxon prevalence (number of samples with a non-zero count) and total
    abundance (sum over samples).

    A table without samples gives an empty frame.
    """
    if table.n_samples == 0:
        empty = pd.DataFrame(columns=['prevalence', 'total_abundance'])
        empty.index.name = 'taxon_id'
        return empty
    counts = table.counts
    result = pd.DataFrame({
        'prevalence': (counts > 0).sum(axis=0).astype(int),
        'total_abundance': counts.sum(axis=0),
    })
    result.index.name = 'taxon_id'
    return result


def prevalence_table(table: AbundanceTable) -> pd.DataFrame:
    """``estimate`` plus the prevalence fraction and the lineage columns, sorted
    by prevalence then total abundance."""
    result = estimate(table)
    if result.empty:
        return result.join(table.taxon_lineage)
    result['prevalence_fraction'] = result['prevalence'] / table.n_samples
    result = result.join(table.taxon_lineage)
    return result.sort_values(['prevalence', 'total_abundance'], ascending=False)


def summarize_by_rank(table: AbundanceTable, rank: str = 'Phylum') -> pd.DataFrame:
    """Mean and total prevalence of the taxa in each ``rank`` group.

    Used to spot groups seen in only a handful of samples before choosing a
    prevalence threshold.
    """
    result = estimate(table).join(table.taxon_lineage[[rank]])
    result[rank] = result[rank].fillna('Unassigned')
    summary = result.groupby(rank).agg(
        n_taxa=('prevalence', 'size'),
        mean_prevalence=('prevalence', 'mean'),
        total_prevalence=('prevalence', 'sum'),
        total_abundance=('total_abundance', 'sum'),
    )
    return summary.sort_values('total_abundance', ascending=False)

# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from typing import List, Sequence, Union

# Third-Party Imports
import numpy as np
import pandas as pd
from scipy.stats import kruskal, mannwhitneyu
from skbio.diversity import alpha
from statsmodels.stats.multitest import multipletests

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ================================= DEFAULT VALUES =================================== #

DEFAULT_ALPHA_METRICS = ['observed', 'shannon', 'simpson']

ArrayLike = Union[Sequence[float], np.ndarray, pd.Series]

# ==================================== FUNCTIONS ===================================== #

def _as_row(sample_row: ArrayLike) -> np.ndarray:
    row = np.asarray(sample_row, dtype=float)
    if row.ndim != 1:
        raise ValueError("Expected a single sample (1-D) row")
    if (row < 0).any():
        raise ValueError("Abundances must be non-negative")
    return row


def observed_richness(sample_row: ArrayLike) -> int:
    """Number of taxa with a non-zero count."""
    return int(np.count_nonzero(_as_row(sample_row)))


def shannon_index(sample_row: ArrayLike) -> float:
    """Shannon diversity ``-Σ p_i ln(p_i)`` over the sample's proportions.

    Absent taxa do not contribute; an all-zero sample has index 0.
    """
    row = _as_row(sample_row)
    total = row.sum()
    if total == 0:
        return 0.0
    return float(alpha.shannon(row / total, base=np.e))


def simpson_index(sample_row: ArrayLike) -> float:
    """Gini-Simpson index ``1 - Σ p_i²``."""
    row = _as_row(sample_row)
    total = row.sum()
    if total == 0:
        return 0.0
    return float(alpha.simpson(row / total))


_METRICS = {
    'observed': observed_richness,
    'shannon': shannon_index,
    'simpson': simpson_index,
}


def alpha_diversity(
    table: AbundanceTable,
    metrics: List[str] = DEFAULT_ALPHA_METRICS
) -> pd.DataFrame:
    """Alpha diversity per sample.

    Should be run on raw (unrarefied, unfiltered by prevalence) counts:
    richness estimates depend on singletons.

    Args:
        table:   Abundance table.
        metrics: Any of ``observed``, ``shannon``, ``simpson``.

    Returns:
        DataFrame (samples × metrics).
    """
    unknown = set(metrics) - set(_METRICS)
    if unknown:
        raise ValueError(f"Unknown alpha metric(s): {sorted(unknown)}")
    counts = table.counts
    results = pd.DataFrame(index=counts.index)
    for metric in metrics:
        func = _METRICS[metric]
        results[metric] = [func(row) for row in counts.values]
    return results


def compare_alpha_diversity(
    alpha_df: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str
) -> pd.DataFrame:
    """Test each alpha metric for differences between the groups of
    ``group_column``.

    Two groups use a two-sided Mann-Whitney U test, more use Kruskal-Wallis.
    P-values are BH-adjusted across metrics.

    Returns:
        DataFrame indexed by metric with ``test``, ``statistic``, ``p_value``,
        ``p_adj`` and per-group medians.
    """
    if group_column not in metadata.columns:
        raise ValueError(f"Group column '{group_column}' not found in metadata")
    common = alpha_df.index.intersection(metadata.index)
    groups = metadata.loc[common, group_column].dropna()
    levels = sorted(groups.unique(), key=str)
    if len(levels) < 2:
        raise ValueError(f"Need at least 2 groups in '{group_column}', found {len(levels)}")

    rows = []
    for metric in alpha_df.columns:
        values = [alpha_df.loc[groups.index[groups == g], metric].values for g in levels]
        if len(levels) == 2:
            test = 'mann-whitney-u'
            stat, p = mannwhitneyu(values[0], values[1], alternative='two-sided')
        else:
            test = 'kruskal-wallis'
            stat, p = kruskal(*values)
        row = {'metric': metric, 'test': test, 'statistic': stat, 'p_value': p}
        row.update({f"median_{g}": float(np.median(v)) for g, v in zip(levels, values)})
        rows.append(row)

    results = pd.DataFrame(rows).set_index('metric')
    results['p_adj'] = multipletests(results['p_value'], method='fdr_bh')[1]
    logger.debug(f"Alpha diversity comparison by '{group_column}':\n{results}")
    return results

# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from typing import Optional

# Third-Party Imports
import numpy as np
import pandas as pd
from skbio.stats.composition import clr as CLR

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.errors import DivideByZeroError, EmptyInputError

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ================================== NORMALIZATION =================================== #

def _nonzero_sums(table: AbundanceTable, step: str) -> pd.Series:
    sums = table.sample_sums()
    empty = sums.index[sums == 0]
    if len(empty):
        raise DivideByZeroError(step, empty)
    return sums


def relative_abundance(table: AbundanceTable) -> AbundanceTable:
    """Divide every count by its sample total so each row sums to 1.

    Raises:
        DivideByZeroError: If any sample has a zero total.
    """
    sums = _nonzero_sums(table, 'relative_abundance')
    return table.with_counts(table.counts.astype(float).div(sums, axis=0))


def proportional_abundance(table: AbundanceTable) -> AbundanceTable:
    """Scale every sample to the smallest sample total in the table.

    Rows are divided by their own total and multiplied by the minimum total,
    which keeps values on a count-like scale without rarefying.

    Raises:
        DivideByZeroError: If any sample has a zero total.
    """
    sums = _nonzero_sums(table, 'proportional_abundance')
    scaled = table.counts.astype(float).div(sums, axis=0) * sums.min()
    return table.with_counts(scaled)


def log_shift(table: AbundanceTable) -> AbundanceTable:
    """``log(1 + x)`` applied cell-wise."""
    return table.with_counts(np.log1p(table.counts.astype(float)))


def clr(table: AbundanceTable, pseudocount: float = 1.0) -> pd.DataFrame:
    """Centred log-ratio transform after adding ``pseudocount`` to every cell.

    The result can be negative, so it is returned as a plain DataFrame rather
    than an ``AbundanceTable``.
    """
    counts = table.counts.astype(float) + pseudocount
    return pd.DataFrame(CLR(counts.values), index=counts.index, columns=counts.columns)


def rarefy(
    table: AbundanceTable,
    depth: Optional[int] = None,
    seed: int = constants.DEFAULT_RANDOM_STATE
) -> AbundanceTable:
    """Subsample every sample without replacement to ``depth`` reads.

    ``depth`` defaults to the smallest sample total. Samples below ``depth``
    are dropped. One generator seeded with ``seed`` is used for all samples, so
    the result is reproducible.

    Raises:
        EmptyInputError: If every sample is below ``depth``.
    """
    counts = table.counts
    if not np.allclose(counts.values, np.round(counts.values)):
        raise ValueError("rarefy requires integer counts")
    counts = counts.round().astype(np.int64)
    sums = counts.sum(axis=1)
    if depth is None:
        depth = int(sums.min())
    depth = int(depth)

    dropped = sums.index[sums < depth]
    if len(dropped):
        logger.info(f"Rarefying to {depth}: dropping {len(dropped)} sample(s) below depth")
    counts = counts.loc[sums >= depth]
    if counts.empty:
        raise EmptyInputError('rarefy', 'samples', f"depth={depth}")

    rng = np.random.default_rng(seed)
    rarefied = np.vstack([
        rng.multivariate_hypergeometric(row, depth) for row in counts.values
    ])
    result = pd.DataFrame(rarefied, index=counts.index, columns=counts.columns)
    return table.subset(samples=counts.index).with_counts(result)

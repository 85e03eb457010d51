# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from typing import Dict, List, Optional, Union

# Third-Party Imports
import pandas as pd
from biom import Table

# Local Imports
from eda_16s import constants
from eda_16s.utils.taxonomy_utils import parse_lineage

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ================================ TABLE CONVERSION ================================== #

def table_to_df(table: Union[Dict, Table, pd.DataFrame]) -> pd.DataFrame:
    """Convert various table formats to samples × features DataFrame.

    Handles:
    - Pandas DataFrame (returns unchanged)
    - BIOM Table (transposes to samples × features)
    - Dictionary of {sample_id: {feature: count}} (converts to DataFrame)

    Args:
        table: Input table in various formats.

    Returns:
        DataFrame in samples × features orientation.

    Raises:
        TypeError: For unsupported input types
    """
    if isinstance(table, pd.DataFrame):  # samples × features
        return table
    if isinstance(table, Table):         # features × samples
        return table.to_dataframe(dense=True).T
    if isinstance(table, dict):          # samples × features
        return pd.DataFrame.from_dict(table, orient='index').fillna(0)
    raise TypeError("Input must be BIOM Table, dict, or DataFrame.")


def to_biom(
    table: Union[dict, Table, pd.DataFrame],
    observation_metadata: Optional[List[Dict]] = None
) -> Table:
    """Convert various table formats to BIOM Table with features × samples
    orientation.

    Args:
        table:                Input table in various formats.
        observation_metadata: Optional per-feature metadata, in column order.

    Returns:
        BIOM Table object.

    Raises:
        TypeError: For unsupported input types.
    """
    if isinstance(table, Table):
        return table
    df = table_to_df(table)
    return Table(
        df.values.T,
        observation_ids=[str(c) for c in df.columns],
        sample_ids=[str(i) for i in df.index],
        observation_metadata=observation_metadata
    )


def lineage_from_biom(table: Table, ranks: List[str] = constants.RANKS) -> pd.DataFrame:
    """Extract a taxon × rank lineage frame from BIOM observation metadata.

    Expects the usual ``taxonomy`` key holding either a list of rank labels or a
    ``;``-delimited string. Features without metadata get an all-missing lineage.
    """
    rows = {}
    for obs_id in table.ids(axis='observation'):
        md = table.metadata(obs_id, axis='observation') or {}
        rows[obs_id] = parse_lineage(md.get('taxonomy'), ranks)
    return pd.DataFrame.from_dict(rows, orient='index', columns=ranks)

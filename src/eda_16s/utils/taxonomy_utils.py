# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

# Third-Party Imports
import pandas as pd

# Local Imports
from eda_16s import constants

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ==================================== FUNCTIONS ===================================== #

def _clean_label(label) -> Optional[str]:
    if label is None:
        return None
    label = str(label).strip()
    if label.lower() in constants.UNASSIGNED_LABELS:
        return None
    return label


def parse_lineage(
    value: Union[str, Iterable[str], None],
    ranks: List[str] = constants.RANKS
) -> List[Optional[str]]:
    """Split a taxonomy assignment into one label per rank.

    Accepts ``'k__Bacteria; p__Firmicutes; ...'`` / ``'d__Bacteria;p__...'``
    strings, unprefixed ``;``-delimited strings, or lists of labels. Prefixed
    labels are placed by prefix so skipped ranks stay empty; an empty label
    (``'g__'``) becomes ``None``.

    Args:
        value: Raw taxonomy string or list of labels.
        ranks: Rank names, in order.

    Returns:
        List of labels aligned to ``ranks``.
    """
    lineage: List[Optional[str]] = [None] * len(ranks)
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return lineage

    parts = value.split(';') if isinstance(value, str) else list(value)
    for position, part in enumerate(parts):
        part = str(part).strip()
        rank_idx = position
        if len(part) >= 3 and part[1:3] == '__' and part[0].lower() in constants.RANK_PREFIXES:
            rank_name = constants.RANK_PREFIXES[part[0].lower()]
            if rank_name in ranks:
                rank_idx = ranks.index(rank_name)
            part = part[3:]
        if rank_idx < len(ranks):
            lineage[rank_idx] = _clean_label(part)
    return lineage


def lineage_string(lineage: Union[pd.Series, List[Optional[str]]]) -> str:
    """Join the assigned ranks of a lineage with ``'; '`` (empty ranks skipped)."""
    labels = list(lineage.values) if isinstance(lineage, pd.Series) else list(lineage)
    return "; ".join(str(l) for l in labels if l is not None and not pd.isna(l))

# ================================== TAXONOMY CLASS ================================== #

class Taxonomy:
    """
    Handler for taxonomic classification data.

    Attributes:
        taxonomy (pd.DataFrame): Parsed taxonomy indexed by feature id with
            columns ``taxonomy`` (raw string), ``confidence`` (if present) and
            one column per rank (Kingdom to Species).
    """

    def __init__(self, tsv_path: Union[str, Path]) -> None:
        self.taxonomy: pd.DataFrame = self._import_taxonomy_tsv(tsv_path)

    def _import_taxonomy_tsv(self, tsv_path: Union[str, Path]) -> pd.DataFrame:
        tsv_path = Path(tsv_path)
        if not tsv_path.exists():
            raise FileNotFoundError(f"Taxonomy file not found: {tsv_path}")
        df = pd.read_csv(tsv_path, sep='\t', dtype=str)
        df = df.rename(columns={
            'Feature ID': 'id',
            'Taxon': 'taxonomy',
            'Consensus': 'confidence',
            'Confidence': 'confidence'
        }).set_index('id')
        if df.index.duplicated().any():
            dupes = df.index[df.index.duplicated()].unique().tolist()
            logger.warning(f"Dropping {len(dupes)} duplicated taxonomy ids: {dupes[:5]}")
            df = df[~df.index.duplicated(keep='first')]

        ranks = pd.DataFrame(
            [parse_lineage(t) for t in df['taxonomy']],
            index=df.index,
            columns=constants.RANKS
        )
        return pd.concat([df, ranks], axis=1)

    @property
    def lineage(self) -> pd.DataFrame:
        """Taxon × rank frame, the shape expected by ``AbundanceTable``."""
        return self.taxonomy[constants.RANKS].copy()

# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from typing import Any, Callable, Iterable, List, Optional

# Third-Party Imports
import pandas as pd

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.errors import EmptyInputError

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

MetadataPredicate = Callable[[pd.Series], bool]
LineagePredicate = Callable[[pd.Series], bool]

# =============================== HELPER FUNCTIONS ==================================== #

def _check_not_empty(table: AbundanceTable, step: str, detail: Optional[str] = None) -> AbundanceTable:
    if table.n_samples == 0:
        raise EmptyInputError(step, 'samples', detail)
    if table.n_taxa == 0:
        raise EmptyInputError(step, 'taxa', detail)
    return table


def _norm(label: Any) -> Optional[str]:
    if label is None or pd.isna(label):
        return None
    return str(label).strip().lower()

# ================================ SAMPLE FILTERING ================================== #

def filter_samples(table: AbundanceTable, predicate: MetadataPredicate) -> AbundanceTable:
    """Keep the samples whose metadata record satisfies ``predicate``.

    Taxa left empty by the removal are *not* pruned; call ``prune_empty_taxa``
    afterwards when needed.

    Raises:
        EmptyInputError: If no sample passes.
    """
    metadata = table.sample_metadata
    keep = [sid for sid, record in metadata.iterrows() if bool(predicate(record))]
    logger.info(f"Sample filter kept {len(keep)}/{table.n_samples} samples")
    return _check_not_empty(table.subset(samples=keep), 'filter_samples')


def filter_by_min_depth(table: AbundanceTable, threshold: float) -> AbundanceTable:
    """Drop samples whose total read count is below ``threshold``.

    There is no default: the threshold has to be chosen against the study
    (record it next to the call). Samples exactly at the threshold are kept.
    """
    depth = table.sample_sums()
    dropped = depth.index[depth < threshold]
    if len(dropped):
        logger.info(
            f"Dropping {len(dropped)} sample(s) below depth {threshold}: "
            f"{', '.join(dropped[:10])}"
        )
    return _check_not_empty(
        table.subset(samples=depth.index[depth >= threshold]),
        'filter_by_min_depth', f"threshold={threshold}"
    )


def depth_and_exclusion_predicate(
    table: AbundanceTable,
    min_depth: Optional[float] = None,
    exclude_ids: Optional[Iterable[str]] = None,
    id_column: Optional[str] = None
) -> MetadataPredicate:
    """Build an outlier rule: a sample passes if its depth is at least
    ``min_depth`` and it is not on the explicit exclusion list.

    ``exclude_ids`` are matched against the sample id, or against the metadata
    column ``id_column`` (e.g. the raw sample id) when given.
    """
    depth = table.sample_sums()
    excluded = {str(i) for i in (exclude_ids or [])}

    def predicate(record: pd.Series) -> bool:
        key = str(record[id_column]) if id_column else str(record.name)
        if key in excluded:
            return False
        return min_depth is None or depth.loc[record.name] >= min_depth

    return predicate


def filter_outliers(
    table: AbundanceTable,
    min_depth: Optional[float] = None,
    exclude_ids: Optional[Iterable[str]] = None,
    id_column: Optional[str] = None
) -> AbundanceTable:
    """Apply ``depth_and_exclusion_predicate`` as a sample filter."""
    logger.info(
        f"Outlier rule: min_depth={min_depth}, {len(list(exclude_ids or []))} excluded id(s)"
    )
    return filter_samples(
        table, depth_and_exclusion_predicate(table, min_depth, exclude_ids, id_column)
    )


def metadata_equals(column: str, value: Any) -> MetadataPredicate:
    return lambda record: record.get(column) == value


def metadata_in(column: str, values: Iterable[Any]) -> MetadataPredicate:
    values = list(values)
    return lambda record: record.get(column) in values

# ================================= TAXON FILTERING ================================== #

def filter_by_lineage(table: AbundanceTable, predicate: LineagePredicate) -> AbundanceTable:
    """Keep the taxa whose lineage record satisfies ``predicate``.

    Raises:
        EmptyInputError: If no taxon passes.
    """
    lineage = table.taxon_lineage
    keep = [tid for tid, record in lineage.iterrows() if bool(predicate(record))]
    logger.info(f"Lineage filter kept {len(keep)}/{table.n_taxa} taxa")
    return _check_not_empty(table.subset(taxa=keep), 'filter_by_lineage')


def exclude_rank_values(rank: str, values: Iterable[str]) -> LineagePredicate:
    """Lineage predicate rejecting taxa whose ``rank`` label is in ``values``
    (case-insensitive). Unassigned ranks pass."""
    blocked = {_norm(v) for v in values}

    def predicate(record: pd.Series) -> bool:
        return _norm(record.get(rank)) not in blocked

    return predicate


def require_rank_value(rank: str, value: str) -> LineagePredicate:
    """Lineage predicate accepting only taxa assigned ``value`` at ``rank``."""
    wanted = _norm(value)
    return lambda record: _norm(record.get(rank)) == wanted


def all_of(*predicates: LineagePredicate) -> LineagePredicate:
    return lambda record: all(p(record) for p in predicates)


def default_contaminant_predicate(
    kingdom: Optional[str] = constants.DEFAULT_KINGDOM,
    exclude: Optional[dict] = None
) -> LineagePredicate:
    """Bacteria only; no mitochondria (Family) and no chloroplasts (Class or
    Order) unless ``exclude`` maps ranks to other labels."""
    if exclude is None:
        exclude = {
            'Family': constants.DEFAULT_EXCLUDED_FAMILIES,
            'Class': constants.DEFAULT_EXCLUDED_CLASSES,
            'Order': constants.DEFAULT_EXCLUDED_ORDERS,
        }
    predicates: List[LineagePredicate] = []
    if kingdom:
        predicates.append(require_rank_value('Kingdom', kingdom))
    predicates.extend(exclude_rank_values(rank, values) for rank, values in exclude.items())
    return all_of(*predicates)


def prune_empty_taxa(table: AbundanceTable) -> AbundanceTable:
    """Remove taxa with zero counts in every sample."""
    sums = table.taxon_sums()
    n_empty = int((sums == 0).sum())
    if n_empty:
        logger.debug(f"Pruning {n_empty} empty taxa")
    return _check_not_empty(table.subset(taxa=sums.index[sums > 0]), 'prune_empty_taxa')


def prune_empty_samples(table: AbundanceTable) -> AbundanceTable:
    """Remove samples with zero counts for every taxon."""
    sums = table.sample_sums()
    empty = sums.index[sums == 0]
    if len(empty):
        logger.debug(f"Pruning {len(empty)} empty samples: {', '.join(empty[:10])}")
    return _check_not_empty(table.subset(samples=sums.index[sums > 0]), 'prune_empty_samples')


def filter_by_prevalence(table: AbundanceTable, min_fraction_of_samples: float) -> AbundanceTable:
    """Keep taxa detected (count > 0) in at least
    ``min_fraction_of_samples * n_samples`` samples; the boundary is inclusive.

    Not applied by default: low-prevalence taxa may be the pathogens of interest,
    so callers opt in explicitly.
    """
    if not 0 <= min_fraction_of_samples <= 1:
        raise ValueError(
            f"min_fraction_of_samples must be in [0, 1], got {min_fraction_of_samples}"
        )
    counts = table.counts
    prevalence = (counts > 0).sum(axis=0)
    min_samples = min_fraction_of_samples * table.n_samples
    # Tolerate float error when the product is meant to be an integer
    keep = prevalence.index[prevalence >= min_samples - 1e-9]
    logger.info(
        f"Prevalence filter (≥{min_fraction_of_samples:.2%} of {table.n_samples} samples) "
        f"kept {len(keep)}/{table.n_taxa} taxa"
    )
    return _check_not_empty(
        table.subset(taxa=keep), 'filter_by_prevalence',
        f"min_fraction_of_samples={min_fraction_of_samples}"
    )


def filter_by_total_abundance(table: AbundanceTable, min_total: float) -> AbundanceTable:
    """Keep taxa whose summed count over all samples is at least ``min_total``."""
    sums = table.taxon_sums()
    keep = sums.index[sums >= min_total]
    logger.info(f"Total-abundance filter (≥{min_total}) kept {len(keep)}/{table.n_taxa} taxa")
    return _check_not_empty(
        table.subset(taxa=keep), 'filter_by_total_abundance', f"min_total={min_total}"
    )


def collapse_to_rank(table: AbundanceTable, rank: str) -> AbundanceTable:
    """Sum taxa sharing the same lineage down to ``rank``.

    The collapsed taxon id is the lineage string up to ``rank``; taxa unassigned
    at ``rank`` are grouped under ``'<parent>; Unassigned'``.
    """
    lineage = table.taxon_lineage
    if rank not in lineage.columns:
        raise ValueError(f"Unknown rank '{rank}'; expected one of {list(lineage.columns)}")
    ranks = list(lineage.columns[: lineage.columns.get_loc(rank) + 1])
    truncated = lineage[ranks]

    def key(record: pd.Series) -> str:
        labels = [l for l in record.values if _norm(l) is not None]
        if _norm(record[rank]) is None:
            labels.append('Unassigned')
        return "; ".join(map(str, labels))

    group_ids = truncated.apply(key, axis=1)
    collapsed = table.counts.T.groupby(group_ids.values, sort=False).sum().T
    new_lineage = (
        truncated.assign(_id=group_ids.values)
        .drop_duplicates('_id')
        .set_index('_id')
        .reindex(columns=lineage.columns)
    )
    new_lineage.index.name = None
    logger.info(f"Collapsed {table.n_taxa} taxa to {collapsed.shape[1]} at {rank}")
    return AbundanceTable(collapsed, table.sample_metadata, new_lineage)

# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from typing import Optional, Sequence

# Third-Party Imports
import numpy as np
import pandas as pd
from skbio import TreeNode
from skbio.diversity import beta_diversity as skbio_beta_diversity
from skbio.stats.distance import DissimilarityMatrixError, DistanceMatrix

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.errors import DivideByZeroError, StructuralError

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# =============================== HELPER FUNCTIONS ==================================== #

def as_distance_matrix(data, ids: Optional[Sequence[str]] = None) -> DistanceMatrix:
    """Wrap ``data`` as an skbio ``DistanceMatrix``.

    Accepts an existing ``DistanceMatrix``, a square DataFrame (ids taken from
    its index) or a 2-D array with ``ids``.

    Raises:
        StructuralError: If the matrix is not square, not symmetric, has a
            non-zero diagonal, or holds negative or missing values.
    """
    if isinstance(data, DistanceMatrix):
        dm = data
    else:
        if isinstance(data, pd.DataFrame):
            if ids is None:
                ids = [str(i) for i in data.index]
            if list(map(str, data.columns)) != list(ids):
                raise StructuralError("Distance matrix rows and columns are not in the same order")
            data = data.values
        data = np.asarray(data, dtype=float)
        if data.ndim != 2 or data.shape[0] != data.shape[1]:
            raise StructuralError(f"Distance matrix must be square, got shape {data.shape}")
        if np.isnan(data).any():
            raise StructuralError("Distance matrix contains missing values")
        try:
            dm = DistanceMatrix(data, ids=ids)
        except (DissimilarityMatrixError, ValueError) as e:
            raise StructuralError(f"Invalid distance matrix: {e}") from e
    if (dm.data < 0).any():
        raise StructuralError("Distance matrix contains negative distances")
    return dm


def _check_tree(tree: TreeNode, taxon_ids: Sequence[str]) -> None:
    """Every taxon must be a uniquely named tip and branch lengths non-negative."""
    tips = set()
    for node in tree.tips():
        name = str(node.name)
        if name in tips:
            raise StructuralError(f"Tree has duplicated tip name '{name}'")
        tips.add(name)
    missing = [t for t in taxon_ids if t not in tips]
    if missing:
        raise StructuralError(
            f"{len(missing)} taxa are not tips of the tree: {', '.join(missing[:5])}"
            + (", ..." if len(missing) > 5 else "")
        )
    if any(n.length is not None and n.length < 0 for n in tree.traverse()):
        raise StructuralError("Tree has negative branch lengths")


def _skbio_beta(metric: str, counts: pd.DataFrame, **kwargs) -> DistanceMatrix:
    dm = skbio_beta_diversity(
        metric, counts.values, ids=list(counts.index), **kwargs
    )
    return as_distance_matrix(dm.data, ids=list(counts.index))

# =============================== CORE FUNCTIONALITY ================================== #

def unweighted_unifrac(table: AbundanceTable, tree: TreeNode) -> DistanceMatrix:
    """Unweighted UniFrac: the share of observed branch length leading to taxa
    found in only one of the two samples.

    Branch length observed in neither sample is left out of the denominator; the
    root branch is ignored. Values lie in [0, 1].
    """
    counts = table.counts
    _check_tree(tree, list(counts.columns))
    return _skbio_beta(
        'unweighted_unifrac', counts, taxa=list(counts.columns), tree=tree
    )


def weighted_unifrac(
    table: AbundanceTable,
    tree: TreeNode,
    normalized: bool = False
) -> DistanceMatrix:
    """Weighted UniFrac: ``Σ_b l_b |A_b/A_T - B_b/B_T|`` over branches ``b``.

    Unnormalised values are on the scale of the tree's branch lengths. With
    ``normalized=True`` each distance is divided by
    ``Σ_tips d_root(tip) (A_tip/A_T + B_tip/B_T)``, which bounds it to [0, 1].

    Raises:
        DivideByZeroError: If a sample has no counts.
    """
    counts = table.counts
    totals = counts.sum(axis=1)
    empty = totals.index[totals == 0]
    if len(empty):
        raise DivideByZeroError('weighted_unifrac', empty)
    _check_tree(tree, list(counts.columns))
    return _skbio_beta(
        'weighted_unifrac', counts, taxa=list(counts.columns), tree=tree,
        normalized=normalized
    )


def beta_diversity(
    table: AbundanceTable,
    metric: str = 'unweighted_unifrac',
    tree: Optional[TreeNode] = None
) -> DistanceMatrix:
    """Distance matrix between samples.

    Args:
        table:  Abundance table (raw counts; UniFrac and Bray-Curtis scale rows
                internally).
        metric: ``unweighted_unifrac``, ``weighted_unifrac``,
                ``weighted_normalized_unifrac``, ``braycurtis`` or ``jaccard``.
        tree:   Rooted tree over the taxon ids, required for UniFrac metrics.
    """
    if metric in constants.PHYLO_METRICS:
        if tree is None:
            raise ValueError(f"Metric '{metric}' requires a phylogenetic tree")
        if metric == 'unweighted_unifrac':
            return unweighted_unifrac(table, tree)
        return weighted_unifrac(table, tree, normalized=metric == 'weighted_normalized_unifrac')

    if metric not in ('braycurtis', 'jaccard'):
        raise ValueError(f"Unsupported beta diversity metric: {metric}")
    counts = table.counts
    totals = counts.sum(axis=1)
    if (totals == 0).any():
        raise DivideByZeroError(metric, totals.index[totals == 0])
    if metric == 'jaccard':
        counts = (counts > 0).astype(int)
    return _skbio_beta(metric, counts)

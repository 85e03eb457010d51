# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
import warnings
from typing import Sequence, Union

# Third-Party Imports
import numpy as np
import pandas as pd
from skbio.stats.distance import DistanceMatrix
from skbio.stats.distance import permanova as skbio_permanova
from skbio.stats.distance import permdisp as skbio_permdisp

# Local Imports
from eda_16s import constants
from eda_16s.diversity.beta_diversity import as_distance_matrix
from eda_16s.errors import StructuralError

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

Grouping = Union[pd.Series, Sequence]

# =============================== HELPER FUNCTIONS ==================================== #

def _aligned_labels(dm: DistanceMatrix, grouping: Grouping) -> np.ndarray:
    """Group label per distance-matrix id, as strings.

    A Series is aligned on the matrix ids; any other sequence must already be
    in id order.
    """
    ids = list(dm.ids)
    if isinstance(grouping, pd.Series):
        grouping = grouping.copy()
        grouping.index = grouping.index.map(str)
        missing = [i for i in ids if i not in grouping.index]
        if missing:
            raise StructuralError(
                f"{len(missing)} sample(s) in the distance matrix have no group: "
                f"{', '.join(missing[:5])}"
            )
        labels = grouping.loc[ids]
    else:
        labels = pd.Series(list(grouping), index=ids if len(grouping) == len(ids) else None)
        if len(labels) != len(ids):
            raise StructuralError(
                f"Grouping has {len(labels)} labels for {len(ids)} samples"
            )
    if labels.isna().any():
        raise StructuralError(f"Missing group labels for: {', '.join(labels.index[labels.isna()][:5])}")
    labels = labels.astype(str).values
    groups = np.unique(labels)
    if len(groups) < 2:
        raise ValueError(f"Need at least 2 groups, found {len(groups)}")
    if len(groups) >= len(ids):
        raise ValueError("Every sample is its own group; the test is undefined")
    return labels

# ==================================== PERMANOVA ===================================== #

def permanova(
    distance_matrix: DistanceMatrix,
    grouping: Grouping,
    permutations: int = constants.DEFAULT_PERMUTATIONS,
    seed: int = constants.DEFAULT_RANDOM_STATE
) -> pd.Series:
    """Permutational multivariate analysis of variance (Anderson 2001) via
    ``skbio.stats.distance.permanova``, with R² added.

    Args:
        distance_matrix: Sample distances.
        grouping:        Group label per sample (Series indexed by sample id,
                         or a sequence in distance-matrix order).
        permutations:    Number of label permutations (0 skips the p-value).
        seed:            Seed for the permutation generator.

    Returns:
        Series with ``method name``, ``sample size``, ``number of groups``,
        ``test statistic`` (pseudo-F), ``R2``, ``p-value`` and
        ``number of permutations``.
    """
    dm = as_distance_matrix(distance_matrix)
    labels = _aligned_labels(dm, grouping)
    result = skbio_permanova(dm, labels, permutations=permutations, seed=seed).copy()

    # R² = SS_between / SS_total, recovered from the pseudo-F
    n, k = result['sample size'], result['number of groups']
    ratio = result['test statistic'] * (k - 1) / (n - k)
    result['R2'] = ratio / (1 + ratio) if np.isfinite(ratio) else 1.0

    logger.debug(
        f"PERMANOVA: F={result['test statistic']:.4f}, R2={result['R2']:.4f}, "
        f"p={result['p-value']:.4g} ({k} groups, n={n})"
    )
    return result

# ===================================== PERMDISP ===================================== #

def permdisp(
    distance_matrix: DistanceMatrix,
    grouping: Grouping,
    permutations: int = constants.DEFAULT_PERMUTATIONS,
    seed: int = constants.DEFAULT_RANDOM_STATE
) -> pd.Series:
    """Test for homogeneity of multivariate dispersions (Anderson 2006) via
    ``skbio.stats.distance.permdisp``.

    A one-way ANOVA F on the distances to group centroids in PCoA space, with a
    permutation p-value. A significant result means group spreads differ, which
    can by itself make PERMANOVA significant.
    """
    dm = as_distance_matrix(distance_matrix)
    labels = _aligned_labels(dm, grouping)
    # Negative eigenvalues of the embedding are reported by ``pcoa``
    with warnings.catch_warnings():
        warnings.filterwarnings(
            'ignore', message=".*negative eigenvalues.*", category=RuntimeWarning
        )
        result = skbio_permdisp(
            dm, labels, test='centroid', permutations=permutations, seed=seed
        )
    logger.debug(f"PERMDISP: F={result['test statistic']:.4f}, p={result['p-value']:.4g}")
    return result


def group_significance(
    distance_matrix: DistanceMatrix,
    grouping: Grouping,
    permutations: int = constants.DEFAULT_PERMUTATIONS,
    seed: int = constants.DEFAULT_RANDOM_STATE,
    dispersion_alpha: float = constants.DEFAULT_DISPERSION_ALPHA
) -> pd.Series:
    """PERMANOVA together with its dispersion check.

    Returns:
        Series with ``permanova_F``, ``permanova_R2``, ``permanova_p``,
        ``permdisp_F``, ``permdisp_p`` and ``dispersion_heterogeneous``
        (PERMDISP p below ``dispersion_alpha``).
    """
    perm = permanova(distance_matrix, grouping, permutations, seed)
    disp = permdisp(distance_matrix, grouping, permutations, seed)
    heterogeneous = bool(disp['p-value'] < dispersion_alpha)
    if heterogeneous:
        logger.warning(
            f"Group dispersions differ (PERMDISP p={disp['p-value']:.4g}); "
            "a significant PERMANOVA may reflect spread rather than location"
        )
    return pd.Series({
        'sample size': perm['sample size'],
        'number of groups': perm['number of groups'],
        'permanova_F': perm['test statistic'],
        'permanova_R2': perm['R2'],
        'permanova_p': perm['p-value'],
        'permdisp_F': disp['test statistic'],
        'permdisp_p': disp['p-value'],
        'dispersion_heterogeneous': heterogeneous,
        'number of permutations': permutations,
    })

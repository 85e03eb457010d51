# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
import warnings
from dataclasses import dataclass, field
from typing import Optional, Tuple

# Third-Party Imports
import numpy as np
import pandas as pd
from skbio.stats.distance import DistanceMatrix
from skbio.stats.ordination import pcoa as PCoA

# Local Imports
from eda_16s import constants
from eda_16s.diversity.beta_diversity import as_distance_matrix

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ==================================== RESULTS ======================================= #

@dataclass(frozen=True)
class OrdinationResult:
    """Principal coordinates of a distance matrix.

    Attributes:
        method:               Ordination method name.
        coordinates:          Samples × axes (``PC1`` ...), ordered by
                              decreasing eigenvalue.
        eigenvalues:          Positive eigenvalues, descending.
        proportion_explained: Share of the positive-eigenvalue total per axis.
        negative_eigenvalues: Eigenvalues below zero, left out of the embedding.
        negative_fraction:    |Σ negative| / Σ |all eigenvalues|.
    """
    method: str
    coordinates: pd.DataFrame
    eigenvalues: pd.Series
    proportion_explained: pd.Series
    negative_eigenvalues: np.ndarray = field(default_factory=lambda: np.array([]))
    negative_fraction: float = 0.0

    def to_frame(self) -> pd.DataFrame:
        """Coordinates with the eigenvalue and explained-variance rows appended,
        the layout written by ``write_ordination``."""
        extra = pd.DataFrame(
            [self.eigenvalues.values, self.proportion_explained.values],
            index=['eigenvalue', 'proportion_explained'],
            columns=self.coordinates.columns
        )
        return pd.concat([self.coordinates, extra])

# ==================================== FUNCTIONS ===================================== #

def _negative_eigenvalues(dm: DistanceMatrix) -> Tuple[np.ndarray, float]:
    """Negative eigenvalues of the Gower-centred matrix ``-½ J D² J`` and their
    share of the total eigenvalue magnitude.

    Eigenvalues within ``np.isclose`` of zero are ignored, the same cut-off
    ``skbio.stats.ordination.pcoa`` uses.
    """
    n = dm.shape[0]
    centering = np.eye(n) - np.ones((n, n)) / n
    eigvals = np.linalg.eigvalsh(-0.5 * centering @ (dm.data ** 2) @ centering)
    eigvals = eigvals[~np.isclose(eigvals, 0)]
    negative = np.sort(eigvals[eigvals < 0])
    abs_total = np.abs(eigvals).sum()
    fraction = float(np.abs(negative).sum() / abs_total) if abs_total > 0 else 0.0
    return negative, fraction


def pcoa(
    distance_matrix: DistanceMatrix,
    n_components: Optional[int] = None,
    warn_fraction: float = constants.NEGATIVE_EIGENVALUE_WARN_FRACTION
) -> OrdinationResult:
    """Principal coordinate analysis (classical metric scaling) via
    ``skbio.stats.ordination.pcoa``.

    Only axes with positive eigenvalues are embedded. Negative eigenvalues, which
    non-Euclidean metrics such as UniFrac produce, are kept on the result as a
    diagnostic and logged as a warning when their share exceeds
    ``warn_fraction``.

    Args:
        distance_matrix: Sample distances.
        n_components:    Number of axes to return (default: all positive).
        warn_fraction:   Threshold for the negative-eigenvalue warning.
    """
    dm = as_distance_matrix(distance_matrix)
    if dm.shape[0] < 2:
        raise ValueError("PCoA needs at least 2 samples")
    if n_components is not None and n_components < 1:
        raise ValueError("n_components must be ≥ 1")

    negative, negative_fraction = _negative_eigenvalues(dm)
    if len(negative):
        message = (
            f"PCoA: {len(negative)} negative eigenvalue(s) dropped "
            f"({negative_fraction:.2%} of total magnitude, smallest {negative.min():.4g})"
        )
        if negative_fraction > warn_fraction:
            logger.warning(message)
        else:
            logger.debug(message)

    # Negative eigenvalues are reported above
    with warnings.catch_warnings():
        warnings.filterwarnings(
            'ignore', message=".*negative eigenvalues.*", category=RuntimeWarning
        )
        result = PCoA(dm)

    positive = result.eigvals.values > 0
    if n_components is not None:
        positive &= np.arange(len(positive)) < n_components
    axes = [f"PC{i + 1}" for i in range(int(positive.sum()))]
    return OrdinationResult(
        method='PCoA',
        coordinates=pd.DataFrame(
            result.samples.values[:, positive], index=list(dm.ids), columns=axes
        ),
        eigenvalues=pd.Series(result.eigvals.values[positive], index=axes),
        proportion_explained=pd.Series(
            result.proportion_explained.values[positive], index=axes
        ),
        negative_eigenvalues=negative,
        negative_fraction=negative_fraction,
    )

# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from typing import Iterable, Optional, Tuple

# Third-Party Imports
import numpy as np
import pandas as pd
from biom import Table

# Local Imports
from eda_16s import constants
from eda_16s.errors import StructuralError
from eda_16s.utils.table_conversion import lineage_from_biom, table_to_df, to_biom
from eda_16s.utils.taxonomy_utils import lineage_string

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# =============================== HELPER FUNCTIONS ==================================== #

def _preview(ids: Iterable, n: int = 5) -> str:
    ids = [str(i) for i in ids]
    return ", ".join(ids[:n]) + (", ..." if len(ids) > n else "")

# ================================ ABUNDANCE TABLE =================================== #

class AbundanceTable:
    """Sample × taxon count matrix with sample metadata and taxon lineages.

    Instances are never modified after construction: the frames handed in are
    copied, accessors return copies, and every filter or transform builds a new
    ``AbundanceTable``. This keeps each stage of a workflow (raw, filtered,
    normalised, ...) alive and comparable.

    All-zero samples or taxa are allowed here; removing them is an explicit
    step (see ``prune_empty_samples`` / ``prune_empty_taxa``).

    Args:
        counts:          Samples × taxa, non-negative, no missing values.
        sample_metadata: Indexed by sample id; must cover every sample.
        taxon_lineage:   Indexed by taxon id; must cover every taxon. Columns
                         are taxonomic ranks, Kingdom first.

    Raises:
        StructuralError: If any of the invariants above is violated.
    """

    def __init__(
        self,
        counts: pd.DataFrame,
        sample_metadata: pd.DataFrame,
        taxon_lineage: pd.DataFrame
    ) -> None:
        counts = table_to_df(counts).copy()
        self._validate_counts(counts)
        counts.index = counts.index.map(str)
        counts.columns = counts.columns.map(str)
        counts.index.name, counts.columns.name = 'sample_id', 'taxon_id'

        self._counts = counts
        self._sample_metadata = self._align(
            sample_metadata, counts.index, 'sample', 'sample_metadata'
        )
        self._taxon_lineage = self._align(
            taxon_lineage, counts.columns, 'taxon', 'taxon_lineage'
        )

    # ----------------------------------------------------------------- validation

    @staticmethod
    def _validate_counts(counts: pd.DataFrame) -> None:
        for axis, ids in (('sample', counts.index), ('taxon', counts.columns)):
            if ids.duplicated().any():
                raise StructuralError(
                    f"Duplicated {axis} ids in counts: {_preview(ids[ids.duplicated()])}"
                )
        if counts.size == 0:
            return
        if not all(pd.api.types.is_numeric_dtype(dt) for dt in counts.dtypes):
            raise StructuralError("Counts must be numeric")
        if counts.isna().any().any():
            bad = counts.columns[counts.isna().any()]
            raise StructuralError(f"Missing counts for taxa: {_preview(bad)}")
        negative = counts.values < 0
        if negative.any():
            rows, cols = np.nonzero(negative)
            raise StructuralError(
                f"Negative count {counts.values[rows[0], cols[0]]} at sample "
                f"'{counts.index[rows[0]]}', taxon '{counts.columns[cols[0]]}' "
                f"({negative.sum()} negative cells)"
            )

    @staticmethod
    def _align(
        frame: Optional[pd.DataFrame],
        ids: pd.Index,
        axis: str,
        name: str
    ) -> pd.DataFrame:
        if frame is None:
            raise StructuralError(f"{name} is required")
        frame = frame.copy()
        frame.index = frame.index.map(str)
        if frame.index.duplicated().any():
            raise StructuralError(
                f"Duplicated ids in {name}: {_preview(frame.index[frame.index.duplicated()])}"
            )
        missing = ids.difference(frame.index)
        if len(missing) > 0:
            raise StructuralError(
                f"{len(missing)} {axis}(s) in counts have no entry in {name}: "
                f"{_preview(missing)}"
            )
        aligned = frame.loc[ids]
        aligned.index.name = f"{axis}_id"
        return aligned

    # ----------------------------------------------------------------- accessors

    @property
    def counts(self) -> pd.DataFrame:
        return self._counts.copy()

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata.copy()

    @property
    def taxon_lineage(self) -> pd.DataFrame:
        return self._taxon_lineage.copy()

    @property
    def sample_ids(self) -> pd.Index:
        return self._counts.index.copy()

    @property
    def taxon_ids(self) -> pd.Index:
        return self._counts.columns.copy()

    @property
    def n_samples(self) -> int:
        return self._counts.shape[0]

    @property
    def n_taxa(self) -> int:
        return self._counts.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self._counts.shape

    def sample_sums(self) -> pd.Series:
        return self._counts.sum(axis=1)

    def taxon_sums(self) -> pd.Series:
        return self._counts.sum(axis=0)

    def lineage_string(self, taxon_id: str) -> str:
        return lineage_string(self._taxon_lineage.loc[taxon_id])

    # ------------------------------------------------------------- derivations

    def subset(
        self,
        samples: Optional[Iterable[str]] = None,
        taxa: Optional[Iterable[str]] = None
    ) -> "AbundanceTable":
        """Return a new table restricted to ``samples`` and/or ``taxa`` (order kept
        as in this table)."""
        counts = self._counts
        if samples is not None:
            keep = set(map(str, samples))
            counts = counts.loc[[s for s in counts.index if s in keep]]
        if taxa is not None:
            keep = set(map(str, taxa))
            counts = counts.loc[:, [t for t in counts.columns if t in keep]]
        return AbundanceTable(counts, self._sample_metadata, self._taxon_lineage)

    def with_counts(self, counts: pd.DataFrame) -> "AbundanceTable":
        """Return a new table with transformed cell values but the same metadata."""
        return AbundanceTable(counts, self._sample_metadata, self._taxon_lineage)

    def equals(self, other: "AbundanceTable") -> bool:
        return (
            isinstance(other, AbundanceTable)
            and self._counts.equals(other._counts)
            and self._sample_metadata.equals(other._sample_metadata)
            and self._taxon_lineage.equals(other._taxon_lineage)
        )

    def __repr__(self) -> str:
        return f"AbundanceTable({self.n_samples} samples × {self.n_taxa} taxa)"

    # ---------------------------------------------------------------- BIOM I/O

    def to_biom(self) -> Table:
        """Features × samples BIOM table with the lineage as ``taxonomy``
        observation metadata."""
        observation_metadata = [
            {'taxonomy': [
                '' if v is None or pd.isna(v) else str(v)
                for v in self._taxon_lineage.loc[t].values
            ]}
            for t in self._counts.columns
        ]
        return to_biom(self._counts, observation_metadata=observation_metadata)

    @classmethod
    def from_biom(
        cls,
        table: Table,
        sample_metadata: pd.DataFrame,
        taxon_lineage: Optional[pd.DataFrame] = None
    ) -> "AbundanceTable":
        """Build from a BIOM table; the lineage defaults to the table's
        ``taxonomy`` observation metadata."""
        if taxon_lineage is None:
            taxon_lineage = lineage_from_biom(table)
        return cls(table_to_df(table), sample_metadata, taxon_lineage)

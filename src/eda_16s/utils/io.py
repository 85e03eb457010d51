# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
from pathlib import Path
from typing import Optional, Union

# Third-Party Imports
import pandas as pd
from biom import load_table
from biom.table import Table
from skbio import TreeNode
from skbio.stats.distance import DistanceMatrix

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.diversity.beta_diversity import as_distance_matrix
from eda_16s.diversity.ordination import OrdinationResult
from eda_16s.errors import StructuralError
from eda_16s.stats.differential_abundance import RESULT_COLUMNS
from eda_16s.utils.taxonomy_utils import Taxonomy

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

PathLike = Union[str, Path]

# ===================================== INPUTS ======================================= #

def load_biom_table(biom_path: PathLike) -> Table:
    """Load a BIOM table (HDF5 or JSON)."""
    biom_path = Path(biom_path)
    if not biom_path.exists():
        raise FileNotFoundError(f"BIOM table not found: {biom_path}")
    table = load_table(str(biom_path))
    logger.info(
        f"Loaded {biom_path.name}: {len(table.ids(axis='observation'))} features × "
        f"{len(table.ids())} samples"
    )
    return table


def load_metadata_tsv(
    tsv_path: PathLike,
    id_column: Optional[str] = None
) -> pd.DataFrame:
    """
    Load a sample metadata TSV indexed by sample id.

    Args:
        tsv_path:  Path to metadata TSV file.
        id_column: Sample id column; by default the first of
                   ``constants.META_ID_COLUMN_CANDIDATES`` present
                   (case-insensitive), else the first column.

    Returns:
        Metadata DataFrame indexed by sample id (as strings).

    Raises:
        FileNotFoundError: If specified path doesn't exist.
        StructuralError:   If sample ids are duplicated.
    """
    tsv_path = Path(tsv_path)
    if not tsv_path.exists():
        raise FileNotFoundError(f"Metadata file not found: {tsv_path}")

    header = pd.read_csv(tsv_path, sep='\t', nrows=0).columns
    if id_column is None:
        lowered = {c.lower(): c for c in header}
        id_column = next(
            (lowered[c] for c in constants.META_ID_COLUMN_CANDIDATES if c in lowered),
            header[0]
        )
    elif id_column not in header:
        raise StructuralError(f"Sample id column '{id_column}' not found in {tsv_path.name}")

    df = pd.read_csv(tsv_path, sep='\t', dtype={id_column: str})
    # QIIME 2 metadata may carry a '#q2:types' directive row
    if len(df) and str(df[id_column].iloc[0]).startswith('#q2:'):
        df = pd.read_csv(tsv_path, sep='\t', dtype={id_column: str}, skiprows=[1])

    df[id_column] = df[id_column].astype(str)
    if df[id_column].duplicated().any():
        dupes = df.loc[df[id_column].duplicated(), id_column].tolist()
        raise StructuralError(f"Duplicated sample ids in {tsv_path.name}: {dupes[:5]}")
    df = df.set_index(id_column)
    df.index.name = 'sample_id'
    logger.info(f"Loaded metadata for {len(df)} samples from {tsv_path.name}")
    return df


def load_taxonomy_tsv(tsv_path: PathLike) -> pd.DataFrame:
    """Load a QIIME 2 style taxonomy TSV as a taxon × rank lineage frame."""
    return Taxonomy(tsv_path).lineage


def load_tree(tree_path: PathLike) -> TreeNode:
    """Load a rooted Newick tree."""
    tree_path = Path(tree_path)
    if not tree_path.exists():
        raise FileNotFoundError(f"Tree file not found: {tree_path}")
    return TreeNode.read(str(tree_path), format='newick')


def load_abundance_table(
    table_path: PathLike,
    metadata_path: PathLike,
    taxonomy_path: Optional[PathLike] = None,
    id_column: Optional[str] = None
) -> AbundanceTable:
    """Load counts, metadata and lineage into an ``AbundanceTable``.

    Without ``taxonomy_path`` the lineage is read from the BIOM observation
    metadata. Samples present only in the metadata are ignored.
    """
    biom_table = load_biom_table(table_path)
    metadata = load_metadata_tsv(metadata_path, id_column)
    lineage = load_taxonomy_tsv(taxonomy_path) if taxonomy_path else None
    return AbundanceTable.from_biom(biom_table, metadata, lineage)

# ===================================== OUTPUTS ====================================== #

def _prepare(output_path: PathLike) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    return output_path


def write_prevalence_table(prevalence: pd.DataFrame, output_path: PathLike) -> Path:
    """Write a ``stats.prevalence.prevalence_table`` frame as TSV."""
    output_path = _prepare(output_path)
    prevalence.to_csv(output_path, sep='\t', index_label='taxon_id')
    logger.info(f"Wrote prevalence table ({len(prevalence)} taxa) → {output_path}")
    return output_path


def write_differential_results(results: pd.DataFrame, output_path: PathLike) -> Path:
    """Write differential-abundance results as TSV (full float precision)."""
    output_path = _prepare(output_path)
    results.to_csv(output_path, sep='\t', index_label='taxon_id', float_format='%.17g')
    logger.info(f"Wrote differential abundance results ({len(results)} taxa) → {output_path}")
    return output_path


def read_differential_results(input_path: PathLike) -> pd.DataFrame:
    """Read a table written by ``write_differential_results``."""
    results = pd.read_csv(
        input_path, sep='\t', index_col='taxon_id', dtype={'taxon_id': str},
        float_precision='round_trip'
    )
    missing = [c for c in ('log2FoldChange', 'pvalue', 'padj') if c not in results.columns]
    if missing:
        raise StructuralError(f"{input_path} is missing columns: {missing}")
    if 'converged' in results.columns:
        results['converged'] = results['converged'].map(
            {True: True, False: False, 'True': True, 'False': False}
        ).fillna(False).astype(bool)
    ordered = [c for c in RESULT_COLUMNS if c in results.columns]
    return results[ordered + [c for c in results.columns if c not in ordered]]


def write_distance_matrix(distance_matrix: DistanceMatrix, output_path: PathLike) -> Path:
    output_path = _prepare(output_path)
    distance_matrix.to_data_frame().to_csv(
        output_path, sep='\t', index_label='sample_id', float_format='%.17g'
    )
    return output_path


def read_distance_matrix(input_path: PathLike) -> DistanceMatrix:
    df = pd.read_csv(
        input_path, sep='\t', index_col='sample_id', dtype={'sample_id': str},
        float_precision='round_trip'
    )
    return as_distance_matrix(df)


def write_ordination(ordination: OrdinationResult, output_path: PathLike) -> Path:
    """Coordinates per sample plus ``eigenvalue`` and ``proportion_explained``
    rows."""
    output_path = _prepare(output_path)
    ordination.to_frame().to_csv(output_path, sep='\t', index_label='sample_id')
    return output_path

"""
16S rRNA Exploratory Analysis
----------------------------------------------------------------------------------------
Runs the exploratory analysis of a 16S amplicon count table from a YAML config:
sample and taxon filtering, prevalence, alpha and beta diversity, ordination,
PERMANOVA/PERMDISP and the per-taxon negative-binomial test.
"""
# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import argparse
import logging
import traceback
from pathlib import Path
from typing import Dict, List, Optional, Sequence

# Third-Party Imports
import pandas as pd
from skbio import TreeNode
from skbio.stats.distance import DistanceMatrix

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.amplicon_data.pipeline import Pipeline
from eda_16s.config import get_config
from eda_16s.diversity.alpha_diversity import alpha_diversity, compare_alpha_diversity
from eda_16s.diversity.beta_diversity import beta_diversity
from eda_16s.diversity.ordination import pcoa
from eda_16s.errors import AmpliconError
from eda_16s.logger import setup_logging
from eda_16s.stats.differential_abundance import differential_abundance, significant_taxa
from eda_16s.stats.permanova import group_significance
from eda_16s.stats.prevalence import prevalence_table, summarize_by_rank
from eda_16s.utils.io import (
    load_abundance_table, load_tree, write_differential_results, write_distance_matrix,
    write_ordination, write_prevalence_table
)
from eda_16s.utils.table_filtering import (
    default_contaminant_predicate, filter_by_lineage, filter_by_prevalence,
    filter_outliers, filter_samples, metadata_in, prune_empty_samples, prune_empty_taxa
)

# ========================== INITIALIZATION & CONFIGURATION ========================== #

pd.set_option('display.max_colwidth', None)

# =================================== MAIN WORKFLOW ================================== #

def is_enabled(config: Dict) -> bool:
    return config.get("enabled", False)


def build_pipeline(table: AbundanceTable, config: Dict) -> Pipeline:
    """Sample and taxon filtering as named stages.

    Stages: ``raw``, ``samples`` (outlier rule and metadata keep-rules),
    ``bacteria`` (lineage contaminant filter), ``pruned`` and, when enabled,
    ``prevalence``.
    """
    samples_cfg = config["samples"]
    taxa_cfg = config["taxa"]

    pipe = Pipeline(table).then(
        "samples", filter_outliers,
        min_depth=samples_cfg.get("min_depth"),
        exclude_ids=samples_cfg.get("exclude") or [],
    )
    for column, values in (samples_cfg.get("keep") or {}).items():
        values = values if isinstance(values, list) else [values]
        pipe = pipe.then(f"keep_{column}", filter_samples, metadata_in(column, values))

    pipe = (
        pipe
        .then(
            "bacteria", filter_by_lineage,
            default_contaminant_predicate(taxa_cfg.get("kingdom"), taxa_cfg.get("exclude"))
        )
        .then("pruned_taxa", prune_empty_taxa)
        .then("pruned", prune_empty_samples)
    )

    prevalence_cfg = taxa_cfg.get("prevalence", {})
    pipe = pipe.when(
        is_enabled(prevalence_cfg), "prevalence",
        filter_by_prevalence, prevalence_cfg.get("min_fraction", constants.DEFAULT_MIN_PREVALENCE)
    )
    return pipe


class Analysis16S:
    """Config-driven analysis of one abundance table."""

    def __init__(self, config_path: Path = constants.DEFAULT_CONFIG_PATH) -> None:
        self.config = get_config(config_path)
        self.output_dir = Path(self.config["output_dir"])
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = setup_logging(self.config["log_dir"])
        self.threads = int(self.config.get("threads", 1))
        self.pipeline: Optional[Pipeline] = None
        self.distance_matrices: Dict[str, DistanceMatrix] = {}

    def run(self) -> None:
        """Execute every configured analysis step."""
        try:
            table, tree = self._load_inputs()
            self.pipeline = build_pipeline(table, self.config)
            self.logger.info(f"Filtering stages:\n{self.pipeline.summary()}")
            self.pipeline.summary().to_csv(self.output_dir / "stages.tsv", sep="\t")

            self._prevalence()
            self._alpha_diversity()
            self._beta_diversity(tree)
            self._group_tests()
            self._differential_abundance()
        except AmpliconError as e:
            self.logger.error(f"Analysis failed: {e}\n"
                              f"Traceback: {traceback.format_exc()}")
            raise

    def _load_inputs(self):
        inputs = self.config["inputs"]
        for key in ("table", "metadata"):
            if not inputs.get(key):
                raise ValueError(f"Config is missing inputs.{key}")
        table = load_abundance_table(
            inputs["table"], inputs["metadata"],
            taxonomy_path=inputs.get("taxonomy"),
            id_column=inputs.get("metadata_id_column"),
        )
        tree: Optional[TreeNode] = load_tree(inputs["tree"]) if inputs.get("tree") else None
        return table, tree

    def _prevalence(self) -> None:
        table = self.pipeline.latest
        write_prevalence_table(prevalence_table(table), self.output_dir / "prevalence.tsv")
        summarize_by_rank(table, "Phylum").to_csv(
            self.output_dir / "prevalence_by_phylum.tsv", sep="\t"
        )

    def _alpha_diversity(self) -> None:
        # Richness depends on rare taxa, so use the table before prevalence filtering
        table = self.pipeline.stage("pruned")
        alpha = alpha_diversity(table)
        alpha.to_csv(self.output_dir / "alpha_diversity.tsv", sep="\t", index_label="sample_id")

        for column in self._group_columns(table):
            comparison = compare_alpha_diversity(alpha, table.sample_metadata, column)
            comparison.to_csv(
                self.output_dir / f"alpha_diversity_{column}.tsv", sep="\t",
                index_label="metric"
            )

    def _beta_diversity(self, tree: Optional[TreeNode]) -> None:
        diversity_cfg = self.config["diversity"]
        table = self.pipeline.latest
        beta_dir = self.output_dir / "beta_diversity"

        for metric in diversity_cfg.get("beta_metrics", []):
            if metric in constants.PHYLO_METRICS and tree is None:
                self.logger.warning(f"Skipping {metric}: no tree configured (inputs.tree)")
                continue
            dm = beta_diversity(table, metric, tree)
            self.distance_matrices[metric] = dm
            write_distance_matrix(dm, beta_dir / f"{metric}_distance_matrix.tsv")

            ordination = pcoa(dm, n_components=diversity_cfg.get("pcoa_components"))
            write_ordination(ordination, beta_dir / f"{metric}_pcoa.tsv")
            self.logger.info(
                f"{metric}: PC1 {ordination.proportion_explained.iloc[0]:.1%}"
                if len(ordination.proportion_explained) else f"{metric}: no positive axes"
            )

    def _group_columns(self, table: AbundanceTable) -> List[str]:
        columns = []
        for column in self.config["group_tests"].get("group_columns", []):
            if column not in table.sample_metadata.columns:
                self.logger.warning(f"Group column '{column}' not in metadata; skipped")
                continue
            if table.sample_metadata[column].dropna().nunique() < 2:
                self.logger.warning(f"Group column '{column}' has fewer than 2 groups; skipped")
                continue
            columns.append(column)
        return columns

    def _group_tests(self) -> None:
        tests_cfg = self.config["group_tests"]
        table = self.pipeline.latest
        metadata = table.sample_metadata
        rows = []
        for column in self._group_columns(table):
            grouping = metadata[column].dropna()
            for metric, dm in self.distance_matrices.items():
                ids = [i for i in dm.ids if i in grouping.index]
                result = group_significance(
                    dm.filter(ids), grouping.loc[ids],
                    permutations=tests_cfg["permutations"],
                    seed=tests_cfg["seed"],
                    dispersion_alpha=tests_cfg["dispersion_alpha"],
                )
                self.logger.info(
                    f"PERMANOVA {metric} ~ {column}: F={result['permanova_F']:.3f}, "
                    f"R2={result['permanova_R2']:.3f}, p={result['permanova_p']:.4g}"
                )
                rows.append({"metric": metric, "group_column": column, **result.to_dict()})
        if rows:
            pd.DataFrame(rows).to_csv(self.output_dir / "group_significance.tsv",
                                      sep="\t", index=False)

    def _differential_abundance(self) -> None:
        da_cfg = self.config["differential_abundance"]
        if not is_enabled(da_cfg):
            self.logger.info("Differential abundance disabled")
            return
        table = self.pipeline.latest
        columns = table.sample_metadata.columns
        if da_cfg["treatment_column"] not in columns:
            self.logger.warning(
                f"Treatment column '{da_cfg['treatment_column']}' not in metadata; "
                "differential abundance skipped"
            )
            return
        time_column = da_cfg.get("time_column")
        if time_column and time_column not in columns:
            self.logger.info(f"Time column '{time_column}' not in metadata; testing treatment only")
            time_column = None

        alpha = da_cfg.get("alpha", constants.DEFAULT_FDR_ALPHA)
        results = differential_abundance(
            table,
            treatment_column=da_cfg["treatment_column"],
            time_column=time_column,
            treatment_reference=da_cfg.get("treatment_reference"),
            time_levels=da_cfg.get("time_levels"),
            lfc_term=da_cfg.get("lfc_term"),
            size_factors=da_cfg.get("size_factors", constants.DEFAULT_SIZE_FACTOR_METHOD),
            alpha=alpha,
            n_jobs=self.threads,
        )
        da_dir = self.output_dir / "differential_abundance"
        write_differential_results(results, da_dir / "results.tsv")
        hits = significant_taxa(results, alpha=alpha)
        write_differential_results(hits, da_dir / "significant.tsv")


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Run the analysis described by a config file."""
    parser = argparse.ArgumentParser(description="Run 16S exploratory analysis.")
    parser.add_argument(
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help="Path to the configuration file.",
    )
    args = parser.parse_args(argv)
    Analysis16S(args.config).run()


if __name__ == "__main__":
    main()

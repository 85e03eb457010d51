# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict

# Third-Party Imports
import pandas as pd

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

Step = Callable[..., AbundanceTable]

# ===================================== PIPELINE ===================================== #

class Pipeline:
    """Chain of table transforms that keeps every intermediate stage.

    Each ``then`` call applies a step to the latest table and records the result
    under a name, so raw and filtered versions can be compared side by side:

        pipe = (
            Pipeline(raw)
            .then('bacteria', filter_by_lineage, default_contaminant_predicate())
            .then('pruned', prune_empty_taxa)
        )
        pipe.stage('raw'), pipe.latest

    Stages are ``AbundanceTable`` values and are never modified. ``then``
    returns a new ``Pipeline``; the original keeps its own stages.
    """

    def __init__(self, table: AbundanceTable, name: str = 'raw') -> None:
        self._stages: "OrderedDict[str, AbundanceTable]" = OrderedDict([(name, table)])

    @classmethod
    def _from_stages(cls, stages: "OrderedDict[str, AbundanceTable]") -> "Pipeline":
        pipe = cls.__new__(cls)
        pipe._stages = stages
        return pipe

    def then(self, name: str, step: Step, *args, **kwargs) -> "Pipeline":
        """Apply ``step(latest, *args, **kwargs)`` and record it as ``name``."""
        if name in self._stages:
            raise ValueError(f"Stage '{name}' already exists")
        start = time.perf_counter()
        result = step(self.latest, *args, **kwargs)
        if not isinstance(result, AbundanceTable):
            raise TypeError(
                f"Step '{name}' returned {type(result).__name__}, expected AbundanceTable"
            )
        logger.debug(
            f"Stage '{name}': {result.n_samples} samples × {result.n_taxa} taxa "
            f"({time.perf_counter() - start:.2f}s)"
        )
        stages = OrderedDict(self._stages)
        stages[name] = result
        return Pipeline._from_stages(stages)

    def when(self, condition: bool, name: str, step: Step, *args, **kwargs) -> "Pipeline":
        """``then`` if ``condition`` holds, otherwise log the skipped stage."""
        if not condition:
            logger.info(f"Skipping stage '{name}'")
            return self
        return self.then(name, step, *args, **kwargs)

    def stage(self, name: str) -> AbundanceTable:
        if name not in self._stages:
            raise KeyError(f"No stage '{name}'; stages are {list(self._stages)}")
        return self._stages[name]

    @property
    def stages(self) -> Dict[str, AbundanceTable]:
        return dict(self._stages)

    @property
    def latest(self) -> AbundanceTable:
        return next(reversed(self._stages.values()))

    def summary(self) -> pd.DataFrame:
        """Samples, taxa and total reads per stage."""
        return pd.DataFrame(
            [
                {
                    'stage': name,
                    'samples': t.n_samples,
                    'taxa': t.n_taxa,
                    'total_reads': float(t.sample_sums().sum()),
                }
                for name, t in self._stages.items()
            ]
        ).set_index('stage')

    def __repr__(self) -> str:
        return f"Pipeline({' → '.join(self._stages)})"

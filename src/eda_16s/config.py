# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import copy
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Third-Party Imports
import yaml

# Local Imports
from eda_16s import constants

# ================================= DEFAULT VALUES =================================== #

DEFAULT_CONFIG: Dict[str, Any] = {
    "inputs": {
        "table": None,
        "metadata": None,
        "taxonomy": None,
        "tree": None,
        "metadata_id_column": None,
    },
    "output_dir": "./results",
    "log_dir": "./logs",
    "threads": 1,
    "samples": {
        # No universal default: the depth threshold must be chosen per study
        "min_depth": None,
        "exclude": [],
        "keep": {},
    },
    "taxa": {
        "kingdom": constants.DEFAULT_KINGDOM,
        "exclude": {
            "Family": constants.DEFAULT_EXCLUDED_FAMILIES,
            "Class": constants.DEFAULT_EXCLUDED_CLASSES,
            "Order": constants.DEFAULT_EXCLUDED_ORDERS,
        },
        "prevalence": {
            "enabled": False,
            "min_fraction": constants.DEFAULT_MIN_PREVALENCE,
        },
    },
    "diversity": {
        "beta_metrics": ["unweighted_unifrac", "weighted_unifrac"],
        "pcoa_components": None,
    },
    "group_tests": {
        "group_columns": [constants.DEFAULT_TREATMENT_COLUMN],
        "permutations": constants.DEFAULT_PERMUTATIONS,
        "seed": constants.DEFAULT_RANDOM_STATE,
        "dispersion_alpha": constants.DEFAULT_DISPERSION_ALPHA,
    },
    "differential_abundance": {
        "enabled": True,
        "treatment_column": constants.DEFAULT_TREATMENT_COLUMN,
        "time_column": constants.DEFAULT_TIME_COLUMN,
        "treatment_reference": None,
        "time_levels": None,
        "lfc_term": None,
        "size_factors": constants.DEFAULT_SIZE_FACTOR_METHOD,
        "alpha": constants.DEFAULT_FDR_ALPHA,
    },
}

# ==================================== FUNCTIONS ===================================== #

def resolve_relative_paths(config: Dict, config_dir: Path) -> Dict:
    """Converts any relative paths in the configuration to absolute paths based on
    the directory of the config file."""
    for key, value in config.items():
        if isinstance(value, str):
            if value.startswith("./") or value.startswith("../"):
                config[key] = (config_dir / value).resolve()
        elif isinstance(value, dict):
            config[key] = resolve_relative_paths(value, config_dir)
    return config


def merge_config(base: Dict, override: Optional[Dict]) -> Dict:
    """Recursively merge ``override`` over a deep copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config(
    config_path: Union[str, Path] = constants.DEFAULT_CONFIG_PATH
) -> Dict:
    """Load a YAML config and layer it over ``DEFAULT_CONFIG``.

    Thresholds (FDR alpha, prevalence fraction, permutations, seed) are only
    defaults here; every one of them can be overridden from the YAML file.
    """
    with open(config_path, "r") as file:
        user_config = yaml.safe_load(file) or {}

    config = merge_config(DEFAULT_CONFIG, user_config)
    config_dir = Path(config_path).resolve().parent
    return resolve_relative_paths(config, config_dir)

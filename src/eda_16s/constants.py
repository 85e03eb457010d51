from pathlib import Path

# ==================================================================================== #
# PROGRESS BAR
# ==================================================================================== #
# See supported colors at: https://www.w3schools.com/colors/colors_x11.asp

# Total character width of the progress bar text
DEFAULT_PROGRESS_TEXT_N: int = 65
DEFAULT_N: int = 65
# Color of the progress bar description text
DEFAULT_DESCRIPTION_STYLE: str = "white"
# Width of the progress bar
DEFAULT_BAR_WIDTH: int = 40
# Color of the filled/complete portion of the progress bar
DEFAULT_BAR_COLUMN_COMPLETE_STYLE: str = "honeydew2"
# Color used when the progress bar is finished
DEFAULT_FINISHED_STYLE: str = "dark_cyan"
# Color of the percentage complete text (e.g., "85%")
DEFAULT_PROGRESS_PERCENTAGE_STYLE: str = "honeydew2"
# Color of the "X of Y complete" text (e.g., "42 of 65")
DEFAULT_M_OF_N_COMPLETE_STYLE: str = "honeydew2"
# Color of the time elapsed display (e.g., "E: 00:01:25")
DEFAULT_TIME_ELAPSED_STYLE: str = "light_sky_blue1"

# ==================================================================================== #
# SETTINGS
# ==================================================================================== #
# Go up two levels
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "references" / "config.yaml"
LOGGER_NAME = "eda_16s"

# ==================================================================================== #
# METADATA
# ==================================================================================== #
META_ID_COLUMN_CANDIDATES = ['#sampleid', 'sample-id', 'sampleid', 'sample_id', 'id']

DEFAULT_TREATMENT_COLUMN = 'treatment'
DEFAULT_TIME_COLUMN = 'treatment_days'

# ==================================================================================== #
# TAXONOMY
# ==================================================================================== #
RANKS = ['Kingdom', 'Phylum', 'Class', 'Order', 'Family', 'Genus', 'Species']

# QIIME 2 / Greengenes style rank prefixes ('d__' is the SILVA domain prefix)
RANK_PREFIXES = {
    'k': 'Kingdom', 'd': 'Kingdom', 'p': 'Phylum', 'c': 'Class',
    'o': 'Order', 'f': 'Family', 'g': 'Genus', 's': 'Species'
}
UNASSIGNED_LABELS = {'', 'unassigned', 'unclassified', 'nan', 'none'}

DEFAULT_KINGDOM = 'Bacteria'
DEFAULT_EXCLUDED_FAMILIES = ['Mitochondria']
DEFAULT_EXCLUDED_CLASSES = ['Chloroplast']
DEFAULT_EXCLUDED_ORDERS = ['Chloroplast']

# ==================================================================================== #
# FILTERING
# ==================================================================================== #
DEFAULT_MIN_PREVALENCE: float = 0.05

# ==================================================================================== #
# STATISTICS
# ==================================================================================== #
DEFAULT_PERMUTATIONS: int = 999
DEFAULT_RANDOM_STATE: int = 42
DEFAULT_FDR_ALPHA: float = 0.05
DEFAULT_DISPERSION_ALPHA: float = 0.05
DEFAULT_MAX_ITER: int = 100
DEFAULT_SIZE_FACTOR_METHOD = 'poscounts'

# Negative eigenvalues whose summed magnitude exceeds this share of the total are
# logged as a warning when running PCoA.
NEGATIVE_EIGENVALUE_WARN_FRACTION: float = 0.01

PHYLO_METRICS = {'unweighted_unifrac', 'weighted_unifrac', 'weighted_normalized_unifrac'}

# ===================================== IMPORTS ====================================== #

# Standard Library Imports
import logging
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence, Tuple

# Third-Party Imports
import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy.stats import chi2
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SMConvergenceWarning,
    HessianInversionWarning,
    PerfectSeparationError,
)

# Local Imports
from eda_16s import constants
from eda_16s.amplicon_data.abundance_table import AbundanceTable
from eda_16s.errors import ConvergenceWarning, StructuralError
from eda_16s.utils.progress import get_progress_bar, _format_task_desc

# ========================== INITIALIZATION & CONFIGURATION ========================== #

logger = logging.getLogger(constants.LOGGER_NAME)

# ================================= DEFAULT VALUES =================================== #

RESULT_COLUMNS = [
    'baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj',
    'dispersion', 'converged', 'note'
]
MIN_DISPERSION = 1e-8
MAX_DISPERSION = 1e3
FIT_ERRORS = (
    np.linalg.LinAlgError, ValueError, FloatingPointError, OverflowError,
    PerfectSeparationError,
)

# ================================== SIZE FACTORS ==================================== #

def estimate_size_factors(
    counts: pd.DataFrame,
    method: str = constants.DEFAULT_SIZE_FACTOR_METHOD
) -> pd.Series:
    """Per-sample normalisation factors (samples × taxa input).

    Methods:
        ``ratio``:     median-of-ratios against the per-taxon geometric mean;
                       only taxa counted in every sample are used.
        ``poscounts``: the same with zeros left out of each geometric mean and
                       of each sample's median, which suits sparse amplicon
                       tables where no taxon is seen everywhere.
        ``total``:     library size scaled by its geometric mean.

    The factors are scaled to a geometric mean of 1.
    """
    values = counts.values.astype(float)
    with np.errstate(divide='ignore'):
        logs = np.log(values)

    if method == 'total':
        totals = values.sum(axis=1)
        if (totals <= 0).any():
            raise StructuralError("Size factors need every sample to have counts")
        log_sf = np.log(totals)
    elif method in ('ratio', 'poscounts'):
        if method == 'ratio':
            usable = np.all(values > 0, axis=0)
            if not usable.any():
                raise StructuralError(
                    "Every taxon has a zero in some sample; use size factor method 'poscounts'"
                )
            log_geo = logs[:, usable].mean(axis=0)
            ratios = logs[:, usable] - log_geo
        else:
            finite_logs = np.where(values > 0, logs, 0.0)
            log_geo = finite_logs.mean(axis=0)
            ratios = np.where(values > 0, logs - log_geo, np.nan)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', category=RuntimeWarning)
            log_sf = np.nanmedian(ratios, axis=1)
        if np.isnan(log_sf).any():
            bad = counts.index[np.isnan(log_sf)]
            raise StructuralError(
                f"Cannot estimate size factors for sample(s): {', '.join(map(str, bad[:5]))}"
            )
    else:
        raise ValueError(f"Unknown size factor method: {method}")

    sf = np.exp(log_sf - log_sf.mean())
    return pd.Series(sf, index=counts.index, name='sizeFactor')

# ===================================== DESIGN ======================================= #

def build_design(
    metadata: pd.DataFrame,
    treatment_column: str,
    time_column: Optional[str] = None,
    treatment_reference: Optional[str] = None,
    time_levels: Optional[Sequence] = None
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Full and reduced design matrices.

    With a time column the full model is ``treatment + time + treatment:time``
    and the reduced model drops the interaction; without one the full model is
    ``treatment`` and the reduced model is the intercept. Both factors use
    treatment (dummy) coding: ``treatment_reference`` and the first of
    ``time_levels`` are the reference levels. Interaction columns for
    treatment × time cells without samples are dropped.

    Raises:
        StructuralError: For missing labels, too few levels or a design that
            stays rank-deficient.
    """
    columns = [treatment_column] + ([time_column] if time_column else [])
    for column in columns:
        if column not in metadata.columns:
            raise StructuralError(f"Column '{column}' not found in sample metadata")
        if metadata[column].isna().any():
            missing = metadata.index[metadata[column].isna()]
            raise StructuralError(
                f"Missing '{column}' for sample(s): {', '.join(map(str, missing[:5]))}"
            )

    treatment = metadata[treatment_column].astype(str)
    t_levels = sorted(treatment.unique())
    if treatment_reference is not None:
        treatment_reference = str(treatment_reference)
        if treatment_reference not in t_levels:
            raise StructuralError(
                f"Reference level '{treatment_reference}' not in '{treatment_column}': {t_levels}"
            )
        t_levels = [treatment_reference] + [l for l in t_levels if l != treatment_reference]
    if len(t_levels) < 2:
        raise StructuralError(f"'{treatment_column}' needs at least 2 levels, found {t_levels}")

    frame = pd.DataFrame(
        {'treatment': pd.Categorical(treatment, categories=t_levels)},
        index=metadata.index
    )
    if time_column:
        time = metadata[time_column]
        if time_levels is None:
            observed = time.unique()
            try:
                time_levels = sorted(observed, key=float)
            except (TypeError, ValueError):
                time_levels = sorted(observed, key=str)
        time_levels = [str(l) for l in time_levels]
        time = time.astype(str)
        unknown = set(time.unique()) - set(time_levels)
        if unknown:
            raise StructuralError(f"'{time_column}' has levels not in time_levels: {sorted(unknown)}")
        time_levels = [l for l in time_levels if l in set(time.unique())]
        if len(time_levels) < 2:
            raise StructuralError(f"'{time_column}' needs at least 2 levels, found {time_levels}")
        frame['time'] = pd.Categorical(time, categories=time_levels, ordered=True)
        full_formula, reduced_formula = "C(treatment) * C(time)", "C(treatment) + C(time)"
    else:
        full_formula, reduced_formula = "C(treatment)", "1"

    full = patsy.dmatrix(full_formula, frame, return_type='dataframe')
    reduced = patsy.dmatrix(reduced_formula, frame, return_type='dataframe')

    empty = full.columns[(full != 0).sum(axis=0) == 0]
    if len(empty):
        logger.warning(f"Dropping {len(empty)} design column(s) with no samples: {list(empty)}")
        full = full.drop(columns=empty)
    for name, design in (('full', full), ('reduced', reduced)):
        rank = np.linalg.matrix_rank(design.values)
        if rank < design.shape[1]:
            raise StructuralError(
                f"The {name} design is rank-deficient ({rank} < {design.shape[1]} columns)"
            )
    if full.shape[1] <= reduced.shape[1]:
        raise StructuralError("The full design has no terms beyond the reduced design")
    return full, reduced


def _default_lfc_term(full: pd.DataFrame) -> str:
    main_effects = [c for c in full.columns if c.startswith('C(treatment)') and ':' not in c]
    return main_effects[0] if main_effects else full.columns[-1]

# ================================== PER-TAXON FIT =================================== #

def _na_row(base_mean: float, note: str, dispersion: float = np.nan) -> Dict:
    return {
        'baseMean': base_mean, 'log2FoldChange': np.nan, 'lfcSE': np.nan,
        'stat': np.nan, 'pvalue': np.nan, 'dispersion': dispersion,
        'converged': False, 'note': note,
    }


def _estimate_dispersion(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    max_iter: int
) -> Tuple[float, str]:
    """Negative-binomial dispersion: maximum likelihood on the full design,
    falling back to the moment estimate from a Poisson fit."""
    try:
        res = sm.NegativeBinomial(y, X, offset=offset).fit(disp=0, maxiter=max_iter)
        alpha = float(np.asarray(res.params)[-1])
        if res.mle_retvals.get('converged', False) and np.isfinite(alpha) and alpha > 0:
            return float(np.clip(alpha, MIN_DISPERSION, MAX_DISPERSION)), 'mle'
    except FIT_ERRORS:
        pass
    mu = sm.GLM(y, X, family=sm.families.Poisson(), offset=offset).fit(maxiter=max_iter).mu
    dof = max(len(y) - X.shape[1], 1)
    alpha = np.sum(((y - mu) ** 2 - y) / mu ** 2) / dof
    return float(np.clip(alpha, MIN_DISPERSION, MAX_DISPERSION)), 'moments'


def _fit_taxon(
    y: np.ndarray,
    X_full: np.ndarray,
    X_reduced: np.ndarray,
    offset: np.ndarray,
    size_factors: np.ndarray,
    lfc_idx: int,
    max_iter: int
) -> Dict:
    """Full vs reduced negative-binomial GLM and their likelihood-ratio test.

    Reads only its own count vector and the shared (read-only) designs.
    """
    base_mean = float(np.mean(y / size_factors))
    if np.all(y == y[0]):
        return _na_row(base_mean, 'constant counts')

    try:
        alpha, source = _estimate_dispersion(y, X_full, offset, max_iter)
        family = sm.families.NegativeBinomial(alpha=alpha)
        full = sm.GLM(y, X_full, family=family, offset=offset).fit(maxiter=max_iter)
        reduced = sm.GLM(y, X_reduced, family=family, offset=offset).fit(maxiter=max_iter)
    except FIT_ERRORS as e:
        return _na_row(base_mean, f"fit failed: {e}")

    converged = bool(getattr(full, 'converged', True) and getattr(reduced, 'converged', True))
    stat = 2.0 * (full.llf - reduced.llf)
    if not converged or not np.isfinite(stat):
        return _na_row(base_mean, 'did not converge', alpha)

    df = X_full.shape[1] - X_reduced.shape[1]
    stat = max(stat, 0.0)
    coef, se = np.asarray(full.params)[lfc_idx], np.asarray(full.bse)[lfc_idx]
    return {
        'baseMean': base_mean,
        'log2FoldChange': coef / np.log(2),
        'lfcSE': se / np.log(2),
        'stat': stat,
        'pvalue': float(chi2.sf(stat, df)),
        'dispersion': alpha,
        'converged': True,
        'note': f"dispersion: {source}",
    }

# ================================ DIFFERENTIAL TEST ================================= #

def adjust_pvalues(pvalues: pd.Series) -> pd.Series:
    """Benjamini-Hochberg adjustment over the non-missing p-values; missing
    p-values stay missing."""
    padj = pd.Series(np.nan, index=pvalues.index, name='padj')
    valid = pvalues.notna()
    if valid.any():
        padj[valid] = multipletests(pvalues[valid].values, method='fdr_bh')[1]
    return padj


def differential_abundance(
    table: AbundanceTable,
    treatment_column: str = constants.DEFAULT_TREATMENT_COLUMN,
    time_column: Optional[str] = constants.DEFAULT_TIME_COLUMN,
    treatment_reference: Optional[str] = None,
    time_levels: Optional[Sequence] = None,
    lfc_term: Optional[str] = None,
    size_factors: str = constants.DEFAULT_SIZE_FACTOR_METHOD,
    max_iter: int = constants.DEFAULT_MAX_ITER,
    alpha: float = constants.DEFAULT_FDR_ALPHA,
    n_jobs: int = 1,
    verbose: bool = True
) -> pd.DataFrame:
    """Per-taxon negative-binomial likelihood-ratio test.

    Each taxon is fitted independently with a negative-binomial GLM (log link,
    log size factors as offset, per-taxon dispersion) under the full design
    (``treatment * time``) and the reduced design (``treatment + time``); the
    likelihood-ratio statistic is referred to a chi-squared distribution with
    as many degrees of freedom as dropped columns. Without ``time_column`` the
    test is ``treatment`` against the intercept.

    Constant taxa and failed fits get a row of missing values and a ``note``
    instead of stopping the batch. P-values are Benjamini-Hochberg adjusted over
    the taxa that were tested.

    Args:
        table:               Raw integer counts.
        treatment_column:    Categorical treatment column in the metadata.
        time_column:         Time point column (ordered levels), or None.
        treatment_reference: Reference treatment (default: first sorted level).
        time_levels:         Time level order (default: numeric, else lexical).
        lfc_term:            Design column reported as ``log2FoldChange``
                             (default: the first treatment main effect, i.e.
                             treatment vs reference at the reference time).
        size_factors:        ``poscounts``, ``ratio`` or ``total``.
        max_iter:            Iteration cap for each fit.
        alpha:               FDR level used for the summary log line only.
        n_jobs:              Worker threads for the per-taxon fits.
        verbose:             Show a progress bar.

    Returns:
        DataFrame indexed by taxon id with ``RESULT_COLUMNS`` followed by the
        lineage columns. ``attrs`` holds the design column names.
    """
    counts = table.counts
    if not np.allclose(counts.values, np.round(counts.values)):
        raise StructuralError("The negative-binomial test needs raw integer counts")

    full, reduced = build_design(
        table.sample_metadata, treatment_column, time_column,
        treatment_reference, time_levels
    )
    if lfc_term is None:
        lfc_term = _default_lfc_term(full)
    elif lfc_term not in full.columns:
        raise ValueError(f"lfc_term '{lfc_term}' not in design columns {list(full.columns)}")
    lfc_idx = list(full.columns).index(lfc_term)

    sf = estimate_size_factors(counts, size_factors)
    offset = np.log(sf.values)
    X_full, X_reduced = full.values, reduced.values
    taxa: List[str] = list(counts.columns)
    values = counts.values.astype(float)
    rows: List[Optional[Dict]] = [None] * len(taxa)

    logger.info(
        f"Testing {len(taxa)} taxa: full={list(full.columns)}, reduced={list(reduced.columns)}"
    )

    def fit(i: int) -> None:
        rows[i] = _fit_taxon(values[:, i], X_full, X_reduced, offset, sf.values, lfc_idx, max_iter)

    with warnings.catch_warnings():
        for category in (SMConvergenceWarning, HessianInversionWarning, RuntimeWarning):
            warnings.simplefilter('ignore', category=category)
        with get_progress_bar(transient=True) as progress:
            task = progress.add_task(
                _format_task_desc("Fitting negative-binomial models"),
                total=len(taxa), visible=verbose
            )
            if n_jobs <= 1:
                for i in range(len(taxa)):
                    fit(i)
                    progress.update(task, advance=1)
            else:
                with ThreadPoolExecutor(max_workers=n_jobs) as executor:
                    futures = [executor.submit(fit, i) for i in range(len(taxa))]
                    for future in as_completed(futures):
                        future.result()
                        progress.update(task, advance=1)

    results = pd.DataFrame(rows, index=pd.Index(taxa, name='taxon_id'))
    results['padj'] = adjust_pvalues(results['pvalue'])
    results = results[RESULT_COLUMNS].join(table.taxon_lineage)
    results.attrs.update({
        'full_design': list(full.columns),
        'reduced_design': list(reduced.columns),
        'lfc_term': lfc_term,
    })

    failed = results.index[~results['converged']]
    if len(failed):
        for taxon in failed:
            logger.debug(f"{taxon}: {results.at[taxon, 'note']}")
        warnings.warn(
            f"{len(failed)}/{len(taxa)} taxa were not tested (constant counts or "
            f"failed fits); their rows are NA",
            ConvergenceWarning
        )
    logger.info(
        f"Differential abundance: {int(results['pvalue'].notna().sum())} taxa tested, "
        f"{int((results['padj'] < alpha).sum())} with padj < {alpha}"
    )
    return results


def significant_taxa(
    results: pd.DataFrame,
    alpha: float = constants.DEFAULT_FDR_ALPHA
) -> pd.DataFrame:
    """Rows with ``padj < alpha``, sorted by padj. ``results`` is left as is."""
    hits = results.loc[results['padj'] < alpha].copy()
    return hits.sort_values(['padj', 'pvalue'])

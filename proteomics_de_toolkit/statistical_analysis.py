"""
Statistical Analysis Module for Proteomics Differential Expression

Per protein group: optional robust summarization, linear (mixed) model fitting
from an ordered list of candidate formulas, contrasts between condition
levels, empirical-Bayes variance moderation and multiple testing correction.

Formulas use the lme4 convention for random intercepts:

    expression ~ (1|condition) + (1|sample) + (1|feature)

Random intercept terms are fitted as crossed variance components with
statsmodels MixedLM (REML). Their level estimates (BLUPs) are ridge-type
shrinkage estimates, so contrasts between condition levels fitted as
(1|condition) are regularized towards zero for noisy proteins.
"""

import re
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed
from patsy import PatsyError, dmatrix
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.regression.mixed_linear_model import MixedLM, VCSpec
from statsmodels.stats.multitest import multipletests

from .dataset import PeptideSet
from .summarization import get_summarization_method, summarize_group
from .validation import ConditionError

PEPTIDE_LEVEL_FORMULAS = [
    "expression ~ (1|condition) + (1|sample) + (1|feature)",
    "expression ~ (1|condition)",
]
SUMMARIZED_FORMULAS = ["expression ~ (1|condition)"]

ANALYSIS_MODES = ("summarize_model", "model", "summarize")
CORRECTION_METHODS = (
    "bonferroni", "sidak", "holm-sidak", "holm", "simes-hochberg", "hommel",
    "fdr_bh", "fdr_by", "fdr_tsbh", "fdr_tsbky", "none",
)

CONTRAST_COLUMNS = ["contrast", "logFC", "SE", "t", "df", "P.Value", "adj.P.Val", "Significant"]

_RANDOM_TERM = re.compile(r"\(\s*([^|()]+?)\s*\|\s*([^()|]+?)\s*\)")
_PATSY_LEVEL = re.compile(r"^(?:C\(\s*([^,\)\s]+)[^\)]*\)|([^\[]+))\[(?:T\.)?(.+)\]$")


class FormulaError(ValueError):
    """Raised for model formulas that cannot be interpreted."""


class ModelFitError(RuntimeError):
    """Raised when a formula cannot be fitted to the data of a protein group."""


class StatisticalConfig:
    """Configuration class for protein-level differential analysis

    Supports three analysis modes:
    - 'summarize_model': robustly summarize peptides per protein, then fit the
      formulas to the protein-level summaries
    - 'model': fit the formulas to the data as given (peptide-level data, or a
      protein-level set produced by summarize_peptides())
    - 'summarize': summarization only, no models or contrasts
    """

    def __init__(self):
        # Analysis mode
        self.mode = "summarize_model"

        # Grouping: one model per unique combination of these feature annotations
        self.group_vars = ["protein"]
        self.condition_column = "condition"

        # Candidate model formulas, tried in order until one fits
        self.formulas = list(SUMMARIZED_FORMULAS)

        # Robust reweighting iterations for model fits ("auto": 1 on summarized
        # data, 20 on peptide-level data)
        self.robust_iterations = "auto"

        # Contrasts: factor name(s) for all pairwise comparisons, a contrast
        # matrix (coefficients x contrasts) or {name: {coefficient: weight}}
        self.contrasts = "condition"

        # Summarization
        self.summarization_method = "robust"

        # Empirical-Bayes moderation of residual variances
        self.squeeze_variance = True

        # Multiple testing correction
        self.correction_method = "fdr_bh"
        self.q_value_threshold = 0.05

        # Execution
        self.n_jobs = 1
        self.keep_model = False

    def validate(self):
        """Validate that the configuration can be run"""
        if self.mode not in ANALYSIS_MODES:
            raise ValueError(f"mode must be one of {ANALYSIS_MODES}, got '{self.mode}'")

        if not self.group_vars:
            raise ValueError("group_vars must name at least one feature annotation column")

        if self.mode != "summarize":
            if isinstance(self.formulas, str):
                self.formulas = [self.formulas]
            if not self.formulas:
                raise ValueError("At least one model formula is required")
            for formula in self.formulas:
                parse_formula(formula)

            if self.contrasts is None:
                raise ValueError("contrasts must be set for modeling modes")

        if self.robust_iterations != "auto":
            if not isinstance(self.robust_iterations, int) or self.robust_iterations < 1:
                raise ValueError("robust_iterations must be 'auto' or a positive integer")

        if self.correction_method not in CORRECTION_METHODS:
            raise ValueError(
                f"Unknown correction method: {self.correction_method}. Choose from {CORRECTION_METHODS}"
            )

        if not 0 < self.q_value_threshold <= 1:
            raise ValueError("q_value_threshold must be in (0, 1]")

        get_summarization_method(self.summarization_method)
        return True


# =============================================================================
# FORMULAS
# =============================================================================


@dataclass
class ParsedFormula:
    formula: str
    response: str
    fixed: str
    random: List[str] = field(default_factory=list)


def parse_formula(formula):
    """
    Split a model formula into response, fixed-effects part and random intercepts.

    Parameters:
    -----------
    formula : str
        e.g. "expression ~ (1|condition) + (1|feature)" or
        "expression ~ condition + (1|feature)"

    Returns:
    --------
    ParsedFormula

    Raises:
    -------
    FormulaError: For missing response, random slopes or malformed terms
    """
    if not isinstance(formula, str) or "~" not in formula:
        raise FormulaError(f"Formula must be a string of the form 'response ~ terms': {formula!r}")

    lhs, rhs = formula.split("~", 1)
    response = lhs.strip()
    if not re.match(r"^[A-Za-z_][A-Za-z0-9_.]*$", response):
        raise FormulaError(f"Invalid response in formula: {formula!r}")

    random = []
    for match in _RANDOM_TERM.finditer(rhs):
        if match.group(1).strip() != "1":
            raise FormulaError(
                f"Only random intercepts (1|factor) are supported, got '{match.group(0)}'"
            )
        factor = match.group(2).strip()
        if factor in random:
            raise FormulaError(f"Random term (1|{factor}) given twice")
        random.append(factor)

    remainder = _RANDOM_TERM.sub("", rhs)
    if "|" in remainder:
        raise FormulaError(f"Malformed random effect term in formula: {formula!r}")

    terms = [term.strip() for term in remainder.split("+") if term.strip()]
    fixed = " + ".join(terms) if terms else "1"

    return ParsedFormula(formula=formula, response=response, fixed=fixed, random=random)


def _normalize_coefficient_name(name):
    """Map patsy column names like 'C(condition)[T.B]' to 'conditionB'."""
    match = _PATSY_LEVEL.match(name)
    if match:
        factor = match.group(1) or match.group(2)
        return f"{factor.strip()}{match.group(3)}"
    return name


def _reference_coefficients(design_info):
    """Names of treatment-coded reference levels, whose coefficient is zero."""
    reference = set()
    for factor, info in design_info.factor_infos.items():
        if info.type == "categorical" and len(info.categories) > 0:
            name = factor.name()
            match = re.match(r"^C\(\s*([^,\)\s]+)", name)
            base = match.group(1) if match else name
            reference.add(f"{base}{info.categories[0]}")
    return reference


# =============================================================================
# MODEL FITTING
# =============================================================================


@dataclass
class ModelFit:
    """Fitted model of one protein group"""

    formula: str
    coefficients: pd.Series
    vcov_unscaled: pd.DataFrame
    sigma: float
    df: float
    n_obs: int
    variance_components: Dict[str, float] = field(default_factory=dict)
    weights: Optional[np.ndarray] = None
    reference_coefficients: Set[str] = field(default_factory=set)
    converged: bool = True


def _fit_weighted(y, X, blocks, weights):
    """
    Fit one weighted model and solve the mixed-model equations.

    Returns coefficients, unscaled covariance, residual variance, residual df,
    variance components, fitted values and the convergence flag.
    """
    n, p = X.shape
    sw = np.sqrt(weights)
    variance_components = {}
    converged = True

    if blocks:
        vc_spec = VCSpec(
            [name for name, _ in blocks],
            [[list(Z.columns)] for _, Z in blocks],
            [[Z.values * sw[:, np.newaxis]] for _, Z in blocks],
        )
        model = MixedLM(y * sw, X.values * sw[:, np.newaxis], groups=np.zeros(n), exog_vc=vc_spec)

        # Suppress convergence warnings during fitting
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=UserWarning)
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            warnings.filterwarnings("ignore", message=".*convergence.*")
            warnings.filterwarnings("ignore", message=".*singular.*")

            fitted_model = None
            for method in ["lbfgs", "bfgs", "powell", "nm"]:
                try:
                    fitted_model = model.fit(reml=True, method=method)
                    break
                except (ValueError, RuntimeError, np.linalg.LinAlgError):
                    continue

        if fitted_model is None:
            raise ModelFitError("All optimization methods failed")

        sigma2 = float(fitted_model.scale)
        if not np.isfinite(sigma2) or sigma2 <= 0:
            raise ModelFitError("Mixed model returned a non-positive residual variance")

        converged = bool(getattr(fitted_model, "converged", True))
        vcomp = np.atleast_1d(np.asarray(fitted_model.vcomp, dtype=float))

        penalties = []
        for (name, Z), component in zip(blocks, vcomp):
            component = max(float(component), 0.0)
            variance_components[name] = component
            # Zero variance components shrink their levels to (numerically) zero
            penalties.extend([sigma2 / max(component, sigma2 * 1e-12)] * Z.shape[1])

        design = np.hstack([X.values] + [Z.values for _, Z in blocks])
        penalty = np.concatenate([np.zeros(p), penalties])
    else:
        design = X.values
        penalty = np.zeros(p)
        sigma2 = None

    weighted_t = design.T * weights
    cross = weighted_t @ design
    lhs = cross + np.diag(penalty)

    try:
        vcov_unscaled = np.linalg.inv(lhs)
    except np.linalg.LinAlgError as e:
        raise ModelFitError(f"Singular mixed-model equations: {e}") from e

    coefficients = vcov_unscaled @ (weighted_t @ y)
    fitted = design @ coefficients
    hat_trace = float(np.trace(vcov_unscaled @ cross))
    df = n - hat_trace

    if sigma2 is None:
        if df <= 0:
            raise ModelFitError("No residual degrees of freedom")
        sigma2 = float(np.sum(weights * (y - fitted) ** 2) / df)

    return coefficients, vcov_unscaled, sigma2, df, variance_components, fitted, converged


def fit_formula(data, formula, robust_iterations=1, tol=1e-4):
    """
    Fit one formula to the long data of a protein group.

    Parameters:
    -----------
    data : pd.DataFrame
        Long observation table (response column plus the formula's factors)
    formula : str
        Model formula, see parse_formula()
    robust_iterations : int
        1 for an ordinary fit; more for Huber reweighting of the residuals
    tol : float
        Stop reweighting when no weight changes by more than this

    Returns:
    --------
    ModelFit

    Raises:
    -------
    ModelFitError: If the formula is not estimable on these data
    """
    parsed = parse_formula(formula)

    needed = [parsed.response] + parsed.random
    missing = [col for col in needed if col not in data.columns]
    if missing:
        raise ModelFitError(f"Columns not found for formula '{formula}': {missing}")

    data = data.dropna(subset=[parsed.response]).reset_index(drop=True)
    n_obs = len(data)
    if n_obs == 0:
        raise ModelFitError("No observations")

    y = data[parsed.response].astype(float).values

    X = dmatrix(parsed.fixed, data, return_type="dataframe")
    reference = _reference_coefficients(X.design_info)
    X.columns = [_normalize_coefficient_name(col) for col in X.columns]
    if X.shape[1] > 0 and np.linalg.matrix_rank(X.values) < X.shape[1]:
        raise ModelFitError(f"Fixed effects of '{formula}' are not estimable (rank deficient)")

    blocks = []
    for factor in parsed.random:
        levels = data[factor].astype(str)
        n_levels = levels.nunique()
        if n_levels < 2:
            raise ModelFitError(f"Grouping factor '{factor}' must have more than 1 level")
        if n_levels >= n_obs:
            raise ModelFitError(
                f"Number of levels of '{factor}' ({n_levels}) must be less than "
                f"the number of observations ({n_obs})"
            )
        Z = pd.get_dummies(levels, dtype=float)
        Z.columns = [f"{factor}{level}" for level in Z.columns]
        blocks.append((factor, Z))

    if not blocks and n_obs <= X.shape[1]:
        raise ModelFitError("Not enough observations for the fixed effects")

    weights = np.ones(n_obs)
    fit = _fit_weighted(y, X, blocks, weights)

    huber = sm.robust.norms.HuberT()
    for _ in range(max(int(robust_iterations), 1) - 1):
        residuals = y - fit[5]
        scale = sm.robust.scale.mad(residuals, center=0)
        if not np.isfinite(scale) or scale <= 0:
            break
        new_weights = huber.weights(residuals / scale)
        change = np.max(np.abs(new_weights - weights))
        weights = new_weights
        fit = _fit_weighted(y, X, blocks, weights)
        if change < tol:
            break

    coefficients, vcov_unscaled, sigma2, df, variance_components, _, converged = fit
    names = list(X.columns) + [col for _, Z in blocks for col in Z.columns]

    return ModelFit(
        formula=formula,
        coefficients=pd.Series(coefficients, index=names),
        vcov_unscaled=pd.DataFrame(vcov_unscaled, index=names, columns=names),
        sigma=float(np.sqrt(sigma2)),
        df=float(df),
        n_obs=n_obs,
        variance_components=variance_components,
        weights=weights,
        reference_coefficients=reference - set(names),
        converged=converged,
    )


def fit_with_fallback(data, formulas, robust_iterations=1):
    """
    Fit the first formula that works, trying candidates in order.

    Returns:
    --------
    (ModelFit or None, str)
        The fit and an empty reason, or None and the reasons every formula failed
    """
    reasons = []
    for formula in formulas:
        try:
            return fit_formula(data, formula, robust_iterations=robust_iterations), ""
        except (ModelFitError, ValueError, RuntimeError, np.linalg.LinAlgError, PatsyError) as e:
            reasons.append(f"{formula}: {e}")

    return None, "; ".join(reasons)


# =============================================================================
# CONTRASTS
# =============================================================================


def make_pairwise_contrasts(levels, factor="condition"):
    """
    All pairwise contrasts between the levels of a factor.

    Parameters:
    -----------
    levels : iterable
        Factor levels
    factor : str
        Factor name, used as coefficient prefix

    Returns:
    --------
    pd.DataFrame : Contrast matrix, coefficients (rows) x contrasts (columns);
        contrast "conditionB-conditionA" estimates B minus A
    """
    levels = sorted({str(level) for level in levels})
    coefficients = [f"{factor}{level}" for level in levels]

    columns = {}
    for i in range(len(coefficients)):
        for j in range(i + 1, len(coefficients)):
            vector = pd.Series(0.0, index=coefficients)
            vector[coefficients[j]] = 1.0
            vector[coefficients[i]] = -1.0
            columns[f"{coefficients[j]}-{coefficients[i]}"] = vector

    return pd.DataFrame(columns, index=coefficients)


def build_contrast_matrix(contrasts, factor_levels):
    """
    Build a contrast matrix from the configured contrast specification.

    Parameters:
    -----------
    contrasts : str, list of str, pd.DataFrame or dict
        Factor name(s) for all pairwise contrasts, an explicit matrix
        (coefficients x contrasts) or {contrast name: {coefficient: weight}}
    factor_levels : Dict[str, list]
        Levels of each factor available in the data

    Returns:
    --------
    pd.DataFrame : Contrast matrix
    """
    if isinstance(contrasts, pd.DataFrame):
        matrix = contrasts.astype(float)
    elif isinstance(contrasts, dict):
        matrix = pd.DataFrame(contrasts).fillna(0.0).astype(float)
    else:
        factors = [contrasts] if isinstance(contrasts, str) else list(contrasts)
        parts = []
        for factor in factors:
            if factor not in factor_levels:
                raise ConditionError(f"Contrast factor '{factor}' not found in the annotation")
            parts.append(make_pairwise_contrasts(factor_levels[factor], factor))
        matrix = pd.concat(parts, axis=1).fillna(0.0) if parts else pd.DataFrame()

    if matrix.shape[1] == 0:
        raise ConditionError("No contrasts could be built - at least 2 levels are required")

    return matrix


def compute_contrasts(fit, contrast_matrix, sigma=None, df=None):
    """
    Estimate contrasts from a fitted model.

    Contrasts that involve a level absent from the fit are returned as NaN.

    Parameters:
    -----------
    fit : ModelFit
        Fitted model
    contrast_matrix : pd.DataFrame
        Coefficients (rows) x contrasts (columns)
    sigma : float, optional
        Residual standard deviation to use (default: the fit's own)
    df : float, optional
        Degrees of freedom to use (default: the fit's own)

    Returns:
    --------
    pd.DataFrame : contrast, logFC, SE, t, df, P.Value
    """
    sigma = fit.sigma if sigma is None else sigma
    df = fit.df if df is None else df

    coefficients = fit.coefficients
    vcov = fit.vcov_unscaled.values

    rows = []
    for name in contrast_matrix.columns:
        weights = contrast_matrix[name]
        weights = weights[weights != 0]

        estimable = len(weights) > 0 and all(
            coef in coefficients.index or coef in fit.reference_coefficients
            for coef in weights.index
        )
        present = weights[weights.index.isin(coefficients.index)]

        if not estimable or present.empty:
            rows.append({"contrast": name, "logFC": np.nan, "SE": np.nan,
                         "t": np.nan, "df": np.nan, "P.Value": np.nan})
            continue

        vector = present.reindex(coefficients.index, fill_value=0.0).values
        estimate = float(vector @ coefficients.values)
        se = float(np.sqrt(max(vector @ vcov @ vector, 0.0)) * sigma)

        if se > 1e-10 and df > 0:
            t_value = estimate / se
            tail = stats.norm.sf(abs(t_value)) if np.isinf(df) else stats.t.sf(abs(t_value), df)
            p_value = float(2 * tail)
        else:
            t_value = np.nan
            p_value = np.nan

        rows.append({"contrast": name, "logFC": estimate, "SE": se,
                     "t": t_value, "df": df, "P.Value": p_value})

    return pd.DataFrame(rows, columns=["contrast", "logFC", "SE", "t", "df", "P.Value"])


# =============================================================================
# VARIANCE MODERATION
# =============================================================================


def trigamma_inverse(x, tol=1e-8):
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = polygamma(1, y)
        delta = tri * (1 - tri / x) / polygamma(2, y)
        y = y + delta
        if -delta / y < tol:
            break
    return float(y)


def fit_fdist(s2, df1):
    """
    Moment estimation of a scaled F prior for residual variances.

    Parameters:
    -----------
    s2 : array
        Residual variances
    df1 : array or float
        Their degrees of freedom

    Returns:
    --------
    (s20, d0) : prior variance and prior degrees of freedom (inf when the
        variances are no more dispersed than sampling error explains)
    """
    s2 = np.asarray(s2, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), s2.shape)

    ok = np.isfinite(s2) & (s2 > 0) & np.isfinite(df1) & (df1 > 0)
    x = s2[ok]
    d = df1[ok]

    if x.size < 2:
        return np.nan, 0.0

    # Avoid zeros like limma does
    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)
    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.sum((e - emean) ** 2) / (x.size - 1)
    evar = evar - np.mean(polygamma(1, d / 2.0))

    if evar > 0:
        d0 = 2 * trigamma_inverse(evar)
        s20 = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        d0 = np.inf
        s20 = float(np.exp(emean))

    return s20, d0


def squeeze_variances(sigma2, df):
    """
    Shrink residual variances towards a common prior (empirical Bayes).

    Returns:
    --------
    (var_post, var_prior, df_prior)
        Posterior variances (NaN where the input is unusable), prior variance
        and prior degrees of freedom (0 when there is nothing to borrow from)
    """
    sigma2 = np.asarray(sigma2, dtype=float)
    df = np.asarray(df, dtype=float)

    s20, d0 = fit_fdist(sigma2, df)
    if not np.isfinite(s20) or d0 == 0:
        return sigma2.copy(), np.nan, 0.0

    usable = np.isfinite(sigma2) & np.isfinite(df) & (df > 0)
    if np.isinf(d0):
        var_post = np.where(usable, s20, np.nan)
    else:
        var_post = np.where(usable, (df * sigma2 + d0 * s20) / (df + d0), np.nan)

    return var_post, s20, d0


# =============================================================================
# MULTIPLE TESTING
# =============================================================================


def apply_multiple_testing_correction(contrast_table, config):
    """Apply multiple testing correction within each contrast"""

    contrast_table = contrast_table.copy()
    contrast_table["adj.P.Val"] = np.nan
    contrast_table["Significant"] = False

    if contrast_table.empty:
        return contrast_table

    if "P.Value" not in contrast_table.columns:
        print("Warning: No P.Value column found for correction")
        return contrast_table

    for contrast, rows in contrast_table.groupby("contrast", sort=False):
        valid = rows["P.Value"].dropna()
        if len(valid) == 0:
            continue

        if config.correction_method == "none":
            adjusted = valid.values
        else:
            _, adjusted, _, _ = multipletests(valid.values, method=config.correction_method)

        contrast_table.loc[valid.index, "adj.P.Val"] = adjusted

    contrast_table["Significant"] = (
        contrast_table["adj.P.Val"] < config.q_value_threshold
    ).fillna(False).astype(bool)

    return contrast_table


# =============================================================================
# ORCHESTRATION
# =============================================================================


def _empty_contrasts():
    return pd.DataFrame(columns=CONTRAST_COLUMNS)


def _analyze_group(key, group_data, sample_lookup, mode, formulas, robust_iterations,
                   summarization_method):
    """Summarize and/or model one protein group; failures are recorded, not raised."""
    row = {
        "key": key,
        "status": "ok",
        "formula": None,
        "n_obs": len(group_data),
        "n_features": group_data["feature"].nunique(),
        "data_summarized": None,
        "model": None,
    }

    model_data = group_data
    if mode in ("summarize", "summarize_model"):
        try:
            summarized = summarize_group(group_data, summarization_method)
        except (ValueError, RuntimeError, np.linalg.LinAlgError) as e:
            row["status"] = f"Summarization failed: {e}"
            return row

        summarized = summarized.merge(sample_lookup, on="sample", how="left")
        row["data_summarized"] = summarized
        model_data = summarized

    if mode == "summarize":
        return row

    if robust_iterations == "auto":
        iterations = 1 if mode == "summarize_model" else 20
    else:
        iterations = robust_iterations

    fit, reason = fit_with_fallback(model_data, formulas, robust_iterations=iterations)
    if fit is None:
        row["status"] = f"All formulas failed: {reason}"
        return row

    row["formula"] = fit.formula
    row["n_obs"] = fit.n_obs
    row["model"] = fit
    return row


def run_protein_analysis(pset: PeptideSet, config: StatisticalConfig) -> pd.DataFrame:
    """
    Differential analysis of every protein group.

    Parameters:
    -----------
    pset : PeptideSet
        Log-scale, filtered dataset (peptide-level, or protein-level for mode 'model')
    config : StatisticalConfig
        Analysis configuration

    Returns:
    --------
    pd.DataFrame : One row per protein group with the grouping variables,
        status, selected formula, model summary statistics, the summarized data
        (if any), the model (if keep_model) and a nested contrasts table
        (contrast, logFC, SE, t, df, P.Value, adj.P.Val, Significant)
    """

    print("=" * 60)
    print("PROTEIN-LEVEL DIFFERENTIAL ANALYSIS")
    print("=" * 60)

    try:
        config.validate()
    except ValueError as e:
        raise ValueError(f"Configuration error: {e}") from e

    group_vars = list(config.group_vars)
    missing = [col for col in group_vars if col not in pset.feature_data.columns]
    if missing:
        raise ValueError(f"Grouping columns not found in feature annotation: {missing}")

    # Step 1: long observation table
    print("Step 1: Building observation table...")
    formula_terms = set()
    if config.mode != "summarize":
        formula_terms = set(re.findall(r"[A-Za-z_][A-Za-z0-9_.]*", " ".join(config.formulas)))
    sample_vars = [col for col in pset.sample_data.columns if col not in group_vars]
    feature_vars = [col for col in pset.feature_data.columns
                    if col in group_vars or (col in formula_terms and col not in sample_vars)]
    long_df = pset.to_long(feature_vars=feature_vars, sample_vars=sample_vars)
    long_df["sample"] = long_df["sample"].astype(str)
    print(f"  Observations: {len(long_df):,}")

    sample_lookup = pset.sample_data[sample_vars].copy()
    sample_lookup.index = sample_lookup.index.astype(str)
    sample_lookup.index.name = "sample"
    sample_lookup = sample_lookup.reset_index()

    # Step 2: contrasts
    contrast_matrix = None
    if config.mode != "summarize":
        print("\nStep 2: Building contrasts...")
        factor_levels = {}
        for col in sample_vars:
            factor_levels[col] = sorted(pset.sample_data[col].dropna().astype(str).unique())
        for col in feature_vars:
            if col not in factor_levels:
                factor_levels[col] = sorted(pset.feature_data[col].dropna().astype(str).unique())
        contrast_matrix = build_contrast_matrix(config.contrasts, factor_levels)
        print(f"  Contrasts: {list(contrast_matrix.columns)}")

    # Step 3: per-group fan-out
    groups = list(long_df.groupby(group_vars, sort=True))
    print(f"\nStep 3: Running '{config.mode}' on {len(groups)} protein groups "
          f"(n_jobs={config.n_jobs})...")
    if config.mode != "summarize":
        print(f"  Formulas (in fallback order): {config.formulas}")

    rows = Parallel(n_jobs=config.n_jobs)(
        delayed(_analyze_group)(
            key, group_data, sample_lookup, config.mode, list(config.formulas),
            config.robust_iterations, config.summarization_method,
        )
        for key, group_data in groups
    )

    records = []
    for row in rows:
        key = row.pop("key")
        key = key if isinstance(key, tuple) else (key,)
        record = dict(zip(group_vars, key))
        record.update(row)
        records.append(record)

    n_failed = sum(1 for record in records if record["status"] != "ok")
    print(f"  ✓ Completed {len(records)} groups ({n_failed} failed)")

    # Step 4: variance moderation
    fits = [record["model"] for record in records]
    sigma = np.array([fit.sigma if fit is not None else np.nan for fit in fits])
    df = np.array([fit.df if fit is not None else np.nan for fit in fits])

    if config.mode != "summarize" and config.squeeze_variance:
        print("\nStep 4: Moderating residual variances...")
        var_post, var_prior, df_prior = squeeze_variances(sigma ** 2, df)
        sigma_post = np.sqrt(var_post)
        df_post = df + df_prior
        sigma_prior = np.sqrt(var_prior) if np.isfinite(var_prior) else np.nan
        print(f"  Prior df: {df_prior:.2f}, prior sigma: {sigma_prior:.4f}")
    else:
        sigma_post, df_post = sigma, df
        sigma_prior, df_prior = np.nan, 0.0

    # Step 5: contrasts and multiple testing
    contrast_tables = []
    for i, (record, fit) in enumerate(zip(records, fits)):
        record["sigma"] = sigma[i]
        record["df"] = df[i]
        record["sigma_prior"] = sigma_prior
        record["df_prior"] = df_prior
        record["sigma_post"] = sigma_post[i]
        record["df_post"] = df_post[i]

        if fit is None or contrast_matrix is None:
            continue
        table = compute_contrasts(fit, contrast_matrix, sigma=sigma_post[i], df=df_post[i])
        table["_row"] = i
        contrast_tables.append(table)

    if contrast_tables:
        print("\nStep 5: Multiple testing correction...")
        all_contrasts = apply_multiple_testing_correction(
            pd.concat(contrast_tables, ignore_index=True), config
        )
        print(f"  Method: {config.correction_method}")
        print(f"  Significant (q < {config.q_value_threshold}): "
              f"{int(all_contrasts['Significant'].sum())} of {int(all_contrasts['P.Value'].notna().sum())} tests")
        by_row = {i: table.drop(columns="_row").reset_index(drop=True)
                  for i, table in all_contrasts.groupby("_row")}
    else:
        by_row = {}

    for i, record in enumerate(records):
        record["contrasts"] = by_row.get(i, _empty_contrasts())
        if not config.keep_model:
            record["model"] = None

    columns = group_vars + [
        "status", "formula", "n_obs", "n_features", "sigma", "df", "sigma_prior",
        "df_prior", "sigma_post", "df_post", "data_summarized", "model", "contrasts",
    ]
    results = pd.DataFrame(records, columns=columns)
    results.attrs["group_vars"] = group_vars

    print("\n✓ Differential analysis completed!")
    return results


def get_contrast_table(results, group_vars=None):
    """
    Unnest the per-group contrast tables into one flat table.

    Parameters:
    -----------
    results : pd.DataFrame
        Output of run_protein_analysis()
    group_vars : list of str, optional
        Grouping columns to carry along (default: those used in the analysis)

    Returns:
    --------
    pd.DataFrame : group variables followed by the contrast columns, sorted by P.Value
    """
    if group_vars is None:
        group_vars = results.attrs.get("group_vars")
    if group_vars is None:
        group_vars = list(results.columns[:list(results.columns).index("status")])

    tables = []
    for _, row in results.iterrows():
        contrasts = row["contrasts"]
        if contrasts is None or len(contrasts) == 0:
            continue
        table = contrasts.copy()
        for position, col in enumerate(group_vars):
            table.insert(position, col, row[col])
        tables.append(table)

    if not tables:
        return pd.DataFrame(columns=list(group_vars) + CONTRAST_COLUMNS)

    flat = pd.concat(tables, ignore_index=True)
    return flat.sort_values(["contrast", "P.Value"], na_position="last").reset_index(drop=True)


def display_analysis_summary(results, config, label_top_n=10):
    """
    Display a summary of the differential analysis.

    Parameters:
    -----------
    results : pd.DataFrame
        Output of run_protein_analysis()
    config : StatisticalConfig
        Configuration used for the analysis
    label_top_n : int
        Number of top hits to list per contrast
    """
    if results is None or len(results) == 0:
        print("⚠️ No differential analysis results available")
        return

    print("=" * 60)
    print("STATISTICAL ANALYSIS SUMMARY")
    print("=" * 60)

    n_ok = int((results["status"] == "ok").sum())
    print("Analysis Overview:")
    print(f"  Mode: {config.mode}")
    print(f"  Protein groups analyzed: {len(results):,}")
    print(f"  Successful: {n_ok:,}")

    if results["formula"].notna().any():
        print("\nFormula usage:")
        for formula, count in results["formula"].value_counts().items():
            print(f"  {formula}: {count}")

    failed = results[results["status"] != "ok"]
    if len(failed) > 0:
        print("\nFailure Analysis:")
        reasons = failed["status"].str.split(":").str[0].value_counts()
        for reason, count in reasons.items():
            print(f"  {reason}: {count}")

    flat = get_contrast_table(results)
    if flat.empty:
        print("\n❌ No contrast results available")
        return

    for contrast, table in flat.groupby("contrast"):
        n_sig = int(table["Significant"].sum())
        print(f"\n=== {contrast}: {n_sig} significant (q < {config.q_value_threshold}) ===")
        top = table.dropna(subset=["P.Value"]).nsmallest(label_top_n, "P.Value")
        if len(top) > 0:
            display_cols = [c for c in top.columns if c not in ("contrast", "df")]
            print(top[display_cols].to_string(index=False))

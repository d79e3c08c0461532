"""
Data Normalization Module for Proteomics Differential Expression Toolkit

Functions for log transformation and normalization of feature intensities.
"""

import warnings
from typing import Any, Dict

import numpy as np
import pandas as pd
from scipy import optimize

from .dataset import PeptideSet


def get_normalization_characteristics() -> Dict[str, Dict[str, Any]]:
    """
    Get characteristics of each normalization method.

    Returns:
    --------
    Dict[str, Dict[str, Any]]
        Dictionary with normalization method characteristics
    """
    return {
        "vsn": {
            "expects_log_input": False,
            "log_transformed": True,
            "description": "Variance Stabilizing Normalization - glog2 (arcsinh) transformed",
        },
        "log2": {
            "expects_log_input": False,
            "log_transformed": True,
            "description": "Plain log2 transformation, no between-sample adjustment",
        },
        "center.median": {
            "expects_log_input": True,
            "log_transformed": True,
            "description": "Subtract each sample's median from log intensities",
        },
        "center.mean": {
            "expects_log_input": True,
            "log_transformed": True,
            "description": "Subtract each sample's mean from log intensities",
        },
        "quantiles": {
            "expects_log_input": True,
            "log_transformed": True,
            "description": "Quantile normalization - identical distributions for all samples",
        },
        "none": {
            "expects_log_input": False,
            "log_transformed": False,
            "description": "No normalization applied",
        },
    }


def is_normalization_log_transformed(normalization_method: str) -> bool:
    """
    Check if a normalization method produces log-transformed data.

    Parameters:
    -----------
    normalization_method : str
        Name of the normalization method

    Returns:
    --------
    bool
        True if method produces log-transformed data, False otherwise
    """
    characteristics = get_normalization_characteristics()
    method_lower = normalization_method.lower()

    if method_lower in characteristics:
        return characteristics[method_lower]["log_transformed"]
    else:
        # Unknown method - assume it's not log transformed
        return False


def log_transform(pset: PeptideSet, base: float = 2) -> PeptideSet:
    """
    Log-transform intensities.

    Non-positive intensities cannot be log-transformed and become NaN; mask
    zeros with mask_zero_intensities() beforehand to make this explicit.

    Parameters:
    -----------
    pset : PeptideSet
        Dataset on the original intensity scale
    base : float
        Logarithm base (default 2)

    Returns:
    --------
    PeptideSet : Log-transformed copy
    """
    result = pset.copy()

    non_positive = int((result.exprs <= 0).sum().sum())
    if non_positive:
        warnings.warn(f"{non_positive} non-positive intensities set to NaN before log transformation")

    values = result.exprs.where(result.exprs > 0)
    result.exprs = np.log(values) / np.log(base)

    print(f"Applied log{base:g} transformation to {result.n_samples} samples")
    result.log_step(f"log{base:g} transformed")
    return result


def vsn_normalize(pset: PeptideSet, optimize_params: bool = False) -> PeptideSet:
    """
    Variance Stabilizing Normalization (VSN) using arcsinh transformation.

    Each sample x is mapped to arcsinh(a * x + b) / ln(2), which behaves like
    log2 for high intensities and like a linear scale near zero. With the
    default calibration a = 1 / median(x), sample medians are aligned.

    Parameters:
    -----------
    pset : PeptideSet
        Raw intensity data (original scale, zeros masked as NaN)
    optimize_params : bool
        Whether to optimize VSN parameters per sample (default False for speed)

    Returns:
    --------
    PeptideSet : VSN normalized copy on a log2-like scale
    """
    print("Starting VSN normalization...")

    def vsn_transformation_scipy(
        data_series: pd.Series, optimize_params: bool = False
    ) -> pd.Series:
        """Apply VSN transformation to a single sample"""
        data_values = np.asarray(data_series.values, dtype=float)

        # Remove missing, zeros and negative values for parameter estimation
        data_clean = data_values[np.isfinite(data_values) & (data_values > 0)]

        if len(data_clean) == 0:
            return pd.Series(np.full_like(data_values, np.nan), index=data_series.index)

        a_opt = 1.0 / np.quantile(data_clean, 0.5)
        b_opt = 0.0

        if optimize_params:
            # Optimize VSN parameters for variance stabilization
            def variance_heterogeneity(params):
                a, b = params
                if a <= 0:  # Ensure positive scaling
                    return 1e6

                transformed = np.arcsinh(a * data_clean + b)

                # Sort by original intensity
                sorted_transformed = transformed[np.argsort(data_clean)]

                # Calculate rolling window variances
                window_size = max(20, len(data_clean) // 20)
                variances = []

                for i in range(
                    0, len(sorted_transformed) - window_size, max(1, window_size // 4)
                ):
                    window_data = sorted_transformed[i : i + window_size]
                    if len(window_data) > 10:
                        variances.append(np.var(window_data))

                # Return coefficient of variation of variances (want this small)
                if len(variances) > 1:
                    mean_var = np.mean(variances)
                    if mean_var > 0:
                        return np.std(variances) / mean_var
                return 1e6

            best_result = None
            best_score = float("inf")

            starting_points = [
                [a_opt, 0.0],
                [1.0, 0.0],
                [1 / np.quantile(data_clean, 0.25), 0.0],
            ]

            for start_params in starting_points:
                try:
                    result = optimize.minimize(
                        variance_heterogeneity,
                        start_params,
                        method="Nelder-Mead",
                        options={"maxiter": 500},
                    )

                    if result.success and result.fun < best_score:
                        best_result = result
                        best_score = result.fun
                except (ValueError, RuntimeError):
                    continue

            if best_result is not None and best_result.x[0] > 0:
                a_opt, b_opt = best_result.x

        transformed = np.arcsinh(a_opt * data_values + b_opt) / np.log(2)
        return pd.Series(transformed, index=data_series.index)

    result = pset.copy()
    normalized = result.exprs.copy()

    print(f"Applying VSN transformation to {pset.n_samples} samples...")
    for i, col in enumerate(pset.exprs.columns):
        if (i + 1) % 5 == 0 or i == 0:  # Progress indicator
            print(f"Processing sample {i + 1}/{pset.n_samples}: {col}")

        normalized[col] = vsn_transformation_scipy(
            pset.exprs[col], optimize_params=optimize_params
        )

    result.exprs = normalized
    print("VSN transformation completed!")

    result.log_step(f"VSN normalized (optimize_params={optimize_params})")
    return result


def center_normalize(pset: PeptideSet, statistic: str = "median") -> PeptideSet:
    """
    Center each sample of log-scale data on zero.

    Parameters:
    -----------
    pset : PeptideSet
        Log-transformed dataset
    statistic : str
        "median" or "mean"

    Returns:
    --------
    PeptideSet : Centered copy
    """
    if statistic not in ("median", "mean"):
        raise ValueError(f"Unknown centering statistic: {statistic}")

    result = pset.copy()
    centers = result.exprs.median() if statistic == "median" else result.exprs.mean()
    result.exprs = result.exprs - centers

    print(f"Centered {result.n_samples} samples on their {statistic}")
    result.log_step(f"center.{statistic} normalized")
    return result


def quantile_normalize(pset: PeptideSet) -> PeptideSet:
    """
    Quantile normalization - makes the distribution of each sample identical.

    Missing values stay missing; each sample's observed values are mapped onto
    the average quantile function of all samples.

    Returns:
    --------
    PeptideSet : Quantile normalized copy
    """
    print("Starting quantile normalization...")

    result = pset.copy()
    exprs = result.exprs

    n_grid = int(exprs.notna().sum().max()) if exprs.size else 0
    if n_grid < 2:
        warnings.warn("Too few observations for quantile normalization - data left unchanged")
        return result

    grid = np.linspace(0, 1, n_grid)
    quantile_functions = []
    for col in exprs.columns:
        values = exprs[col].dropna().values
        if len(values) > 0:
            quantile_functions.append(np.quantile(values, grid))
    reference = np.mean(quantile_functions, axis=0)

    normalized = exprs.copy()
    for col in exprs.columns:
        observed = exprs[col].dropna()
        if len(observed) == 0:
            continue
        if len(observed) == 1:
            positions = np.array([0.5])
        else:
            positions = (observed.rank(method="average").values - 1) / (len(observed) - 1)
        normalized.loc[observed.index, col] = np.interp(positions, grid, reference)

    result.exprs = normalized
    print(f"Quantile normalization completed for {result.n_samples} samples")
    result.log_step("quantile normalized")
    return result


def normalize(pset: PeptideSet, method: str = "vsn", **kwargs) -> PeptideSet:
    """
    Normalize a dataset with the named method.

    Parameters:
    -----------
    pset : PeptideSet
        Dataset (raw scale for "vsn" and "log2", log scale otherwise)
    method : str
        One of get_normalization_characteristics()
    **kwargs
        Passed to the underlying normalization function

    Returns:
    --------
    PeptideSet : Normalized copy
    """
    method_lower = method.lower()

    if method_lower == "vsn":
        return vsn_normalize(pset, **kwargs)
    if method_lower == "log2":
        return log_transform(pset, base=2)
    if method_lower in ("center.median", "center.mean"):
        return center_normalize(pset, statistic=method_lower.split(".")[1])
    if method_lower == "quantiles":
        return quantile_normalize(pset)
    if method_lower == "none":
        return pset.copy()

    raise ValueError(
        f"Unknown normalization method: {method}. "
        f"Choose from {list(get_normalization_characteristics())}"
    )

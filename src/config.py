#!/usr/bin/env python3
"""
Configuration constants for the statbridge engine layer.

This module centralizes R engine locations, bootstrap and execution budgets,
package lists, and methodological thresholds used by the analysis generators.
Machine-specific values can be overridden through environment variables, and
a YAML file can override engine settings at runtime (see engine.settings).

Usage
-----
    from config import EXECUTION_TIMEOUT_MS, CORE_PACKAGES

    # Or import specific sections
    from config import (
        # Engine
        R_EXECUTABLE,
        ENGINE_BACKEND,

        # Budgets
        INIT_MAX_ATTEMPTS,
        EXECUTION_MAX_RETRIES,

        # Methodological Parameters
        SIGNIFICANCE_LEVEL,
        MIN_SAMPLE_SIZES,
    )
"""
from __future__ import annotations

import os
from pathlib import Path


# =============================================================================
# PATHS
# =============================================================================

def _find_project_root() -> Path:
    """Find project root by looking for characteristic files."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'src').exists() and (parent / 'pyproject.toml').exists():
            return parent
    # Fallback: use parent of src/
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = _find_project_root()

# Optional YAML overrides for engine settings
ENGINE_SETTINGS_FILE = Path(
    os.environ.get('R_ENGINE_SETTINGS', PROJECT_ROOT / 'engine.yml')
)

# R worker script shipped with the package
WORKER_SCRIPT = Path(__file__).resolve().parent / 'engine' / 'backends' / 'r' / 'worker.R'


# =============================================================================
# ENGINE
# =============================================================================

# Registered backend used by default ('rscript')
ENGINE_BACKEND = 'rscript'

# R front-end used to launch the worker
R_EXECUTABLE = os.environ.get('R_EXECUTABLE', 'Rscript')

# Private package library for installs made during bootstrap (None = R default)
R_LIBRARY_DIR = os.environ.get('R_ENGINE_LIBRARY') or None

# Package repositories, in priority order
PACKAGE_REPOSITORIES = {
    'CRAN': 'https://cloud.r-project.org/',
    'RUNIVERSE': 'https://cran.r-universe.dev/',
}

# Packages installed during bootstrap (failures are warnings)
CORE_PACKAGES = ['psych', 'corrplot', 'GPArotation', 'car', 'cluster']

# Optional packages; failure disables structural equation modeling
OPTIONAL_PACKAGES = ['lavaan', 'quadprog']

# Libraries that must load for the engine to be usable
REQUIRED_LIBRARIES = ['psych', 'GPArotation']

# Libraries loaded when available, recorded as engine capabilities
OPTIONAL_LIBRARIES = ['lavaan']


# =============================================================================
# BOOTSTRAP AND EXECUTION BUDGETS
# =============================================================================

# Bootstrap attempts before the engine enters the Failed state
INIT_MAX_ATTEMPTS = 3

# Backoff after failed bootstrap attempt n: base * 2**(n - 1) seconds
INIT_BACKOFF_BASE_SECONDS = 1.0

# Poll loop used by callers that cannot await the in-flight bootstrap
INIT_POLL_INTERVAL_SECONDS = 0.1
INIT_POLL_MAX_CHECKS = 100

# Wall-clock budget per submission
EXECUTION_TIMEOUT_MS = int(os.environ.get('R_ENGINE_TIMEOUT_MS', 60000))

# Retries after a timeout or a corrupted engine
EXECUTION_MAX_RETRIES = 2

# Delay between execution retries: delay * (attempt + 1) seconds
EXECUTION_RETRY_DELAY_SECONDS = 1.0

# Seconds allowed for the worker to answer the startup ping
WORKER_STARTUP_TIMEOUT_SECONDS = 30.0


# =============================================================================
# CODE GENERATION
# =============================================================================

# Significant digits for numeric literals embedded in R code
NUMERIC_LITERAL_DIGITS = 15

# Placeholder for empty group/category labels
EMPTY_LABEL_PLACEHOLDER = 'NA_label'

# Characters kept from raw error messages that match no known signature
ERROR_MESSAGE_MAX_CHARS = 100


# =============================================================================
# METHODOLOGICAL PARAMETERS
# =============================================================================

# Statistical thresholds
SIGNIFICANCE_LEVEL = 0.05
CONFIDENCE_LEVEL = 0.95

# Chi-square sparse cell warning: % of expected counts below 5
SPARSE_CELL_PCT_THRESHOLD = 20.0

# Shapiro-Wilk is defined for 3 <= n <= 5000
NORMALITY_MIN_N = 3
NORMALITY_MAX_N = 5000

# Sentinel for statistics whose preconditions were not met
NOT_COMPUTED = -1.0

# Bootstrap settings
BOOTSTRAP_ITERATIONS = 1000
BOOTSTRAP_SEED = 42

# K-means reproducibility and silhouette cut-off
CLUSTER_SEED = 123
CLUSTER_NSTART = 25
SILHOUETTE_MAX_N = 2000

# EFA parallel analysis iterations
PARALLEL_ANALYSIS_ITERATIONS = 20

# Minimum observations per analysis (per group for group comparisons)
MIN_SAMPLE_SIZES = {
    'descriptive': 2,
    'correlation': 3,
    'ttest_independent': 2,
    'ttest_paired': 2,
    'oneway_anova': 2,
    'mann_whitney': 2,
    'kruskal_wallis': 2,
    'wilcoxon_signed_rank': 2,
    'chi_square': 2,
    'linear_regression': 3,
    'logistic_regression': 10,
    'cronbach_alpha': 3,
    'efa': 3,
    'cfa': 10,
    'sem': 10,
    'cluster': 3,
    'two_way_anova': 3,
    'mediation': 10,
    'moderation': 10,
}


# =============================================================================
# RESULT CACHING SETTINGS
# =============================================================================

# Enable in-memory caching of analysis results
CACHE_ENABLED = True

# Entry lifetime and capacity
CACHE_TTL_SECONDS = 30 * 60
CACHE_MAX_ENTRIES = 50


# =============================================================================
# VALIDATION
# =============================================================================

def validate_config() -> bool:
    """
    Validate configuration settings.

    Returns
    -------
    bool
        True if all validations pass

    Raises
    ------
    ValueError
        If any configuration is invalid
    """
    errors = []

    if INIT_MAX_ATTEMPTS < 1:
        errors.append(f"INIT_MAX_ATTEMPTS must be positive: {INIT_MAX_ATTEMPTS}")

    if EXECUTION_TIMEOUT_MS <= 0:
        errors.append(f"EXECUTION_TIMEOUT_MS must be positive: {EXECUTION_TIMEOUT_MS}")

    if EXECUTION_MAX_RETRIES < 0:
        errors.append(f"EXECUTION_MAX_RETRIES must be non-negative: {EXECUTION_MAX_RETRIES}")

    if SIGNIFICANCE_LEVEL <= 0 or SIGNIFICANCE_LEVEL >= 1:
        errors.append(f"SIGNIFICANCE_LEVEL must be between 0 and 1: {SIGNIFICANCE_LEVEL}")

    if BOOTSTRAP_ITERATIONS < 1:
        errors.append(f"BOOTSTRAP_ITERATIONS must be positive: {BOOTSTRAP_ITERATIONS}")

    if not PACKAGE_REPOSITORIES:
        errors.append("PACKAGE_REPOSITORIES must name at least one repository")

    for name, n in MIN_SAMPLE_SIZES.items():
        if n < 1:
            errors.append(f"MIN_SAMPLE_SIZES['{name}'] must be positive: {n}")

    if errors:
        raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    return True


def get_min_sample_size(analysis: str) -> int:
    """Minimum number of observations required by an analysis (default 2)."""
    return MIN_SAMPLE_SIZES.get(analysis, 2)


# =============================================================================
# MODULE INITIALIZATION
# =============================================================================

if __name__ == '__main__':
    # Print configuration when run directly
    print("statbridge Configuration")
    print("=" * 50)
    print(f"PROJECT_ROOT:          {PROJECT_ROOT}")
    print(f"R_EXECUTABLE:          {R_EXECUTABLE}")
    print(f"WORKER_SCRIPT:         {WORKER_SCRIPT}")
    print(f"ENGINE_SETTINGS_FILE:  {ENGINE_SETTINGS_FILE}")
    print()
    print(f"EXECUTION_TIMEOUT_MS:  {EXECUTION_TIMEOUT_MS}")
    print(f"EXECUTION_MAX_RETRIES: {EXECUTION_MAX_RETRIES}")
    print()
    print("Validating configuration...")
    try:
        validate_config()
        print("Configuration valid.")
    except ValueError as e:
        print(f"Configuration invalid:\n{e}")

"""
Utilities package.

Provides shared utilities for the analysis layer:
- cache: In-memory result caching keyed by input hashes
- helpers: Formatting helpers for p-values and estimates
"""
from .cache import ResultCache
from .helpers import add_significance_stars, format_ci, format_pvalue

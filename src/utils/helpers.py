#!/usr/bin/env python3
"""
Formatting helpers for analysis results.

Shared by result ``summary()`` methods and the status surface.
"""
from __future__ import annotations

import math
from typing import Optional

from config import NOT_COMPUTED


def format_pvalue(p: Optional[float], threshold: float = 0.001) -> str:
    """Format p-value for display; sentinel and missing values read 'n/a'."""
    if p is None or (isinstance(p, float) and math.isnan(p)) or p == NOT_COMPUTED:
        return "n/a"
    if p < threshold:
        return f"<{threshold}"
    return f"{p:.3f}"


def format_ci(lo: float, hi: float, decimals: int = 3) -> str:
    """Format confidence interval as [lo, hi]."""
    return f"[{lo:.{decimals}f}, {hi:.{decimals}f}]"


def add_significance_stars(p: Optional[float]) -> str:
    """Add significance stars based on p-value."""
    if p is None or (isinstance(p, float) and math.isnan(p)) or p == NOT_COMPUTED:
        return ""
    if p < 0.001:
        return "***"
    elif p < 0.01:
        return "**"
    elif p < 0.05:
        return "*"
    return ""


def format_estimate(value: float, p: Optional[float] = None, decimals: int = 3) -> str:
    """Format an estimate with significance stars."""
    return f"{value:.{decimals}f}{add_significance_stars(p)}"

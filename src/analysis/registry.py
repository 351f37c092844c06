"""
Analysis Registry.

Catalogue of the runnable analyses with automatic registration.

Usage
-----
    from analysis.registry import get_analysis, list_analyses, run_analysis

    # List available analyses
    print(list_analyses())
    # {'correlation': 'Correlation matrix (Pearson, Spearman, Kendall)', ...}

    # Run by name, optionally through a result cache
    result = await run_analysis('ttest_independent', gateway, group1=g1, group2=g2)

    # Register a custom analysis
    @register_analysis('custom', 'My analysis')
    async def run_custom(gateway, data):
        ...
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from engine.gateway import ExecutionGateway
    from utils.cache import ResultCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisEntry:
    """Registered analysis entry point."""

    name: str
    description: str
    runner: Callable[..., Awaitable]


# Analysis registry: name -> entry
_analysis_registry: dict[str, AnalysisEntry] = {}


def register_analysis(name: str, description: str = ''):
    """
    Decorator to register an async ``run_*`` function.

    Parameters
    ----------
    name : str
        Analysis name (e.g., 'ttest_independent')
    description : str
        One-line human-readable description

    Returns
    -------
    Callable
        Decorator function
    """
    def decorator(fn):
        _analysis_registry[name] = AnalysisEntry(name=name, description=description, runner=fn)
        return fn
    return decorator


def get_analysis(name: str) -> AnalysisEntry:
    """
    Look up a registered analysis.

    Raises
    ------
    ValueError
        If the analysis name is not recognized
    """
    _ensure_analyses_loaded()

    key = name.lower()
    if key not in _analysis_registry:
        available = ', '.join(sorted(_analysis_registry.keys()))
        raise ValueError(
            f"Unknown analysis: '{name}'. Available analyses: {available}"
        )
    return _analysis_registry[key]


def list_analyses() -> dict[str, str]:
    """
    List all registered analyses.

    Returns
    -------
    dict[str, str]
        Dictionary of analysis_name -> description
    """
    _ensure_analyses_loaded()
    return {name: entry.description for name, entry in sorted(_analysis_registry.items())}


async def run_analysis(
    name: str,
    gateway: 'ExecutionGateway',
    cache: Optional['ResultCache'] = None,
    **kwargs,
):
    """
    Run a registered analysis by name.

    Parameters
    ----------
    name : str
        Registered analysis name
    gateway : ExecutionGateway
        Gateway used to reach the engine
    cache : ResultCache, optional
        When given, results are looked up and stored by input hash
    **kwargs
        Inputs and options passed to the ``run_*`` function

    Returns
    -------
    The analysis result dataclass
    """
    entry = get_analysis(name)

    if cache is None:
        return await entry.runner(gateway, **kwargs)

    return await cache.get_or_compute(
        entry.name,
        compute_fn=lambda: entry.runner(gateway, **kwargs),
        depends_on=kwargs,
    )


def _ensure_analyses_loaded() -> None:
    """Ensure all family modules are imported for registration."""
    # Importing a family twice is a no-op, so a partially filled registry
    # (one family imported directly) is completed here
    from . import (  # noqa: F401
        categorical,
        comparison,
        correlation,
        descriptive,
        mediation,
        multivariate,
        regression,
        reliability,
        sem,
    )

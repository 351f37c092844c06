"""
Engine service for the status API.

Owns the process-wide ``EngineManager``, its ``ExecutionGateway`` and the
result cache, and runs bootstraps in the background so HTTP handlers return
immediately.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import math
from typing import Any, Optional

from analysis.registry import get_analysis, list_analyses, run_analysis
from engine import EngineManager, EngineStatus, ExecutionGateway, InitializationFailure
from utils.cache import ResultCache

logger = logging.getLogger(__name__)


class EngineService:
    """Service for engine lifecycle control and analysis execution."""

    def __init__(
        self,
        manager: Optional[EngineManager] = None,
        cache: Optional[ResultCache] = None,
    ):
        self.manager = manager or EngineManager()
        self.gateway = ExecutionGateway(self.manager)
        self.cache = cache if cache is not None else ResultCache()
        self._init_task: Optional[asyncio.Task] = None

    def status(self) -> EngineStatus:
        return self.manager.get_status()

    def start(self) -> EngineStatus:
        """
        Begin bootstrapping in the background.

        Returns
        -------
        EngineStatus
            Status right after scheduling; poll or subscribe for progress
        """
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self._initialize())
        return self.status()

    async def _initialize(self) -> None:
        try:
            await self.manager.init_engine()
        except InitializationFailure as e:
            # Surfaced through get_status().last_error
            logger.error(f"Background initialization failed: {e.message}")

    async def wait_ready(self) -> None:
        """Await a scheduled background bootstrap, if any."""
        if self._init_task is not None:
            await self._init_task

    async def reset(self) -> EngineStatus:
        task, self._init_task = self._init_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.manager.reset_engine()
        self.cache.invalidate()
        return self.status()

    def analyses(self) -> dict[str, str]:
        return list_analyses()

    def check_params(self, name: str, params: dict[str, Any]) -> None:
        """
        Check ``params`` against the analysis signature without running it.

        Raises
        ------
        TypeError
            If a parameter is unknown or a required one is missing
        """
        runner = get_analysis(name).runner
        inspect.signature(runner).bind(self.gateway, **params)

    async def run(
        self,
        name: str,
        params: dict[str, Any],
        use_cache: bool = True,
        timeout_ms: Optional[int] = None,
    ) -> dict:
        """Run a registered analysis and return its result as a dict."""
        if timeout_ms is not None:
            params = {**params, 'timeout_ms': timeout_ms}
        result = await run_analysis(
            name, self.gateway, cache=self.cache if use_cache else None, **params
        )
        return json_safe(result.to_dict())

    async def shutdown(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        await self.manager.close()


def json_safe(value: Any) -> Any:
    """Replace NaN and infinite floats (R NA, NaN, Inf) with None for JSON bodies."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


# Singleton instance
_engine_service: Optional[EngineService] = None


def get_engine_service() -> EngineService:
    """Get the engine service singleton."""
    global _engine_service
    if _engine_service is None:
        _engine_service = EngineService()
    return _engine_service


def set_engine_service(service: Optional[EngineService]) -> None:
    """Replace the singleton (used by ``create_app`` and tests)."""
    global _engine_service
    _engine_service = service

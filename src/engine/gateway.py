"""
Execution gateway.

Submits generated R code to the engine under a wall-clock timeout, recovers
transient failures (timeouts and lost handles) by reinitializing and retrying
within a fixed budget, and turns every terminal failure into a translated
``EngineError``.

Usage
-----
    from engine import EngineManager, ExecutionGateway, ExecutionRequest

    gateway = ExecutionGateway(EngineManager())
    envelope = await gateway.execute(ExecutionRequest(code='list(m = mean(1:10))'))
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from config import EXECUTION_MAX_RETRIES, EXECUTION_TIMEOUT_MS

from .errors import (
    DomainError,
    EngineCorruption,
    EngineError,
    ExecutionTimeout,
    InitializationFailure,
    classify,
    is_corruption,
    translate,
)
from .lifecycle import EngineManager

logger = logging.getLogger(__name__)


class ExecutionRequest(BaseModel):
    """Immutable unit of work submitted to the gateway."""

    model_config = ConfigDict(frozen=True)

    code: str
    max_retries: int = Field(EXECUTION_MAX_RETRIES, ge=0)
    timeout_ms: int = Field(EXECUTION_TIMEOUT_MS, gt=0)


class ExecutionGateway:
    """
    Timeout and retry discipline around engine evaluation.

    Parameters
    ----------
    manager : EngineManager
        Owner of the engine handle
    retry_delay : float, optional
        Base delay in seconds between retries; retry ``n`` waits
        ``retry_delay * (n + 1)`` (default: manager settings)
    """

    def __init__(self, manager: EngineManager, retry_delay: Optional[float] = None):
        self.manager = manager
        settings = manager.settings
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.execution_retry_delay_seconds
        )
        self.default_timeout_ms = settings.execution_timeout_ms
        self.default_max_retries = settings.execution_max_retries

    async def execute_code(
        self,
        code: str,
        max_retries: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict:
        """Execute ``code`` with the configured defaults."""
        request = ExecutionRequest(
            code=code,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            timeout_ms=self.default_timeout_ms if timeout_ms is None else timeout_ms,
        )
        return await self.execute(request)

    async def execute(self, request: ExecutionRequest) -> dict:
        """
        Evaluate a request and return its result envelope.

        Raises
        ------
        ExecutionTimeout
            If the retry budget is exhausted and the last failure was a timeout
        EngineCorruption
            If the retry budget is exhausted after lost engine handles
        DomainError
            If R rejected the submission; never retried
        InitializationFailure
            If the engine cannot be brought up
        """
        last_error: Optional[str] = None
        timed_out = False

        for attempt in range(request.max_retries + 1):
            backend = await self.manager.init_engine()
            try:
                return await asyncio.wait_for(
                    backend.evaluate(request.code),
                    timeout=request.timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                timed_out = True
                last_error = f"Execution timeout after {request.timeout_ms} ms"
            except InitializationFailure:
                raise
            except DomainError:
                raise
            except Exception as e:
                message = str(e) if not isinstance(e, EngineError) else e.raw_message
                message = message or e.__class__.__name__
                if not (isinstance(e, EngineCorruption) or is_corruption(message)
                        or not backend.is_alive()):
                    logger.info(f"R evaluation failed: {message}")
                    raise DomainError(
                        translate(message),
                        raw_message=message,
                        category=classify(message) or DomainError.default_category,
                    ) from e
                timed_out = False
                last_error = message

            logger.warning(
                f"R execution attempt {attempt + 1}/{request.max_retries + 1} failed: {last_error}"
            )
            await self.manager.mark_corrupted(backend, last_error)

            if attempt < request.max_retries:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        error_cls = ExecutionTimeout if timed_out else EngineCorruption
        raise error_cls(
            translate(last_error),
            raw_message=last_error,
            category=classify(last_error) or error_cls.default_category,
        )

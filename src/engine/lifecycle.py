"""
Engine lifecycle management.

``EngineManager`` owns the single R engine handle: it bootstraps the worker
(channel setup, package repositories, package installation, library loading),
retries failed bootstraps with exponential backoff, and exposes a read-only
status projection for polling UIs.

State machine
-------------
    UNINITIALIZED -> INITIALIZING -> READY
    INITIALIZING  -[failure, attempts < max]-> INITIALIZING (after backoff)
    INITIALIZING  -[failure, attempts == max]-> FAILED
    READY         -[corruption]-> UNINITIALIZED
    FAILED        -[reset_engine]-> UNINITIALIZED

Usage
-----
    from engine import EngineManager

    manager = EngineManager()
    manager.set_progress_callback(print)
    backend = await manager.init_engine()
    print(manager.get_status().is_ready)
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from .backends import EngineBackend, backend_factory as make_backend_factory
from .codegen import check_identifier, quote_string
from .errors import InitializationFailure
from .marshal import parse_result
from .settings import EngineSettings, load_settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class LifecycleState(str, Enum):
    """Lifecycle states of the engine handle."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class EngineStatus(BaseModel):
    """Read-only projection of the manager state, safe to poll."""

    is_ready: bool
    is_loading: bool
    progress_message: str = ""
    last_error: Optional[str] = None
    can_retry: bool
    state: LifecycleState
    attempt: int = 0
    max_attempts: int


@dataclass
class RetryState:
    """Bootstrap attempt bookkeeping."""

    attempt: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None


class EngineManager:
    """
    Owner of the engine handle.

    Parameters
    ----------
    settings : EngineSettings, optional
        Engine settings (default: ``load_settings()``)
    backend_factory : callable, optional
        Zero-argument callable returning a new, unstarted backend. Defaults
        to the registered backend named in the settings.
    sleep : callable, optional
        Awaitable sleep used for backoff delays
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        backend_factory: Optional[Callable[[], EngineBackend]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or load_settings()
        if backend_factory is None:
            backend_factory = make_backend_factory(
                self.settings.backend,
                r_executable=self.settings.r_executable,
                worker_script=self.settings.worker_script,
                library_dir=self.settings.library_dir,
                startup_timeout=self.settings.worker_startup_timeout_seconds,
            )
        self._backend_factory = backend_factory
        self._sleep = sleep

        self._handle: Optional[EngineBackend] = None
        self._init_task: Optional[asyncio.Task] = None
        self._state = LifecycleState.UNINITIALIZED
        self._retry = RetryState(max_attempts=self.settings.init_max_attempts)
        self._progress_message = ""
        self._progress_callback: Optional[ProgressCallback] = None
        self._capabilities: dict[str, bool] = {}

        # Number of bootstrap sequences started (not attempts)
        self.bootstrap_count = 0

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    @property
    def capabilities(self) -> dict[str, bool]:
        """Optional R libraries and whether they loaded (e.g. ``{'lavaan': True}``)."""
        return dict(self._capabilities)

    def has_capability(self, library: str) -> bool:
        return self._capabilities.get(library, False)

    def get_status(self) -> EngineStatus:
        """Return the current status projection."""
        is_loading = self._state is LifecycleState.INITIALIZING
        is_ready = (
            self._state is LifecycleState.READY
            and self._handle is not None
            and self._handle.is_alive()
        )
        return EngineStatus(
            is_ready=is_ready,
            is_loading=is_loading,
            progress_message=self._progress_message,
            last_error=self._retry.last_error,
            can_retry=self._state is not LifecycleState.FAILED and not is_loading,
            state=self._state,
            attempt=self._retry.attempt,
            max_attempts=self._retry.max_attempts,
        )

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        """Register a callable receiving human-readable progress strings."""
        self._progress_callback = callback

    def _report(self, message: str) -> None:
        self._progress_message = message
        logger.info(message)
        if self._progress_callback is not None:
            try:
                self._progress_callback(message)
            except Exception as e:
                logger.warning(f"Progress callback raised: {e}")

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def init_engine(self, max_retries: Optional[int] = None) -> EngineBackend:
        """
        Return a ready engine handle, bootstrapping it if needed.

        Concurrent callers share one in-flight bootstrap.

        Parameters
        ----------
        max_retries : int, optional
            Bootstrap attempts before entering the Failed state
            (default: ``settings.init_max_attempts``)

        Returns
        -------
        EngineBackend
            Started backend that passed the liveness probe

        Raises
        ------
        InitializationFailure
            If the engine is in the Failed state, or the bootstrap exhausts
            its attempts, or a foreign bootstrap does not finish in time
        """
        if self._handle is not None:
            if self._handle.is_alive():
                return self._handle
            logger.warning("Engine handle failed the liveness probe; discarding it")
            await self._discard_handle()
            if self._state is LifecycleState.READY:
                self._state = LifecycleState.UNINITIALIZED

        if self._state is LifecycleState.FAILED:
            raise InitializationFailure(
                "The R engine failed to initialize. Reset the engine to try again.",
                raw_message=self._retry.last_error,
            )

        task = self._init_task
        if task is not None and not task.done():
            if task.get_loop() is asyncio.get_running_loop():
                return await asyncio.shield(task)
            return await self._poll_until_ready()

        max_attempts = max_retries if max_retries is not None else self.settings.init_max_attempts
        self._init_task = asyncio.ensure_future(self._bootstrap(max(1, max_attempts)))
        return await asyncio.shield(self._init_task)

    async def _poll_until_ready(self) -> EngineBackend:
        """Bounded wait for a bootstrap owned by another event loop."""
        for _ in range(self.settings.init_poll_max_checks):
            await asyncio.sleep(self.settings.init_poll_interval_seconds)
            if self._state is LifecycleState.READY and self._handle is not None:
                return self._handle
            if self._state is LifecycleState.FAILED:
                raise InitializationFailure(
                    "The R engine failed to initialize.",
                    raw_message=self._retry.last_error,
                )
        raise InitializationFailure("R engine initialization timeout")

    async def _bootstrap(self, max_attempts: int) -> EngineBackend:
        self.bootstrap_count += 1
        self._state = LifecycleState.INITIALIZING
        self._retry.attempt = 0
        self._retry.max_attempts = max_attempts
        self._retry.last_error = None

        try:
            while True:
                backend = self._backend_factory()
                try:
                    await self._run_stages(backend)
                except asyncio.CancelledError:
                    await self._close_quietly(backend)
                    raise
                except Exception as e:
                    error = str(e) or e.__class__.__name__
                    self._retry.attempt += 1
                    self._retry.last_error = error
                    logger.error(
                        f"Engine bootstrap attempt {self._retry.attempt}/{max_attempts} failed: {error}"
                    )
                    await self._close_quietly(backend)

                    if self._retry.attempt >= max_attempts:
                        self._state = LifecycleState.FAILED
                        self._report(f"R engine failed to initialize: {error}")
                        raise InitializationFailure(
                            f"Failed to initialize the R engine after {max_attempts} attempts: {error}",
                            raw_message=error,
                        ) from e

                    delay = self.settings.init_backoff_base_seconds * 2 ** (self._retry.attempt - 1)
                    self._report(
                        f"R engine loading... retrying in {delay:g}s "
                        f"(attempt {self._retry.attempt + 1}/{max_attempts})"
                    )
                    await self._sleep(delay)
                    continue

                self._handle = backend
                self._state = LifecycleState.READY
                self._report("R engine ready")
                return backend
        except asyncio.CancelledError:
            if self._state is LifecycleState.INITIALIZING:
                self._state = LifecycleState.UNINITIALIZED
            raise
        finally:
            self._init_task = None

    async def _run_stages(self, backend: EngineBackend) -> None:
        settings = self.settings

        self._report("Starting R engine...")
        await backend.start()

        self._report("Verifying engine channel...")
        envelope = await backend.evaluate('list(ok = TRUE)')
        if parse_result(envelope)('ok') != [True]:
            raise RuntimeError("R engine did not answer the liveness check")

        self._report("Configuring package repositories...")
        repos = ', '.join(
            f"{check_identifier(name)} = {quote_string(url)}"
            for name, url in settings.package_repositories.items()
        )
        await backend.evaluate(f"options(repos = c({repos}))\nlist(ok = TRUE)")

        self._report("Installing statistical packages...")
        failed = await self._install_packages(backend, settings.core_packages)
        for package in failed:
            logger.warning(f"Could not install R package '{package}'")

        self._report("Installing structural equation modeling packages...")
        failed_optional = await self._install_packages(backend, settings.optional_packages)
        if failed_optional:
            logger.warning(
                f"Optional R packages unavailable ({', '.join(failed_optional)}); "
                "SEM will use the approximate fallback"
            )

        self._report("Loading libraries...")
        for library in settings.required_libraries:
            await backend.evaluate(
                f"suppressPackageStartupMessages(library({check_identifier(library)}))\n"
                "list(ok = TRUE)"
            )

        capabilities = {}
        for library in settings.optional_libraries:
            envelope = await backend.evaluate(
                "list(loaded = suppressPackageStartupMessages("
                f"require({check_identifier(library)}, quietly = TRUE)))"
            )
            capabilities[library] = parse_result(envelope)('loaded') == [True]
        self._capabilities = capabilities

    async def _install_packages(self, backend: EngineBackend, packages: list[str]) -> list[str]:
        """Install missing packages; return those still unavailable."""
        if not packages:
            return []
        names = ', '.join(quote_string(check_identifier(p)) for p in packages)
        code = f"""\
.pkgs <- c({names})
.missing <- .pkgs[!vapply(.pkgs, requireNamespace, logical(1), quietly = TRUE)]
for (.p in .missing) {{
    tryCatch(install.packages(.p, quiet = TRUE), error = function(e) NULL)
}}
.failed <- .missing[!vapply(.missing, requireNamespace, logical(1), quietly = TRUE)]
list(missing = as.character(.missing), failed = as.character(.failed))"""
        envelope = await backend.evaluate(code)
        return list(parse_result(envelope)('failed') or [])

    # ------------------------------------------------------------------
    # Degradation and reset
    # ------------------------------------------------------------------

    async def mark_corrupted(self, backend: EngineBackend, reason: str = "") -> None:
        """
        Discard ``backend`` after a corruption or timeout.

        Only the current handle is discarded; a report about a handle that
        was already replaced is ignored. The next ``init_engine()``
        bootstraps a fresh worker.

        Parameters
        ----------
        backend : EngineBackend
            Handle the failed evaluation ran on
        reason : str, optional
            Failure message for the log
        """
        if self._handle is None or self._handle is not backend:
            logger.debug(f"Ignoring corruption report for a replaced handle: {reason}")
            return
        logger.warning(f"Discarding R engine handle: {reason or 'corruption detected'}")
        await self._discard_handle()
        if self._state is LifecycleState.READY:
            self._state = LifecycleState.UNINITIALIZED
            self._progress_message = "R engine restarting..."

    async def reset_engine(self) -> None:
        """Tear everything down and return to the Uninitialized state."""
        task = self._init_task
        if task is not None and not task.done():
            loop = task.get_loop()
            if loop is asyncio.get_running_loop():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, InitializationFailure):
                    await task
            elif not loop.is_closed():
                # Owned by another loop: it cannot be awaited from here
                loop.call_soon_threadsafe(task.cancel)
        self._init_task = None

        await self._discard_handle()
        self._state = LifecycleState.UNINITIALIZED
        self._retry = RetryState(max_attempts=self.settings.init_max_attempts)
        self._progress_message = ""
        self._capabilities = {}
        logger.info("R engine reset")

    async def close(self) -> None:
        """Alias of ``reset_engine`` for shutdown hooks."""
        await self.reset_engine()

    async def _discard_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._close_quietly(handle)

    async def _close_quietly(self, backend: EngineBackend) -> None:
        try:
            await backend.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing backend: {e}")

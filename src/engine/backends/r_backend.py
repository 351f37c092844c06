"""
Rscript Worker Backend.

Runs one persistent R process (``Rscript --vanilla worker.R``) and talks to it
over a private stdin/stdout channel. Each submission is framed as
``EVAL <n_lines>`` followed by the code; the worker answers with one
marker-prefixed JSON line holding the result envelope or the R error message.

Usage
-----
    from engine.backends import get_backend

    backend = get_backend('rscript')
    await backend.start()
    envelope = await backend.evaluate('list(m = mean(c(1, 2, 3)))')
    await backend.close()

Requirements
------------
- R >= 4.0
- R package: jsonlite (used by the worker to serialize results)
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import EngineCorruption, EvaluationError
from .base import BaseEngineBackend
from .factory import register_backend

logger = logging.getLogger(__name__)

RESPONSE_MARKER = '@@STATBRIDGE@@ '

# StreamReader line limit; result envelopes can be large
STREAM_LIMIT = 64 * 1024 * 1024


@register_backend('rscript')
class RScriptBackend(BaseEngineBackend):
    """
    Persistent R worker process.

    Parameters
    ----------
    r_executable : str, optional
        Rscript front-end (default: ``config.R_EXECUTABLE``)
    worker_script : Path, optional
        Worker protocol script (default: ``config.WORKER_SCRIPT``)
    library_dir : Path, optional
        Private package library prepended to ``.libPaths()``
    startup_timeout : float, optional
        Seconds allowed for the first ping
    """

    def __init__(
        self,
        r_executable: Optional[str] = None,
        worker_script: Optional[Path] = None,
        library_dir: Optional[Path] = None,
        startup_timeout: Optional[float] = None,
    ):
        super().__init__()
        from config import R_EXECUTABLE, WORKER_SCRIPT, WORKER_STARTUP_TIMEOUT_SECONDS

        self._r_executable = r_executable or R_EXECUTABLE
        self._worker_script = Path(worker_script or WORKER_SCRIPT)
        self._library_dir = Path(library_dir) if library_dir else None
        self._startup_timeout = startup_timeout or WORKER_STARTUP_TIMEOUT_SECONDS
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._workdir: Optional[Path] = None
        self._lock = asyncio.Lock()
        self._cached_version: Optional[str] = None

    @property
    def name(self) -> str:
        return 'rscript'

    @property
    def version(self) -> str:
        if self._cached_version:
            return self._cached_version

        try:
            result = subprocess.run(
                [self._r_executable, '--version'],
                capture_output=True,
                text=True,
                timeout=10,
            )
            # Rscript prints its version on stderr on most platforms
            output = result.stdout or result.stderr
            first_line = output.split('\n')[0] if output else ''
            self._cached_version = first_line or 'R (version unknown)'
            return self._cached_version
        except (OSError, subprocess.SubprocessError):
            return 'R (not found)'

    def validate_installation(self) -> tuple[bool, str]:
        """
        Check if R and the worker script are available.

        Returns
        -------
        tuple[bool, str]
            (is_available, message)
        """
        if not shutil.which(self._r_executable):
            return False, f"R not found at '{self._r_executable}'. Set R_EXECUTABLE env var."

        if not self._worker_script.exists():
            return False, f"R worker script not found: {self._worker_script}"

        try:
            result = subprocess.run(
                [self._r_executable, '-e', 'cat(as.character(packageVersion("jsonlite")))'],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except subprocess.TimeoutExpired:
            return False, "R package check timed out"
        except OSError as e:
            return False, f"Error checking R: {e}"

        if result.returncode != 0:
            return False, "R package 'jsonlite' is not installed"

        return True, f"R engine ready ({self.version}, jsonlite {result.stdout.strip()})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Launch the worker in an isolated working directory and ping it.

        Raises
        ------
        EngineCorruption
            If the process cannot be started or does not answer the ping
        """
        if not self._worker_script.exists():
            raise EngineCorruption(f"R worker script not found: {self._worker_script}")

        self._workdir = Path(tempfile.mkdtemp(prefix='statbridge_r_'))
        env = dict(os.environ)
        if self._library_dir is not None:
            self._library_dir.mkdir(parents=True, exist_ok=True)
            env['R_LIBS_USER'] = str(self._library_dir)

        try:
            self._process = await asyncio.create_subprocess_exec(
                self._r_executable,
                '--vanilla',
                str(self._worker_script),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._workdir),
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            await self.close()
            raise EngineCorruption(f"Could not start R worker '{self._r_executable}': {e}") from e

        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        self._started = True
        logger.info("Started R worker (pid %s) in %s", self._process.pid, self._workdir)

        try:
            await asyncio.wait_for(self.ping(), timeout=self._startup_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise EngineCorruption(
                f"R worker did not answer within {self._startup_timeout:g}s (startup timeout)"
            ) from e

    async def ping(self) -> None:
        """Round-trip a PING through the message channel."""
        async with self._lock:
            await self._send('PING\n')
            response = await self._receive()
        if response.get('result') != 'pong':
            raise EngineCorruption(f"Unexpected ping response from R worker: {response!r}")

    def is_alive(self) -> bool:
        return (
            super().is_alive()
            and self._process is not None
            and self._process.returncode is None
        )

    async def close(self) -> None:
        """Terminate the worker and remove its working directory."""
        process = self._process
        self._process = None
        self._started = False

        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("R worker (pid %s) did not exit after kill", process.pid)

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            self._stderr_task = None

        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, code: str) -> dict:
        """
        Evaluate code in a fresh environment inside the worker.

        Raises
        ------
        EvaluationError
            If R signals an error
        EngineCorruption
            If the worker is not running or the channel breaks
        """
        lines = code.split('\n')
        payload = f"EVAL {len(lines)}\n" + '\n'.join(lines) + '\n'

        async with self._lock:
            await self._send(payload)
            response = await self._receive()

        if response.get('status') == 'error':
            raise EvaluationError(str(response.get('message', 'unknown R error')))
        return response.get('result')

    async def _send(self, payload: str) -> None:
        if not self.is_alive() or self._process.stdin is None:
            raise EngineCorruption("R engine handle is not initialized")
        try:
            self._process.stdin.write(payload.encode('utf-8'))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EngineCorruption(f"R engine handle lost: {e}") from e

    async def _receive(self) -> dict:
        assert self._process is not None and self._process.stdout is not None
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                raise EngineCorruption("R engine handle lost: worker closed its output channel")
            line = raw.decode('utf-8', errors='replace').rstrip('\n')
            if not line.startswith(RESPONSE_MARKER):
                logger.debug("R stdout: %s", line)
                continue
            try:
                return json.loads(line[len(RESPONSE_MARKER):])
            except json.JSONDecodeError as e:
                raise EngineCorruption(f"Malformed response from R worker: {e}") from e

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            logger.debug("R: %s", raw.decode('utf-8', errors='replace').rstrip())

# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

import asyncio
import json
import posixpath
import re
import time
from pathlib import Path
from uuid import uuid4

import aiofiles  # type: ignore[import-untyped]
import anyio
from pydantic import TypeAdapter, ValidationError

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import RuntimeCommandError
from coreason_runtime.harness import render_harness
from coreason_runtime.models import ExecutionResult, ExecutionStatus, RichOutput, Sandbox
from coreason_runtime.runtime import ContainerRuntime
from coreason_runtime.utils.logger import logger

TIMEOUT_MESSAGE = "Execution timed out"
RUNTIME_FAILURE_MESSAGE = "Python execution failed inside the runtime container."

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_outputs_adapter = TypeAdapter(list[RichOutput])


def execution_filenames(correlation_id: str | None = None) -> tuple[str, str]:
    """Code and output file names, namespaced by a sanitized correlation id."""
    safe_id = _UNSAFE_ID_CHARS.sub("", correlation_id or "")[:32]
    suffix = f"_{safe_id}" if safe_id else ""
    return f"_exec_code{suffix}.py", f"_outputs{suffix}.json"


def parse_outputs(raw: str) -> list[RichOutput] | None:
    """Parse the harness output file. Returns None if it is not a valid output array."""
    try:
        return _outputs_adapter.validate_python(json.loads(raw))
    except (ValueError, ValidationError):
        return None


def _unlink(path: Path) -> None:
    path.unlink(missing_ok=True)


def _sweep_stale_files(workspace: Path, max_age: float) -> int:
    """Remove transient harness files older than `max_age` seconds."""
    cutoff = time.time() - max_age
    removed = 0
    for pattern in ("_exec_code*.py", "_outputs*.json"):
        for path in workspace.glob(pattern):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
    return removed


class ExecutionEngine:
    """Runs user code inside sandboxes through the execution harness."""

    def __init__(self, runtime: ContainerRuntime, config: RuntimeConfig | None = None):
        self.runtime = runtime
        self.config = config or RuntimeConfig()

    async def execute(
        self,
        sandbox: Sandbox,
        code: str,
        timeout: float | None = None,
        correlation_id: str | None = None,
    ) -> ExecutionResult:
        """Run script and capture output.

        Never raises for timeouts or failing user code; those come back as
        ``timeout`` and ``error`` results.

        Args:
            sandbox: Target sandbox.
            code: Python source to run.
            timeout: Seconds before the process is killed. Defaults to the
                configured execution timeout and is capped by the maximum.
            correlation_id: Namespaces the transient files so concurrent
                executions in one sandbox do not collide. A random id is
                used when none is given.

        Returns:
            ExecutionResult: Status, captured streams and rich outputs.
        """
        timeout = self.config.clamp_timeout(timeout)
        if not _UNSAFE_ID_CHARS.sub("", correlation_id or ""):
            # Every run needs its own files and kill pattern
            correlation_id = uuid4().hex[:8]
        code_name, output_name = execution_filenames(correlation_id)
        host_code = sandbox.workspace_path / code_name
        host_output = sandbox.workspace_path / output_name
        exec_path = posixpath.join(self.config.workspace_mount, code_name)
        await self._sweep_stale(sandbox.workspace_path)

        start_time = time.monotonic()
        async with aiofiles.open(host_code, "w", encoding="utf-8") as f:
            await f.write(render_harness(code, output_name, self.config.datasets_mount))

        logger.info(f"Executing code in sandbox {sandbox.id}", sandbox_id=sandbox.id, file=code_name)
        try:
            process = await self.runtime.spawn(sandbox.external_id, ["python", exec_path], kill_pattern=exec_path)
        except RuntimeCommandError as e:
            logger.error(f"Failed to start execution in sandbox {sandbox.id}: {e}")
            await self._cleanup(host_code, host_output)
            sandbox.touch()
            return self._failure(RUNTIME_FAILURE_MESSAGE, time.monotonic() - start_time)

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Execution timed out ({timeout}s) in sandbox {sandbox.id}. Killing process.")
            await process.kill()
            sandbox.touch()
            # Files stay behind; a later execution sweeps them once stale.
            return ExecutionResult(
                status=ExecutionStatus.TIMEOUT,
                stdout=process.stdout,
                stderr=process.stderr,
                outputs=[RichOutput(type="error", content=TIMEOUT_MESSAGE)],
                execution_duration=timeout,
                error=TIMEOUT_MESSAGE,
            )
        except RuntimeCommandError as e:
            logger.error(f"Execution stream failed in sandbox {sandbox.id}: {e}")
            await self._cleanup(host_code, host_output)
            sandbox.touch()
            return self._failure(RUNTIME_FAILURE_MESSAGE, time.monotonic() - start_time)

        stdout, stderr = process.stdout, process.stderr
        outputs = await self._read_outputs(host_output)
        if outputs is None:
            # No usable output file: fall back to raw stdout.
            outputs = [RichOutput(type="text", content=stdout)] if stdout.strip() else []

        await self._cleanup(host_code, host_output)
        sandbox.touch()

        error_outputs = [output for output in outputs if output.type == "error"]
        if exit_code != 0 and stderr and not error_outputs:
            error_outputs.append(RichOutput(type="error", content=stderr))
            outputs.append(error_outputs[-1])
        if exit_code != 0 and not error_outputs:
            error_outputs.append(RichOutput(type="error", content=f"Process exited with code {exit_code}"))
            outputs.append(error_outputs[-1])

        failed = exit_code != 0 or bool(error_outputs)
        first_error = error_outputs[0].content if error_outputs else ""

        return ExecutionResult(
            status=ExecutionStatus.ERROR if failed else ExecutionStatus.SUCCESS,
            stdout=stdout,
            stderr=stderr or (first_error if failed else ""),
            outputs=outputs,
            execution_duration=time.monotonic() - start_time,
            error=(stderr or first_error) if failed else None,
        )

    async def _read_outputs(self, path: Path) -> list[RichOutput] | None:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError:
            return None
        outputs = parse_outputs(raw)
        if outputs is None:
            logger.warning(f"Unparsable output file {path.name}; falling back to stdout")
        return outputs

    async def _sweep_stale(self, workspace: Path) -> None:
        # Anything older than the longest possible run belongs to a dead execution.
        max_age = self.config.max_execution_timeout + 60.0
        try:
            removed = await anyio.to_thread.run_sync(_sweep_stale_files, workspace, max_age)
        except OSError as e:
            logger.debug(f"Stale file sweep failed in {workspace}: {e}")
            return
        if removed:
            logger.debug(f"Removed {removed} stale execution files from {workspace}")

    async def _cleanup(self, *paths: Path) -> None:
        for path in paths:
            try:
                await anyio.to_thread.run_sync(_unlink, path)
            except OSError as e:
                logger.debug(f"Could not remove {path.name}: {e}")

    @staticmethod
    def _failure(message: str, duration: float) -> ExecutionResult:
        return ExecutionResult(
            status=ExecutionStatus.ERROR,
            stderr=message,
            outputs=[RichOutput(type="error", content=message)],
            execution_duration=duration,
            error=message,
        )

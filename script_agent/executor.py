"""Script executors: the host-side half of the script loop.

The orchestrator accepts any callable ``(code) -> ScriptResult`` (sync or
async). Hosts with an embedded interpreter supply their own; the terminal
front end uses :class:`PythonSubprocessExecutor`.
"""

import asyncio
import sys
import time

from script_agent.config import Config, get_config
from script_agent.logging import get_logger
from script_agent.types import ScriptResult

log = get_logger(__name__)


def truncate_output(output: str, max_length: int) -> str:
    if max_length <= 0 or len(output) <= max_length:
        return output
    return output[:max_length] + f"\n... [truncated, {len(output)} total chars]"


class PythonSubprocessExecutor:
    """Run each script in a fresh Python interpreter."""

    def __init__(
        self,
        python: str = "",
        timeout: float = 60.0,
        max_output_chars: int = 10000,
        cwd: str = "",
    ):
        self.python = python or sys.executable
        self.timeout = max(1.0, float(timeout))
        self.max_output_chars = max_output_chars
        self.cwd = cwd

    @classmethod
    def from_config(cls, config: Config | None = None) -> "PythonSubprocessExecutor":
        config = config or get_config()
        return cls(
            python=config.executor.python,
            timeout=config.executor.timeout,
            max_output_chars=config.executor.max_output_chars,
            cwd=config.agent.project_dir,
        )

    async def __call__(self, code: str) -> ScriptResult:
        return await self.execute(code)

    async def execute(self, code: str) -> ScriptResult:
        """Execute ``code``, feeding it to the interpreter on stdin.

        Returns:
            ScriptResult with combined stdout/stderr output
        """
        started = time.monotonic()
        log.info("Executing script", python=self.python, chars=len(code), timeout=self.timeout)

        try:
            process = await asyncio.create_subprocess_exec(
                self.python,
                "-",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd or None,
            )
        except OSError as e:
            log.error("Failed to start interpreter", python=self.python, error=str(e))
            return ScriptResult.error_result(f"Failed to start interpreter: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(code.encode("utf-8")), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ScriptResult(
                success=False,
                error=f"Script timed out after {self.timeout:g}s",
                execution_time_ms=(time.monotonic() - started) * 1000,
            )
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        elapsed_ms = (time.monotonic() - started) * 1000

        if process.returncode != 0:
            error = stderr_text or f"Script exited with code {process.returncode}"
            if stdout_text:
                error = f"{stdout_text}\n{error}"
            return ScriptResult(
                success=False,
                error=truncate_output(error, self.max_output_chars),
                execution_time_ms=elapsed_ms,
            )

        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"
        return ScriptResult(
            success=True,
            output=truncate_output(output, self.max_output_chars),
            execution_time_ms=elapsed_ms,
        )

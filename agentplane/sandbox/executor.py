"""ScriptSandbox: runs javascript tool code in an isolated Node.js process.

Each call gets its own process with a CPU-time rlimit, a V8 heap cap, a
scrubbed environment and a hard wall-clock timeout. Inside, the code runs
as a function body in a fresh ``vm`` context exposing only ``args``,
``credentials`` and the helpers ``uuid()``, ``now``, ``timestamp``,
``random_int(min, max)`` and ``random_float(min, max)``.

Usage:
    sandbox = ScriptSandbox(SandboxConfig(memory_limit_mb=64))
    result = await sandbox.run("return args.a + args.b", {"a": 1, "b": 2}, {})
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import signal
import sys
import time
from typing import Any

from pydantic import BaseModel

from agentplane.exceptions import SandboxError

_logger = logging.getLogger(__name__)

_SIGXCPU = getattr(signal, "SIGXCPU", None)


class SandboxConfig(BaseModel):
    """Limits for one script execution."""

    node_binary: str = "node"
    memory_limit_mb: int = 128
    cpu_time_limit_s: int = 5
    timeout_s: float = 5.0


class ScriptResult(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0


class ScriptSandbox:
    def __init__(self, config: SandboxConfig | None = None) -> None:
        self._config = config or SandboxConfig()

    @property
    def config(self) -> SandboxConfig:
        return self._config

    def available(self) -> bool:
        return shutil.which(self._config.node_binary) is not None

    async def run(
        self, code: str, args: dict[str, Any], credentials: dict[str, str],
    ) -> ScriptResult:
        """Execute ``code`` and return its value.

        Raises SandboxError when the JavaScript runtime is not installed;
        every other failure comes back as an unsuccessful ScriptResult.
        """
        if not self.available():
            raise SandboxError(f"JavaScript runtime not found: {self._config.node_binary}")

        start = time.monotonic()
        task_json = json.dumps({"code": code, "args": args, "credentials": credentials})
        config_json = self._config.model_dump_json()

        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "agentplane.sandbox.runner", config_json,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=task_json.encode()),
                # vm timeout fires first; this covers process startup and hangs
                timeout=self._config.timeout_s + 5,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ScriptResult(
                success=False,
                error=f"Script timed out after {self._config.timeout_s}s",
                execution_time_ms=_elapsed_ms(start),
            )

        elapsed = _elapsed_ms(start)
        if _SIGXCPU is not None and proc.returncode == -_SIGXCPU:
            return ScriptResult(
                success=False,
                error=f"Script exceeded CPU time limit of {self._config.cpu_time_limit_s}s",
                execution_time_ms=elapsed,
            )
        try:
            data = json.loads(stdout.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            err = stderr.decode(errors="replace")[:2000] if stderr else ""
            return ScriptResult(
                success=False,
                error=f"Sandbox process failed (exit={proc.returncode}): {err}".rstrip(": "),
                execution_time_ms=elapsed,
            )

        if not data.get("ok"):
            return ScriptResult(success=False, error=data.get("error"), execution_time_ms=elapsed)
        return ScriptResult(success=True, result=data.get("result"), execution_time_ms=elapsed)


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000

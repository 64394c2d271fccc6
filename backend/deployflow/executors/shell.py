"""
ShellActionExecutor — runs `command` (or a multi-line `script`) in a
subprocess via asyncio.

Action keys:
    command   shell command line
    script    multi-line script, run with `sh -e`
    cwd       working directory
    env       extra environment variables (merged over the step env)

Every run gets DEPLOYFLOW_* variables describing the execution.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Mapping

from deployflow.core.logging import get_logger
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.errors import StepExecutionError
from deployflow.pipeline.interfaces import ActionResult

logger = get_logger(__name__)

# Captured output is truncated to this many characters
MAX_OUTPUT_CHARS = 64_000


class ShellActionExecutor:

    def __init__(self, shell: str = "/bin/sh") -> None:
        self.shell = shell

    async def execute(self, action: Mapping[str, Any], context: ExecutionContext) -> ActionResult:
        command = action.get("command")
        script = action.get("script")
        if not command and not script:
            raise StepExecutionError(
                "Shell action needs 'command' or 'script'",
                execution_id=context.execution_id,
                step_name=context.step_name,
            )

        env = {
            **os.environ,
            **{k: str(v) for k, v in context.variables.items()},
            **context.step_env,
            **{k: str(v) for k, v in (action.get("env") or {}).items()},
            "DEPLOYFLOW_EXECUTION_ID": context.execution_id,
            "DEPLOYFLOW_PIPELINE_ID": context.pipeline_id,
            "DEPLOYFLOW_STAGE": context.stage_name or "",
            "DEPLOYFLOW_STEP": context.step_name or "",
            "DEPLOYFLOW_INVOCATION_ID": context.invocation_id,
            "DEPLOYFLOW_VERSION": context.version,
        }
        if context.environment:
            env["DEPLOYFLOW_ENVIRONMENT"] = context.environment

        logger.info(
            "Running shell action",
            execution_id=context.execution_id,
            step=context.step_name,
            invocation_id=context.invocation_id,
        )

        if script:
            process = await asyncio.create_subprocess_exec(
                self.shell, "-e", "-c", script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=action.get("cwd"),
                env=env,
            )
        else:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=action.get("cwd"),
                env=env,
            )

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # attempt timed out: do not leave the child running
            process.kill()
            await process.wait()
            raise

        output = stdout.decode(errors="replace")[-MAX_OUTPUT_CHARS:]
        error_text = stderr.decode(errors="replace")[-MAX_OUTPUT_CHARS:]
        return ActionResult(
            exit_code=process.returncode,
            output=output,
            error=(error_text or None) if process.returncode != 0 else None,
        )

"""Isolated execution of user plugin code (CUSTOM nodes).

The code must define ``run(context)`` (plain or async) returning a
JSON-serializable value. It runs in a fresh ``python -I`` child process:
the code and context go in on stdin, anything the code prints is sent to
stderr, and the result comes back as the last JSON line on stdout. A wall
clock timeout kills the process.
"""

import asyncio
import json
import os
import sys
from typing import Any, Dict

from core.config import Settings
from core.logging import get_logger
from services.engine import retry
from services.engine.exceptions import SandboxError
from services.engine.models import StepContext

logger = get_logger(__name__)

RUNNER = r'''
import asyncio, inspect, json, sys

def _main():
    payload = json.loads(sys.stdin.read() or "{}")
    real_stdout = sys.stdout
    sys.stdout = sys.stderr
    namespace = {"__name__": "__plugin__"}
    exec(compile(payload["code"], "<plugin>", "exec"), namespace)
    run = namespace.get("run")
    if not callable(run):
        raise RuntimeError("plugin code must define run(context)")
    result = run(payload.get("context") or {})
    if inspect.isawaitable(result):
        result = asyncio.run(result)
    sys.stdout = real_stdout
    sys.stdout.write(json.dumps(result, default=str) + "\n")
    sys.stdout.flush()

_main()
'''

STDERR_TAIL_CHARS = 2000


def _last_json_line(stdout: bytes) -> Any:
    lines = [line for line in stdout.decode("utf-8", errors="replace").splitlines() if line.strip()]
    if not lines:
        raise SandboxError("Plugin produced no output")
    try:
        return json.loads(lines[-1])
    except json.JSONDecodeError as e:
        raise SandboxError(f"Plugin output is not valid JSON: {e}") from e


def _stderr_summary(stderr: bytes) -> str:
    text = stderr.decode("utf-8", errors="replace").strip()
    if not text:
        return ""
    return text.splitlines()[-1][:STDERR_TAIL_CHARS]


async def run_isolated(code: str, context: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
    """Run plugin code in a child interpreter.

    Returns:
        The result object; non-dict results are wrapped as {"result": value}

    Raises:
        SandboxError: On timeout, non-zero exit or unparseable output
    """
    payload = json.dumps({"code": code, "context": context}, default=str).encode("utf-8")
    env = {"PATH": os.environ.get("PATH", ""), "PYTHONIOENCODING": "utf-8"}

    process = await asyncio.create_subprocess_exec(
        sys.executable, "-I", "-c", RUNNER,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        raise SandboxError(f"Plugin execution timeout after {timeout_ms}ms", timed_out=True)
    finally:
        # Timeout or cancellation of the awaiting task leaves the child running
        if process.returncode is None:
            process.kill()
            await process.wait()

    if process.returncode != 0:
        detail = _stderr_summary(stderr) or "no error output"
        raise SandboxError(f"Plugin process exited with code {process.returncode}: {detail}",
                           exit_code=process.returncode)

    result = _last_json_line(stdout)
    return result if isinstance(result, dict) else {"result": result}


async def handle_custom_code(context: StepContext, settings: Settings) -> Dict[str, Any]:
    config = context.config
    timeout_ms = int(config.get("timeoutMs") or settings.plugin_timeout_ms)
    plugin_context = {
        "runId": context.run_id,
        "nodeId": context.node_id,
        "config": {k: v for k, v in config.items() if k != "code"},
        "input": context.input,
        "inputs": context.inputs,
        "steps": context.steps,
        "retryCount": context.retry_count,
    }

    try:
        output = await run_isolated(config["code"], plugin_context, timeout_ms)
    except SandboxError as e:
        logger.warning("Sandboxed plugin failed", node_id=context.node_id, error=str(e),
                       timed_out=e.timed_out, exit_code=e.exit_code)
        return {"success": False, "error": str(e), "retryable": retry.is_retryable(e)}

    return {"success": True, "output": output}


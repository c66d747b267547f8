"""Tool execution dispatch."""

import asyncio
import functools
import inspect
import logging
from typing import Any, Dict, Optional

from tools._common import ToolContext, ToolResult
from tools.params import ParamError, validate_params
from tools.schemas import TOOL_IMPLEMENTATIONS

logger = logging.getLogger(__name__)


async def execute_tool(
    name: str,
    inputs: Dict[str, Any],
    ctx: ToolContext,
    *,
    timeout: Optional[float] = None,
) -> ToolResult:
    """Validate ``inputs`` and run the named tool.

    Synchronous tool implementations run in the default executor so file and
    process I/O never blocks the event loop. Every failure, including a
    timeout, comes back as an unsuccessful ToolResult.
    """
    impl = TOOL_IMPLEMENTATIONS.get(name)
    if not impl:
        return ToolResult(success=False, output="", error=f"Unknown tool: {name}")

    params = validate_params(name, inputs)
    if isinstance(params, ParamError):
        return ToolResult(success=False, output="", error=params.message)

    if inspect.iscoroutinefunction(impl):
        call = impl(params, ctx)
    else:
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(None, functools.partial(impl, params, ctx))

    try:
        if timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        if name == "run_command":
            ctx.backend.cancel_running_command()
        return ToolResult(success=False, output="", error=f"Tool execution timed out after {timeout:g}s")
    except ValueError as e:
        # sandbox violations and other rejected paths
        return ToolResult(success=False, output="", error=str(e))
    except TypeError as e:
        return ToolResult(success=False, output="", error=f"Invalid arguments for {name}: {e}")
    except Exception as e:
        logger.exception(f"Tool execution error: {name}")
        return ToolResult(success=False, output="", error=f"Tool error: {e}")

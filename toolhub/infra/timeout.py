"""Timeout configuration and helpers."""

import asyncio
from typing import Awaitable, Any

from toolhub.infra.config import config
from toolhub.infra.error_handler import ToolTimeoutError


# Timeout configurations (seconds)
TOOL_EXECUTION_TIMEOUT = config.TOOL_EXECUTION_TIMEOUT  # Default per-attempt tool deadline
MCP_HANDSHAKE_TIMEOUT = 10  # initialize + tools/list when a server has no timeout of its own
MCP_SHUTDOWN_GRACE = 5  # Wait for a stdio server to exit before killing it
QUEUE_JOB_TIMEOUT = 300  # Background tool job timeout
QUEUE_RESULT_TTL = 3600  # Keep queued job results for 1 hour


async def run_with_timeout(awaitable: Awaitable[Any], seconds: float, what: str) -> Any:
    """
    Await with a deadline, converting expiry into ToolTimeoutError.

    The awaited work is cancelled when the deadline passes.

    Args:
        awaitable: Coroutine or future to await
        seconds: Deadline in seconds; None or <= 0 disables the limit
        what: Description used in the error message

    Returns:
        The awaited result
    """
    if seconds is None or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise ToolTimeoutError(f"{what} timed out after {seconds:g}s")

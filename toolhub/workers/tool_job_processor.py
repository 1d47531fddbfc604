"""Worker function for processing queued tool calls."""

import asyncio
import inspect
import logging
from typing import Dict, Any

from toolhub.models.tool_call import ToolCallRequest

logger = logging.getLogger(__name__)


def process_queued_tool_call(handler: Any, request_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Run a queued tool handler (called by an RQ worker or the in-process worker pool).

    This is a synchronous wrapper: coroutine handlers get their own event loop.

    Args:
        handler: Object exposing handle(request), sync or async
        request_data: ToolCallRequest as dict

    Returns:
        Result dict with call_id, tool_name and output
    """
    request = ToolCallRequest(**request_data)

    logger.info(
        f"Processing queued tool call {request.tool_name}",
        extra={"tool_name": request.tool_name, "call_id": request.call_id},
    )

    output = handler.handle(request)
    if inspect.isawaitable(output):
        output = asyncio.run(_await(output))

    logger.info(
        f"Queued tool call {request.tool_name} processed successfully",
        extra={"tool_name": request.tool_name, "call_id": request.call_id},
    )

    return {
        "call_id": request.call_id,
        "tool_name": request.tool_name,
        "output": output,
    }


async def _await(awaitable):
    return await awaitable

"""Local function registry: in-process tool handlers, run inline or queued."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, Union, Callable

from pydantic import ValidationError

from toolhub.infra.error_handler import ToolError, HandlerError, SchemaValidationError
from toolhub.infra.queue import JobQueue
from toolhub.models.tool import ToolDefinition, ExecutionMode, LOCAL_ORIGIN
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult, CallStatus
from toolhub.services.tool_registry import UnifiedToolRegistry

logger = logging.getLogger(__name__)

LOCAL_TOOL_CATEGORY = "function_event"


class ToolHandler:
    """
    Base class for local tool handlers.

    Subclasses implement handle(request), sync or async. Queued handlers are pickled
    when the rq backend is used, so keep them importable at module level.
    """

    def handle(self, request: ToolCallRequest) -> Any:
        raise NotImplementedError

    def get_function_definition(self) -> Optional[Dict[str, Any]]:
        """Optional {description, parameters} used when listen() gets no metadata."""
        return None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handle)


class FunctionToolHandler(ToolHandler):
    """Adapts a plain function taking the tool arguments as keyword arguments."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    def handle(self, request: ToolCallRequest) -> Any:
        return self.func(**request.arguments)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    def __repr__(self) -> str:
        return f"FunctionToolHandler({getattr(self.func, '__name__', self.func)!r})"


@dataclass(frozen=True)
class ToolMetadata:
    """What listen() needs besides the handler."""
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    queued: bool = False
    category: str = LOCAL_TOOL_CATEGORY

    @classmethod
    def from_value(cls, value: Union["ToolMetadata", Dict[str, Any], None]) -> "ToolMetadata":
        if value is None:
            return cls()
        if isinstance(value, ToolMetadata):
            return value
        unknown = set(value) - {"description", "parameters", "queued", "category"}
        if unknown:
            raise SchemaValidationError(f"Unknown tool metadata keys: {', '.join(sorted(unknown))}")
        return cls(**value)


class LocalFunctionRegistry:
    """Maps tool names to in-process handlers and registers their definitions."""

    def __init__(self, registry: UnifiedToolRegistry, job_queue: Optional[JobQueue] = None):
        self.registry = registry
        self.job_queue = job_queue
        self._handlers: Dict[str, ToolHandler] = {}

    def listen(
        self,
        name: str,
        handler: Union[ToolHandler, Callable[..., Any]],
        metadata: Union[ToolMetadata, Dict[str, Any], None] = None,
    ) -> ToolDefinition:
        """
        Register a local tool: its definition goes into the unified registry and its
        handler is kept here for dispatch. Listening again under the same name replaces
        the previous handler.

        Args:
            name: Tool name
            handler: ToolHandler instance or plain callable(**arguments)
            metadata: description, parameters (JSON schema), queued, category

        Returns:
            The registered ToolDefinition

        Raises:
            SchemaValidationError: If the name or parameter schema is invalid
            DuplicateToolNameError: If a remote server already exposes the name
        """
        if not isinstance(handler, ToolHandler):
            if not callable(handler):
                raise TypeError(f"Handler for '{name}' must be a ToolHandler or callable")
            handler = FunctionToolHandler(handler)

        meta = ToolMetadata.from_value(metadata)
        fallback = handler.get_function_definition() or {}

        try:
            definition = ToolDefinition(
                name=name,
                description=meta.description or fallback.get("description") or f"Execute {name} action",
                parameters_schema=meta.parameters or fallback.get("parameters") or {},
                origin=LOCAL_ORIGIN,
                execution_mode=ExecutionMode.QUEUED if meta.queued else ExecutionMode.SYNC,
                category=meta.category,
            )
        except ValidationError as e:
            problems = [error["msg"] for error in e.errors()]
            raise SchemaValidationError(f"Invalid definition for tool '{name}': {'; '.join(problems)}", problems)

        self.registry.register(definition, replace=True)

        handlers = dict(self._handlers)
        handlers[name] = handler
        self._handlers = handlers

        logger.info(f"Registered local tool {name}", extra={"tool_name": name, "queued": meta.queued})
        return definition

    def unlisten(self, name: str) -> bool:
        """Remove a local tool and its handler."""
        if name not in self._handlers:
            return False
        handlers = dict(self._handlers)
        del handlers[name]
        self._handlers = handlers
        self.registry.unregister(name)
        return True

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def runs_in_thread(self, name: str) -> bool:
        """True when the tool's handler is a plain function run in a worker thread."""
        handler = self._handlers.get(name)
        return handler is not None and not handler.is_async

    def registered_names(self):
        return list(self._handlers)

    async def dispatch(self, request: ToolCallRequest, definition: ToolDefinition) -> ToolCallResult:
        """
        Run a local tool call.

        Sync tools run to completion (async handlers on the event loop, plain functions
        in a worker thread) and return their output. Queued tools are handed to the job
        queue and return immediately with an accepted, pending result.

        Raises:
            HandlerError: If the handler raised or the job could not be queued
        """
        handler = self._handlers.get(request.tool_name)
        if handler is None:
            raise HandlerError(f"No handler registered for local tool '{request.tool_name}'")

        if definition.execution_mode == ExecutionMode.QUEUED:
            return await self._enqueue(handler, request)

        try:
            if handler.is_async:
                output = await handler.handle(request)
            else:
                output = await asyncio.to_thread(handler.handle, request)
                if inspect.isawaitable(output):
                    output = await output
        except ToolError:
            raise
        except Exception as e:
            logger.warning(f"Local tool {request.tool_name} raised: {e}", exc_info=True)
            raise HandlerError(f"{type(e).__name__}: {e}") from e

        return ToolCallResult(
            call_id=request.call_id,
            tool_name=request.tool_name,
            success=True,
            output=_normalize_output(output),
        )

    async def _enqueue(self, handler: ToolHandler, request: ToolCallRequest) -> ToolCallResult:
        if self.job_queue is None:
            raise HandlerError(f"Tool '{request.tool_name}' is queued but no job queue is configured")
        try:
            job_id = await asyncio.to_thread(self.job_queue.submit, handler, request)
        except Exception as e:
            raise HandlerError(f"Failed to queue tool '{request.tool_name}': {e}") from e

        logger.info(f"Queued local tool {request.tool_name} as job {job_id}")
        return ToolCallResult(
            call_id=request.call_id,
            tool_name=request.tool_name,
            success=True,
            output={"status": "queued", "job_id": job_id},
            status=CallStatus.ACCEPTED,
            job_id=job_id,
        )


def _normalize_output(output: Any) -> Any:
    """Coerce handler output into a JSON-friendly tool result value."""
    if output is None or isinstance(output, (str, int, float, bool, dict, list)):
        return output
    if isinstance(output, tuple):
        return list(output)
    return str(output)

"""ToolHub: the unified tool system wired together for an application to embed."""

import asyncio
import logging
from typing import List, Dict, Any, Optional, Sequence, Union, Callable

from toolhub.infra.config import config
from toolhub.infra.queue import JobQueue, QueuedJobOutcome, create_job_queue
from toolhub.logging.event_logger import log_event
from toolhub.models.tool import ToolDefinition
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult, CallStatus, ErrorKind
from toolhub.services.local_function_registry import LocalFunctionRegistry, ToolHandler, ToolMetadata
from toolhub.services.provider_registry import get_adapter
from toolhub.services.server_config_service import ServerConfigService
from toolhub.services.tool_execution_engine import ToolExecutor, RetryPolicy
from toolhub.services.tool_registry import UnifiedToolRegistry, ToolSnapshot
from toolhub.services.tool_resolver import ToolResolver
from toolhub.services.tool_server_manager import RemoteToolServerManager, ClientFactory

logger = logging.getLogger(__name__)

QueuedResultListener = Callable[[ToolCallResult], None]


def outcome_to_result(outcome: QueuedJobOutcome) -> ToolCallResult:
    """Turn a finished background job into the ToolCallResult its caller reconciles."""
    if outcome.success:
        output = outcome.output
        if output is not None and not isinstance(output, (str, int, float, bool, dict, list)):
            output = str(output)
        return ToolCallResult(
            call_id=outcome.call_id,
            tool_name=outcome.tool_name,
            success=True,
            output=output,
            job_id=outcome.job_id,
        )
    return ToolCallResult(
        call_id=outcome.call_id,
        tool_name=outcome.tool_name,
        success=False,
        error_kind=ErrorKind.HANDLER_ERROR,
        error_message=outcome.error or "Background job failed",
        status=CallStatus.FAILED,
        job_id=outcome.job_id,
    )


def _log_refresh_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning(f"Background tool cache refresh failed: {task.exception()}")


class ToolHub:
    """
    Facade over the registry, local handlers, remote tool servers and executor.

    Typical flow for one model turn:
        tools = await hub.resolve_tools("all")
        payload = hub.format_for_provider("openai", tools)
        ... send payload with the conversation, receive response ...
        results = await hub.process_response("openai", response)
        messages = [hub.format_tool_result("openai", r) for r in results]
    """

    def __init__(
        self,
        config_service: ServerConfigService,
        server_manager: RemoteToolServerManager,
        job_queue: Optional[JobQueue] = None,
        policy: Optional[RetryPolicy] = None,
        refresh_wait: Optional[float] = None,
    ):
        self.config_service = config_service
        self.server_manager = server_manager
        self.job_queue = job_queue
        self.registry = UnifiedToolRegistry(server_manager)
        self.local_registry = LocalFunctionRegistry(self.registry, job_queue)
        self.resolver = ToolResolver(self.registry)
        self.executor = ToolExecutor(
            self.registry,
            self.local_registry,
            server_manager=server_manager,
            resolver=self.resolver,
            policy=policy,
        )
        self.refresh_wait = config.DISCOVERY_REFRESH_WAIT if refresh_wait is None else refresh_wait
        self._refresh_task: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self) -> Dict[str, str]:
        """Start every enabled remote tool server. Failed servers never fail startup."""
        states = await self.server_manager.start_all()
        summary = {server_id: state.value for server_id, state in states.items()}
        log_event("toolhub_started", payload={"servers": summary})
        return summary

    async def shutdown(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        await self.server_manager.shutdown()
        if self.job_queue is not None:
            await asyncio.to_thread(self.job_queue.shutdown, True)
        log_event("toolhub_stopped")

    async def reload(self) -> Dict[str, List[str]]:
        """Re-read the servers file and apply the differences to running servers."""
        document = await asyncio.to_thread(self.config_service.load)
        return await self.server_manager.reload(document)

    # Registration

    def listen(
        self,
        name: str,
        handler: Union[ToolHandler, Callable[..., Any]],
        metadata: Union[ToolMetadata, Dict[str, Any], None] = None,
    ) -> ToolDefinition:
        return self.local_registry.listen(name, handler, metadata)

    def unlisten(self, name: str) -> bool:
        return self.local_registry.unlisten(name)

    def on_queued_result(self, listener: QueuedResultListener) -> None:
        """
        Receive the final result of every queued tool call.

        Listeners run on the job queue's worker thread. Raises NotImplementedError
        for backends that report outcomes only through polling.
        """
        if self.job_queue is None:
            raise RuntimeError("No job queue is configured")
        self.job_queue.add_listener(lambda outcome: listener(outcome_to_result(outcome)))

    def get_queued_result(self, job_id: str) -> Dict[str, Any]:
        """Poll a queued tool call's job status."""
        if self.job_queue is None:
            raise RuntimeError("No job queue is configured")
        return self.job_queue.get_job_status(job_id)

    # Resolution and formatting

    def snapshot(self) -> ToolSnapshot:
        return self.registry.snapshot()

    async def resolve_tools(
        self,
        names: Union[str, Sequence[str]] = "all",
        snapshot: Optional[ToolSnapshot] = None,
    ) -> List[ToolDefinition]:
        """
        Resolve "all" or explicit names, refreshing stale discovery caches first.

        The refresh is awaited for at most refresh_wait seconds; past that it keeps
        running in the background and the current cached tools are resolved.

        Raises:
            UnknownToolError: If explicit names do not all resolve
        """
        if snapshot is None:
            await self._refresh_stale_caches()
        return self.resolver.resolve_tools(names, snapshot)

    async def _refresh_stale_caches(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self.server_manager.refresh_stale_caches())
            self._refresh_task.add_done_callback(_log_refresh_failure)
        done, _ = await asyncio.wait({self._refresh_task}, timeout=self.refresh_wait)
        if not done:
            logger.info(f"Tool cache refresh still running after {self.refresh_wait}s; using cached tools")

    def format_for_provider(self, provider_id: str, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return self.resolver.format_for_provider(provider_id, definitions)

    def supports_tool_calling(self, provider_id: str, model: Optional[str] = None) -> bool:
        return get_adapter(provider_id).supports_tool_calling(model)

    def format_tool_result(self, provider_id: str, result: ToolCallResult) -> Dict[str, Any]:
        return get_adapter(provider_id).format_tool_result(result)

    # Execution

    async def execute(self, request: ToolCallRequest, snapshot: Optional[ToolSnapshot] = None) -> ToolCallResult:
        return await self.executor.execute(request, snapshot)

    async def execute_batch(
        self,
        requests: Sequence[ToolCallRequest],
        snapshot: Optional[ToolSnapshot] = None,
    ) -> List[ToolCallResult]:
        return await self.executor.execute_batch(requests, snapshot)

    async def process_response(
        self,
        provider_id: str,
        response: Any,
        snapshot: Optional[ToolSnapshot] = None,
    ) -> List[ToolCallResult]:
        return await self.executor.process_response(provider_id, response, snapshot)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tools": self.registry.get_stats(),
            "servers": self.server_manager.get_stats(),
        }


def create_tool_hub(
    config_path: Optional[str] = None,
    tools_path: Optional[str] = None,
    queue_backend: Optional[str] = None,
    client_factory: Optional[ClientFactory] = None,
    policy: Optional[RetryPolicy] = None,
    refresh_wait: Optional[float] = None,
) -> ToolHub:
    """
    Build a ToolHub from the servers file and environment configuration.

    Args:
        config_path: Servers file (defaults to TOOLHUB_MCP_CONFIG_PATH)
        tools_path: Discovered-tools cache file (defaults to TOOLHUB_MCP_TOOLS_PATH)
        queue_backend: "local" or "rq" (defaults to TOOLHUB_QUEUE_BACKEND)
        client_factory: Override MCP client construction (tests)
        policy: Retry policy for tool calls
        refresh_wait: Longest wait on a stale-cache refresh before resolving (defaults to TOOLHUB_DISCOVERY_REFRESH_WAIT)

    Returns:
        An unstarted ToolHub; call start() inside the event loop
    """
    config_service = ServerConfigService(config_path, tools_path)
    document = config_service.load()
    server_manager = RemoteToolServerManager(
        document,
        config_service=config_service,
        client_factory=client_factory,
    )
    return ToolHub(
        config_service,
        server_manager,
        job_queue=create_job_queue(queue_backend),
        policy=policy,
        refresh_wait=refresh_wait,
    )

"""Tool execution engine: validates, routes and retries tool calls from any provider."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Any, Optional, Iterable

from toolhub.infra.config import config
from toolhub.infra.error_handler import (
    ToolError,
    UnknownToolError,
    RemoteUnavailableError,
    ToolTimeoutError,
    classify_error,
    retry_with_backoff,
)
from toolhub.infra.metrics import tool_calls_total, tool_call_duration, tool_call_retries_total
from toolhub.infra.timeout import run_with_timeout
from toolhub.logging.event_logger import log_tool_call
from toolhub.models.tool import ToolDefinition, ExecutionMode, LOCAL_ORIGIN
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult, ErrorKind
from toolhub.services.local_function_registry import LocalFunctionRegistry
from toolhub.services.provider_registry import get_adapter
from toolhub.services.tool_registry import UnifiedToolRegistry, ToolSnapshot
from toolhub.services.tool_resolver import ToolResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry and deadline settings for one tool call.

    call_timeout bounds a single attempt (None: the server's timeout for remote
    tools, TOOL_EXECUTION_TIMEOUT for local ones). total_timeout caps wall-clock
    time across every attempt and backoff (None: derived from the other fields).
    """
    max_attempts: int = 3
    initial_delay: float = 0.25
    max_delay: float = 4.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    call_timeout: Optional[float] = None
    total_timeout: Optional[float] = None

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, config.TOOL_MAX_ATTEMPTS),
            initial_delay=config.TOOL_RETRY_INITIAL_DELAY,
            max_delay=config.TOOL_RETRY_MAX_DELAY,
        )

    def deadline_seconds(self, call_timeout: float) -> float:
        """Default overall deadline: every attempt at full timeout plus maximal backoff."""
        if self.total_timeout is not None:
            return self.total_timeout
        backoff = sum(
            min(self.initial_delay * (self.exponential_base ** i), self.max_delay) * (1 + self.jitter)
            for i in range(self.max_attempts - 1)
        )
        return call_timeout * self.max_attempts + backoff


class ToolExecutor:
    """
    Executes normalized tool calls against the unified registry.

    Every call resolves to a ToolCallResult: failures are reported in the result
    (with their error kind) rather than raised, so one bad call never sinks a batch.
    """

    def __init__(
        self,
        registry: UnifiedToolRegistry,
        local_registry: LocalFunctionRegistry,
        server_manager=None,
        resolver: Optional[ToolResolver] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.registry = registry
        self.local_registry = local_registry
        self.server_manager = server_manager
        self.resolver = resolver or ToolResolver(registry)
        self.policy = policy or RetryPolicy.from_config()

    def _attempt_timeout(self, definition: ToolDefinition) -> float:
        if self.policy.call_timeout is not None:
            return self.policy.call_timeout
        if definition.is_remote and self.server_manager is not None:
            try:
                return self.server_manager.get_timeout(definition.server_id)
            except ToolError as e:
                # Server removed by a reload since the snapshot was taken
                logger.debug(f"No timeout for server of {definition.name}: {e.message}")
        return config.TOOL_EXECUTION_TIMEOUT

    async def _dispatch(self, request: ToolCallRequest, definition: ToolDefinition, timeout: float) -> ToolCallResult:
        if definition.is_local:
            return await self.local_registry.dispatch(request, definition)
        if self.server_manager is None:
            raise RemoteUnavailableError(f"No tool server manager configured for '{definition.origin}'")
        return await self.server_manager.invoke_tool(definition.server_id, request, timeout=timeout)

    async def execute(self, request: ToolCallRequest, snapshot: Optional[ToolSnapshot] = None) -> ToolCallResult:
        """
        Execute one tool call.

        Arguments are validated before dispatch; a validation failure never reaches
        the handler. Sync calls are retried with exponential backoff on retryable
        errors. Queued calls are handed off once and never retried here.

        Args:
            request: Normalized tool call
            snapshot: Registry snapshot to resolve against (a fresh one if omitted)

        Returns:
            ToolCallResult (success, accepted, or failed with an error kind)
        """
        snapshot = snapshot if snapshot is not None else self.registry.snapshot()
        start_time = time.monotonic()
        definition = snapshot.get(request.tool_name)
        origin = definition.origin if definition else "unknown"
        origin_label = "unknown" if definition is None else (LOCAL_ORIGIN if definition.is_local else "remote")

        if definition is None:
            result = ToolCallResult.failure(
                request, ErrorKind.UNKNOWN_TOOL, f"Unknown tool: {request.tool_name}"
            )
        else:
            result = await self._execute_known(request, definition, start_time)

        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        tool_calls_total.labels(tool_name=request.tool_name, origin=origin_label, status=result.status.value).inc()
        if definition is not None:
            tool_call_duration.labels(tool_name=request.tool_name, origin=origin_label).observe(result.duration_ms / 1000)
        log_tool_call(request, result, origin)
        return result

    async def _execute_known(
        self,
        request: ToolCallRequest,
        definition: ToolDefinition,
        start_time: float,
    ) -> ToolCallResult:
        attempts_started = 0
        try:
            self.resolver.validate_arguments(definition, request.arguments)
            timeout = self._attempt_timeout(definition)

            if definition.is_local and definition.execution_mode == ExecutionMode.QUEUED:
                return await run_with_timeout(
                    self._dispatch(request, definition, timeout), timeout, f"Queueing tool '{request.tool_name}'"
                )

            thread_bound = definition.is_local and self.local_registry.runs_in_thread(request.tool_name)

            async def attempt() -> ToolCallResult:
                nonlocal attempts_started
                attempts_started += 1
                try:
                    return await run_with_timeout(
                        self._dispatch(request, definition, timeout), timeout, f"Tool '{request.tool_name}'"
                    )
                except ToolTimeoutError as e:
                    if thread_bound:
                        # The worker thread cannot be stopped; a retry would run the handler twice
                        e.retryable = False
                    raise

            def on_retry(error: ToolError, attempt_number: int, delay: float) -> None:
                tool_call_retries_total.labels(tool_name=request.tool_name, error_kind=error.kind.value).inc()
                logger.info(
                    f"Retrying tool {request.tool_name} (attempt {attempt_number} failed: {error.message}); "
                    f"next attempt in {delay:.2f}s"
                )

            total_seconds = self.policy.deadline_seconds(timeout)
            result, _ = await run_with_timeout(
                retry_with_backoff(
                    attempt,
                    max_attempts=self.policy.max_attempts,
                    initial_delay=self.policy.initial_delay,
                    max_delay=self.policy.max_delay,
                    exponential_base=self.policy.exponential_base,
                    jitter=self.policy.jitter,
                    deadline=start_time + total_seconds,
                    on_retry=on_retry,
                ),
                total_seconds,
                f"Tool '{request.tool_name}' (all attempts)",
            )
            result.attempts = attempts_started
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_error(e)
            attempts = max(attempts_started, error.attempts, 1)
            if error.kind in (ErrorKind.SCHEMA_VALIDATION_FAILED, ErrorKind.MALFORMED_TOOL_CALL):
                logger.info(f"Rejected call to {request.tool_name}: {error.message}")
            else:
                logger.warning(f"Tool {request.tool_name} failed after {attempts} attempt(s): {error.message}")
            return ToolCallResult.failure(request, error.kind, error.message, attempts=attempts)

    async def execute_batch(
        self,
        requests: Iterable[ToolCallRequest],
        snapshot: Optional[ToolSnapshot] = None,
    ) -> List[ToolCallResult]:
        """
        Execute several calls concurrently against one snapshot.

        Returns:
            Results in the same order as the requests
        """
        requests = list(requests)
        if not requests:
            return []
        snapshot = snapshot if snapshot is not None else self.registry.snapshot()
        return list(await asyncio.gather(*(self.execute(request, snapshot) for request in requests)))

    async def process_response(
        self,
        provider_id: str,
        response: Any,
        snapshot: Optional[ToolSnapshot] = None,
    ) -> List[ToolCallResult]:
        """
        Extract and execute every tool call in a provider response.

        Args:
            provider_id: Provider that produced the response
            response: Raw provider response (dict or SDK object)
            snapshot: Snapshot the tools were advertised from

        Returns:
            Results in the order the provider listed the calls

        Raises:
            MalformedToolCallError: If any call's arguments cannot be parsed
            UnknownToolError: If any call names a tool outside the snapshot
            AuthenticationFailedError: If the response is a provider credential error
        """
        requests = get_adapter(provider_id).extract_tool_calls(response)
        snapshot = snapshot if snapshot is not None else self.registry.snapshot()

        unknown = [request.tool_name for request in requests if request.tool_name not in snapshot]
        if unknown:
            raise UnknownToolError(dict.fromkeys(unknown))

        return await self.execute_batch(requests, snapshot)

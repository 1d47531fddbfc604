"""Tool error types, error classification and retry logic."""

import asyncio
import json
import logging
import random
import time
from typing import Optional, Callable, Any, Iterable, List, Tuple

import httpx
import websockets
import websockets.exceptions

from toolhub.models.tool_call import ErrorKind

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Base exception for every classified tool-system failure."""

    kind: ErrorKind = ErrorKind.HANDLER_ERROR

    def __init__(self, message: str, retryable: bool = False, retry_after: Optional[float] = None):
        self.message = message
        self.retryable = retryable
        self.retry_after = retry_after
        self.code: Optional[int] = None  # JSON-RPC error code, when the server sent one
        self.attempts = 1
        super().__init__(message)


class DuplicateToolNameError(ToolError):
    """A tool name is already registered by a different origin."""
    kind = ErrorKind.DUPLICATE_TOOL_NAME

    def __init__(self, name: str, existing_origin: str, new_origin: str):
        self.name = name
        self.existing_origin = existing_origin
        self.new_origin = new_origin
        super().__init__(
            f"Tool '{name}' is already registered by '{existing_origin}' "
            f"and cannot be registered by '{new_origin}'"
        )


class UnknownToolError(ToolError):
    """One or more requested tool names are not in the registry snapshot."""
    kind = ErrorKind.UNKNOWN_TOOL

    def __init__(self, names: Iterable[str]):
        self.names: List[str] = list(names)
        super().__init__(f"Unknown tools: {', '.join(self.names)}")


class MalformedToolCallError(ToolError):
    """A provider response carried a tool call whose arguments cannot be parsed."""
    kind = ErrorKind.MALFORMED_TOOL_CALL

    def __init__(self, message: str, tool_name: Optional[str] = None, call_id: Optional[str] = None):
        self.tool_name = tool_name
        self.call_id = call_id
        super().__init__(message)


class SchemaValidationError(ToolError):
    """Arguments or a definition do not match the expected schema."""
    kind = ErrorKind.SCHEMA_VALIDATION_FAILED

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = problems or []
        super().__init__(message)


class HandlerError(ToolError):
    """A local handler raised, or a remote tool reported a tool-level error."""
    kind = ErrorKind.HANDLER_ERROR


class RemoteUnavailableError(ToolError):
    """The remote tool server is not Healthy or the connection dropped."""
    kind = ErrorKind.REMOTE_UNAVAILABLE

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, retryable=True, retry_after=retry_after)


class ServerLaunchError(ToolError):
    """A tool server could not be launched at all (missing command, bad config). Fatal."""
    kind = ErrorKind.REMOTE_UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class ToolTimeoutError(ToolError):
    """A tool call exceeded its deadline."""
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class RemoteProtocolError(ToolError):
    """A tool server sent something that is not a valid protocol response."""
    kind = ErrorKind.REMOTE_PROTOCOL_ERROR

    def __init__(self, message: str, transient: bool = False, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, retryable=transient)


class AuthenticationFailedError(ToolError):
    """A tool server or provider rejected our credentials."""
    kind = ErrorKind.AUTHENTICATION_FAILED


# JSON-RPC error codes used by tool servers
JSONRPC_PARSE_ERROR = -32700
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_INTERNAL_ERROR = -32603
JSONRPC_UNAUTHORIZED = -32001


def classify_jsonrpc_error(error: dict, context: str) -> ToolError:
    """
    Map a JSON-RPC error object to a ToolError.

    Args:
        error: The "error" member of a JSON-RPC response
        context: Short description of the call for the message

    Returns:
        Classified ToolError
    """
    code = error.get("code")
    message = f"{context} failed: {error.get('message', 'Unknown error')} (code: {code if code is not None else 'unknown'})"

    if code == JSONRPC_INVALID_PARAMS:
        classified = SchemaValidationError(message)
    elif code == JSONRPC_UNAUTHORIZED:
        classified = AuthenticationFailedError(message)
    elif code == JSONRPC_INTERNAL_ERROR:
        classified = RemoteProtocolError(message, transient=True)
    elif code in (JSONRPC_METHOD_NOT_FOUND, JSONRPC_PARSE_ERROR, JSONRPC_INVALID_REQUEST):
        classified = RemoteProtocolError(message)
    else:
        classified = HandlerError(message)
    classified.code = code
    return classified


def classify_error(error: BaseException) -> ToolError:
    """
    Classify an arbitrary exception into a ToolError.

    ToolErrors pass through unchanged; transport and runtime exceptions are mapped to
    the error kind whose retry semantics match.

    Args:
        error: The exception to classify

    Returns:
        ToolError with kind and retryable flag set
    """
    if isinstance(error, ToolError):
        return error

    if isinstance(error, asyncio.TimeoutError):
        return ToolTimeoutError(f"Operation timed out: {error}" if str(error) else "Operation timed out")

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code in (401, 403):
            return AuthenticationFailedError(f"Remote server rejected credentials ({status_code})")
        if status_code == 429:
            retry_after = None
            header = error.response.headers.get("retry-after")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            return RemoteUnavailableError(f"Remote server rate limited the request (429)", retry_after=retry_after)
        if status_code >= 500:
            return RemoteProtocolError(
                f"Remote server error ({status_code})", transient=True, status_code=status_code
            )
        return RemoteProtocolError(f"Remote server returned HTTP {status_code}", status_code=status_code)

    if isinstance(error, httpx.TimeoutException):
        return ToolTimeoutError(f"Remote request timed out: {error}")

    if isinstance(error, httpx.TransportError):
        return RemoteUnavailableError(f"Remote connection failed: {error}")

    if isinstance(error, websockets.exceptions.InvalidStatus):
        status_code = getattr(getattr(error, "response", None), "status_code", None)
        if status_code in (401, 403):
            return AuthenticationFailedError(f"Remote server rejected credentials ({status_code})")
        return RemoteUnavailableError(f"WebSocket handshake failed: {error}")

    if isinstance(error, websockets.exceptions.WebSocketException):
        return RemoteUnavailableError(f"WebSocket connection failed: {error}")

    if isinstance(error, json.JSONDecodeError):
        return RemoteProtocolError(f"Response parsing failed: {error}")

    if isinstance(error, (ConnectionError, EOFError, BrokenPipeError)):
        return RemoteUnavailableError(f"Connection lost: {error}")

    if isinstance(error, OSError):
        return RemoteUnavailableError(f"I/O failure: {error}")

    return HandlerError(f"{type(error).__name__}: {error}")


async def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    initial_delay: float = 0.25,
    max_delay: float = 4.0,
    exponential_base: float = 2.0,
    jitter: float = 0.1,
    deadline: Optional[float] = None,
    on_retry: Optional[Callable[[ToolError, int, float], Any]] = None,
) -> Tuple[Any, int]:
    """
    Retry an async function with exponential backoff and jitter.

    Only errors classified as retryable are retried. A monotonic ``deadline`` caps the
    total wall-clock time across attempts: no new attempt starts (and no backoff sleep
    extends) past it.

    Args:
        func: Zero-argument async callable performing one attempt
        max_attempts: Maximum number of attempts (including the first)
        initial_delay: Delay in seconds before the second attempt
        max_delay: Upper bound on a single backoff delay
        exponential_base: Base for exponential backoff
        jitter: Fraction of the delay added as random jitter
        deadline: Optional time.monotonic() value after which no attempt starts
        on_retry: Optional callback (error, attempt_number, delay), sync or async

    Returns:
        Tuple of (result, attempts_used)

    Raises:
        ToolError: The classified error of the last attempt
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(), attempt
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_error(e)
            if error is not e:
                error.__cause__ = e
            error.attempts = attempt

            if not error.retryable or attempt >= max_attempts:
                raise error

            if error.retry_after:
                delay = min(error.retry_after, max_delay)
            else:
                delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)
            delay += random.uniform(0, delay * jitter)

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= delay:
                    logger.debug(f"Retries exhausted after {attempt} attempts: {error.message}")
                    raise error

            if on_retry:
                result = on_retry(error, attempt, delay)
                if asyncio.iscoroutine(result):
                    await result

            await asyncio.sleep(delay)

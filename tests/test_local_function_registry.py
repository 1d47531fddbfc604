"""Unit tests for local tool handlers and the background job queue."""

import threading
import time

import pytest

from toolhub.infra.error_handler import HandlerError, SchemaValidationError, DuplicateToolNameError
from toolhub.infra.queue import WorkerPoolJobQueue, create_job_queue
from toolhub.models.tool import ToolDefinition, ExecutionMode, remote_origin
from toolhub.models.tool_call import ToolCallRequest, CallStatus
from toolhub.services.local_function_registry import LocalFunctionRegistry, ToolHandler, ToolMetadata
from toolhub.services.tool_registry import UnifiedToolRegistry
from toolhub.workers.tool_job_processor import process_queued_tool_call


class GreetingHandler(ToolHandler):
    """Listener class that describes itself."""

    def handle(self, request):
        return f"Hello, {request.arguments['name']}!"

    def get_function_definition(self):
        return {
            "description": "Greet someone by name",
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
        }


class AsyncHandler(ToolHandler):
    async def handle(self, request):
        return {"echo": request.arguments}


@pytest.fixture
def job_queue():
    """In-process worker pool, shut down after the test."""
    queue = WorkerPoolJobQueue(max_workers=2)
    yield queue
    queue.shutdown(wait=True)


@pytest.fixture
def local_registry(job_queue):
    return LocalFunctionRegistry(UnifiedToolRegistry(), job_queue)


def definition_for(local_registry, name):
    return local_registry.registry.snapshot()[name]


class TestListen:
    """Test registering local tools."""

    def test_listen_with_callable(self, local_registry):
        """Test a plain function becomes a sync local tool."""
        definition = local_registry.listen(
            "add_numbers",
            lambda a, b: a + b,
            {"description": "Add two numbers", "parameters": {
                "type": "object",
                "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            }},
        )
        assert definition.execution_mode == ExecutionMode.SYNC
        assert definition.category == "function_event"
        assert "add_numbers" in local_registry.registry.snapshot()

    def test_listen_uses_handler_definition(self, local_registry):
        """Test a listener class supplies its own description and schema."""
        definition = local_registry.listen("greet", GreetingHandler())
        assert definition.description == "Greet someone by name"
        assert definition.required_parameters == ["name"]

    def test_listen_default_description(self, local_registry):
        """Test a tool without any description gets a generated one."""
        definition = local_registry.listen("ping_home", lambda: "pong")
        assert definition.description == "Execute ping_home action"
        assert definition.parameters_schema == {"type": "object", "properties": {}}

    def test_listen_again_replaces(self, local_registry):
        """Test listening twice under one name replaces handler and definition."""
        local_registry.listen("ping_home", lambda: "pong")
        local_registry.listen("ping_home", lambda: "pong v2", {"description": "Ping v2"})

        assert definition_for(local_registry, "ping_home").description == "Ping v2"

    def test_listen_invalid_name(self, local_registry):
        """Test an invalid tool name is a schema validation error."""
        with pytest.raises(SchemaValidationError):
            local_registry.listen("bad name", lambda: None)

    def test_listen_unknown_metadata_key(self, local_registry):
        """Test unknown metadata keys are rejected."""
        with pytest.raises(SchemaValidationError):
            local_registry.listen("tool_a", lambda: None, {"descripton": "typo"})

    def test_listen_name_owned_by_remote_server(self):
        """Test a local tool cannot take a name a Healthy server exposes."""

        class Manager:
            def healthy_tools(self):
                return [("search", (ToolDefinition(name="web_search", description="Search", origin=remote_origin("search")),))]

        local_registry = LocalFunctionRegistry(UnifiedToolRegistry(Manager()))
        with pytest.raises(DuplicateToolNameError):
            local_registry.listen("web_search", lambda query: query)
        assert local_registry.get_handler("web_search") is None

    def test_unlisten(self, local_registry):
        """Test unlisten removes handler and definition."""
        local_registry.listen("ping_home", lambda: "pong")
        assert local_registry.unlisten("ping_home") is True
        assert local_registry.unlisten("ping_home") is False
        assert "ping_home" not in local_registry.registry.snapshot()


class TestDispatch:
    """Test running local tools."""

    @pytest.mark.asyncio
    async def test_sync_function(self, local_registry):
        """Test a sync function runs and returns its output."""
        local_registry.listen("add_numbers", lambda a, b: a + b)
        request = ToolCallRequest(tool_name="add_numbers", arguments={"a": 2, "b": 3})

        result = await local_registry.dispatch(request, definition_for(local_registry, "add_numbers"))
        assert result.success
        assert result.output == 5
        assert result.call_id == request.call_id

    @pytest.mark.asyncio
    async def test_async_handler(self, local_registry):
        """Test coroutine handlers are awaited on the event loop."""
        local_registry.listen("echo", AsyncHandler())
        request = ToolCallRequest(tool_name="echo", arguments={"x": 1})

        result = await local_registry.dispatch(request, definition_for(local_registry, "echo"))
        assert result.output == {"echo": {"x": 1}}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_handler_error(self, local_registry):
        """Test a raising handler surfaces as HandlerError."""

        def broken():
            raise ValueError("bad input")

        local_registry.listen("broken", broken)
        request = ToolCallRequest(tool_name="broken", arguments={})

        with pytest.raises(HandlerError) as exc_info:
            await local_registry.dispatch(request, definition_for(local_registry, "broken"))
        assert "bad input" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_non_json_output_is_stringified(self, local_registry):
        """Test outputs that are not JSON values are converted to text."""
        local_registry.listen("now", lambda: object())
        request = ToolCallRequest(tool_name="now", arguments={})

        result = await local_registry.dispatch(request, definition_for(local_registry, "now"))
        assert isinstance(result.output, str)

    @pytest.mark.asyncio
    async def test_queued_returns_before_handler_finishes(self, local_registry, job_queue):
        """Test a queued tool is accepted immediately and reconciled later."""
        release = threading.Event()
        finished = threading.Event()
        outcomes = []

        def slow_report(topic):
            release.wait(timeout=5)
            return f"report on {topic}"

        def on_outcome(outcome):
            outcomes.append(outcome)
            finished.set()

        job_queue.add_listener(on_outcome)
        local_registry.listen("build_report", slow_report, ToolMetadata(queued=True))
        request = ToolCallRequest(tool_name="build_report", arguments={"topic": "sales"})

        started = time.monotonic()
        result = await local_registry.dispatch(request, definition_for(local_registry, "build_report"))
        assert time.monotonic() - started < 1.0

        assert result.status == CallStatus.ACCEPTED
        assert result.is_pending
        assert result.output == {"status": "queued", "job_id": result.job_id}
        assert "queued for background processing" in result.to_tool_message()

        release.set()
        assert finished.wait(timeout=5)
        assert outcomes[0].job_id == result.job_id
        assert outcomes[0].call_id == request.call_id
        assert outcomes[0].success
        assert outcomes[0].output == "report on sales"
        assert job_queue.get_job_status(result.job_id)["status"] == "finished"

    @pytest.mark.asyncio
    async def test_queued_without_job_queue(self):
        """Test a queued tool without a queue fails as a handler error."""
        local_registry = LocalFunctionRegistry(UnifiedToolRegistry())
        local_registry.listen("build_report", lambda: "x", {"queued": True})
        request = ToolCallRequest(tool_name="build_report", arguments={})

        with pytest.raises(HandlerError):
            await local_registry.dispatch(request, definition_for(local_registry, "build_report"))


class TestJobQueue:
    """Test the job queue backends."""

    def test_failed_job_reported(self, job_queue):
        """Test a raising queued handler is reported as failed."""
        done = threading.Event()
        outcomes = []

        def listener(outcome):
            outcomes.append(outcome)
            done.set()

        class Broken(ToolHandler):
            def handle(self, request):
                raise RuntimeError("disk full")

        job_queue.add_listener(listener)
        job_id = job_queue.submit(Broken(), ToolCallRequest(tool_name="archive", arguments={}))

        assert done.wait(timeout=5)
        assert outcomes[0].success is False
        assert "disk full" in outcomes[0].error
        assert job_queue.get_job_status(job_id)["status"] == "failed"

    def test_listener_errors_do_not_break_queue(self, job_queue):
        """Test a raising listener does not stop other listeners."""
        done = threading.Event()

        def bad_listener(outcome):
            raise RuntimeError("listener bug")

        job_queue.add_listener(bad_listener)
        job_queue.add_listener(lambda outcome: done.set())
        job_queue.submit(GreetingHandler(), ToolCallRequest(tool_name="greet", arguments={"name": "Ada"}))

        assert done.wait(timeout=5)

    def test_unknown_job(self, job_queue):
        """Test status of an unknown job."""
        assert job_queue.get_job_status("job_missing")["status"] == "not_found"

    def test_unknown_backend(self):
        """Test an unknown backend name is rejected."""
        with pytest.raises(ValueError):
            create_job_queue("carrier-pigeon")

    def test_process_queued_async_handler(self):
        """Test the worker entry point runs coroutine handlers to completion."""
        result = process_queued_tool_call(
            AsyncHandler(),
            {"tool_name": "echo", "arguments": {"k": "v"}, "call_id": "call_1"},
        )
        assert result == {"call_id": "call_1", "tool_name": "echo", "output": {"echo": {"k": "v"}}}

    def test_finished_jobs_release_their_futures(self):
        """Test the queue keeps no executor futures once its jobs are done."""
        queue = WorkerPoolJobQueue(max_workers=2)
        job_ids = [
            queue.submit(GreetingHandler(), ToolCallRequest(tool_name="greet", arguments={"name": f"user{i}"}))
            for i in range(20)
        ]
        queue.shutdown(wait=True)

        assert queue._futures == {}
        assert all(queue.get_job_status(job_id)["status"] == "finished" for job_id in job_ids)

    def test_expired_jobs_evicted_on_submit(self):
        """Test finished jobs past result_ttl are dropped when the next job is submitted."""
        queue = WorkerPoolJobQueue(max_workers=1, result_ttl=0)
        try:
            first = queue.submit(GreetingHandler(), ToolCallRequest(tool_name="greet", arguments={"name": "Ada"}))
            deadline = time.monotonic() + 5
            while first in queue._futures or queue.get_job_status(first)["status"] != "finished":
                assert time.monotonic() < deadline
                time.sleep(0.01)

            second = queue.submit(GreetingHandler(), ToolCallRequest(tool_name="greet", arguments={"name": "Bob"}))

            assert queue.get_job_status(first)["status"] == "not_found"
            assert queue.get_job_status(second)["status"] != "not_found"
        finally:
            queue.shutdown(wait=True)

"""End-to-end tests for the ToolHub facade with in-memory tool servers."""

import asyncio
import json
import threading
import time

import pytest
import pytest_asyncio

from conftest import FakeClientFactory, tool_descriptor
from toolhub.infra.error_handler import UnknownToolError
from toolhub.main import create_tool_hub, outcome_to_result
from toolhub.infra.queue import QueuedJobOutcome
from toolhub.models.tool_call import CallStatus, ErrorKind


SEARCH_TOOLS = [
    tool_descriptor("web_search", "Search the web", properties={"query": {"type": "string"}}, required=["query"]),
]


def write_servers(path, *server_ids):
    path.write_text(json.dumps({
        "servers": {
            server_id: {"command": f"{server_id}-server", "enabled": True, "timeout": 5}
            for server_id in server_ids
        },
        "global_config": {"retry_attempts": 0},
    }), encoding="utf-8")


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / ".mcp.json"
    write_servers(path, "search")
    return path


@pytest.fixture
def factory():
    return FakeClientFactory(search={"tools": SEARCH_TOOLS, "call_results": {"web_search": {"hits": 3}}})


@pytest_asyncio.fixture
async def hub(tmp_path, config_path, factory):
    """Started ToolHub with one fake 'search' server and the in-process job queue."""
    hub = create_tool_hub(
        config_path=str(config_path),
        tools_path=str(tmp_path / ".mcp.tools.json"),
        queue_backend="local",
        client_factory=factory,
    )
    await hub.start()
    hub.listen("get_weather", lambda city: f"Sunny in {city}", {
        "description": "Get the weather for a city",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
    })
    yield hub
    await hub.shutdown()


class TestToolHub:
    """Test one model turn through the facade."""

    @pytest.mark.asyncio
    async def test_start_reports_states(self, tmp_path, config_path, factory):
        """Test start returns each enabled server's state."""
        hub = create_tool_hub(str(config_path), str(tmp_path / ".mcp.tools.json"), "local", factory)
        try:
            assert await hub.start() == {"search": "healthy"}
        finally:
            await hub.shutdown()
        assert factory.latest("search").closed

    @pytest.mark.asyncio
    async def test_resolve_and_format(self, hub):
        """Test local and remote tools resolve together and format for a provider."""
        tools = await hub.resolve_tools("all")
        assert [tool.name for tool in tools] == ["get_weather", "web_search"]

        payload = hub.format_for_provider("openai", tools)
        assert [entry["function"]["name"] for entry in payload] == ["get_weather", "web_search"]
        assert hub.supports_tool_calling("openai")

    @pytest.mark.asyncio
    async def test_resolve_unknown_name(self, hub):
        """Test explicit unknown names are reported."""
        with pytest.raises(UnknownToolError):
            await hub.resolve_tools(["get_weather", "book_flight"])

    @pytest.mark.asyncio
    async def test_hung_refresh_does_not_delay_resolution(self, hub, factory):
        """Test resolution returns cached tools while a stale server is still listing its tools."""
        listings = []

        async def hang():
            listings.append(1)
            await asyncio.sleep(5)

        factory.latest("search").list_tools = hang
        hub.server_manager.invalidate("search")
        hub.refresh_wait = 0.1

        started = time.monotonic()
        tools = await hub.resolve_tools("all")
        again = await hub.resolve_tools("all")

        assert time.monotonic() - started < 1.0
        assert [tool.name for tool in tools] == ["get_weather", "web_search"]
        assert [tool.name for tool in again] == ["get_weather", "web_search"]
        assert len(listings) == 1

    @pytest.mark.asyncio
    async def test_process_response(self, hub, factory):
        """Test a provider response runs local and remote calls and formats results."""
        response = {"choices": [{"message": {"tool_calls": [
            {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": json.dumps({"city": "Lima"})}},
            {"id": "call_2", "type": "function", "function": {"name": "web_search", "arguments": json.dumps({"query": "llamas"})}},
        ]}}]}

        results = await hub.process_response("openai", response)

        assert [r.output for r in results] == ["Sunny in Lima", {"hits": 3}]
        assert factory.latest("search").calls[0][:2] == ("web_search", {"query": "llamas"})
        message = hub.format_tool_result("openai", results[0])
        assert message == {"role": "tool", "tool_call_id": "call_1", "content": "Sunny in Lima"}

    @pytest.mark.asyncio
    async def test_queued_result_reconciled(self, hub):
        """Test a queued tool is accepted and its final result delivered to listeners."""
        done = threading.Event()
        finals = []

        def on_result(result):
            finals.append(result)
            done.set()

        hub.on_queued_result(on_result)
        hub.listen("build_report", lambda topic: f"report on {topic}", {"queued": True})
        response = {"choices": [{"message": {"tool_calls": [
            {"id": "call_9", "type": "function", "function": {"name": "build_report", "arguments": json.dumps({"topic": "q3"})}},
        ]}}]}

        [accepted] = await hub.process_response("openai", response)

        assert accepted.status == CallStatus.ACCEPTED
        assert done.wait(timeout=5)
        assert finals[0].call_id == "call_9"
        assert finals[0].job_id == accepted.job_id
        assert finals[0].output == "report on q3"
        assert hub.get_queued_result(accepted.job_id)["status"] == "finished"

    @pytest.mark.asyncio
    async def test_reload_starts_new_server(self, hub, config_path):
        """Test reload starts added servers and leaves unchanged ones running."""
        write_servers(config_path, "search", "files")

        summary = await hub.reload()

        assert summary == {"started": ["files"], "stopped": [], "unchanged": ["search"]}
        assert hub.get_stats()["servers"]["files"]["state"] == "healthy"

    @pytest.mark.asyncio
    async def test_stats(self, hub):
        """Test stats cover tools and servers."""
        stats = hub.get_stats()
        assert stats["tools"]["local_tools"] == 1
        assert stats["tools"]["remote_tools"] == 1
        assert stats["servers"]["search"]["tool_count"] == 1


class TestOutcomeToResult:
    """Test converting background job outcomes."""

    def test_failed_outcome(self):
        """Test a failed job becomes a failed HandlerError result."""
        outcome = QueuedJobOutcome(
            job_id="job_1", call_id="call_1", tool_name="build_report", success=False, error="disk full"
        )
        result = outcome_to_result(outcome)
        assert not result.success
        assert result.error_kind == ErrorKind.HANDLER_ERROR
        assert result.error_message == "disk full"
        assert result.job_id == "job_1"

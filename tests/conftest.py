"""Pytest configuration and fixtures."""

import pytest
import os
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load test environment variables
load_dotenv()

# Set test environment
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")

from toolhub.infra.error_handler import RemoteUnavailableError
from toolhub.models.server import ServersDocument, ToolServerConfig, GlobalServerSettings, TransportType
from toolhub.models.tool import ToolDefinition, remote_origin

FAKE_SERVER_SCRIPT = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


class FakeMCPClient:
    """In-memory stand-in for MCPClient with scriptable behaviour."""

    def __init__(self, server_id, tools=None, fail_connect=None, call_results=None):
        self.server_id = server_id
        self.tools = tools if tools is not None else []
        self.fail_connect = fail_connect
        self.call_results = call_results or {}
        self.server_info = {"name": f"{server_id}-server", "version": "0.1.0"}
        self.connected = False
        self.closed = False
        self.list_calls = 0
        self.calls = []
        self.ping_error = None
        self.list_error = None

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True
        return {"serverInfo": self.server_info}

    async def list_tools(self):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.tools)

    async def call_tool(self, name, arguments, timeout=None):
        self.calls.append((name, arguments, timeout))
        if not self.connected:
            raise RemoteUnavailableError(f"Tool server '{self.server_id}' closed its output")
        outcome = self.call_results.get(name, f"{name} ok")
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(arguments)
        return outcome

    async def ping(self, timeout=None):
        if self.ping_error is not None:
            raise self.ping_error

    async def close(self):
        self.connected = False
        self.closed = True


class FakeClientFactory:
    """Client factory handing out FakeMCPClients; remembers every client it built."""

    def __init__(self, **per_server):
        self.per_server = per_server
        self.built = []

    def __call__(self, server):
        options = self.per_server.get(server.server_id, {})
        client = FakeMCPClient(server.server_id, **options)
        self.built.append(client)
        return client

    def latest(self, server_id):
        return [client for client in self.built if client.server_id == server_id][-1]


def make_document(*server_ids, retry_attempts=0, **global_options):
    """Build a ServersDocument of enabled stdio servers."""
    servers = {
        server_id: ToolServerConfig(
            server_id=server_id,
            transport=TransportType.STDIO,
            command="fake-server",
            enabled=True,
            timeout_ms=2000,
        )
        for server_id in server_ids
    }
    return ServersDocument(
        servers=servers,
        global_config=GlobalServerSettings(retry_attempts=retry_attempts, **global_options),
    )


def tool_descriptor(name, description=None, properties=None, required=None):
    """Raw MCP tools/list descriptor."""
    schema = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return {"name": name, "description": description or f"{name} tool", "inputSchema": schema}


@pytest.fixture
def weather_definition():
    """Local tool definition with one required argument."""
    return ToolDefinition(
        name="get_weather",
        description="Get the weather for a city",
        parameters_schema={
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
    )


@pytest.fixture
def remote_search_definition():
    """Remote tool definition exposed by the 'search' server."""
    return ToolDefinition(
        name="web_search",
        description="Search the web",
        parameters_schema={"type": "object", "properties": {"query": {"type": "string"}}},
        origin=remote_origin("search"),
    )


@pytest.fixture
def fake_server_command():
    """Command and args launching the scripted stdio tool server."""
    return sys.executable, [str(FAKE_SERVER_SCRIPT)]

"""Unit tests for the unified tool registry."""

import logging

import pytest

from toolhub.infra.error_handler import DuplicateToolNameError, UnknownToolError
from toolhub.models.tool import ToolDefinition, ExecutionMode, remote_origin
from toolhub.services.tool_registry import UnifiedToolRegistry


class StubServerManager:
    """Serves fixed healthy tool lists, in configuration order."""

    def __init__(self, tools_by_server=None):
        self.tools_by_server = tools_by_server or {}

    def healthy_tools(self):
        return [(server_id, tuple(tools)) for server_id, tools in self.tools_by_server.items()]


def remote_tool(name, server_id, description=None):
    return ToolDefinition(
        name=name,
        description=description or f"{name} on {server_id}",
        origin=remote_origin(server_id),
    )


class TestRegistration:
    """Test local tool registration."""

    def test_register_and_snapshot(self, weather_definition):
        """Test registered local tools appear in new snapshots."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)

        snapshot = registry.snapshot()
        assert "get_weather" in snapshot
        assert snapshot["get_weather"] == weather_definition
        assert snapshot.names() == ["get_weather"]

    def test_identical_reregistration_is_noop(self, weather_definition):
        """Test registering the same definition twice is accepted."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)
        result = registry.register(weather_definition.model_copy())

        assert result == weather_definition
        assert len(registry.snapshot()) == 1

    def test_different_definition_same_name_rejected(self, weather_definition):
        """Test a changed definition needs replace=True."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)
        changed = weather_definition.model_copy(update={"description": "Changed"})

        with pytest.raises(DuplicateToolNameError) as exc_info:
            registry.register(changed)
        assert exc_info.value.name == "get_weather"

        registry.register(changed, replace=True)
        assert registry.snapshot()["get_weather"].description == "Changed"

    def test_remote_definition_rejected(self, remote_search_definition):
        """Test remote definitions only come from discovery."""
        registry = UnifiedToolRegistry()
        with pytest.raises(ValueError):
            registry.register(remote_search_definition)

    def test_register_name_taken_by_remote_server(self):
        """Test a local tool cannot shadow a name a Healthy server exposes."""
        manager = StubServerManager({"search": [remote_tool("web_search", "search")]})
        registry = UnifiedToolRegistry(manager)

        with pytest.raises(DuplicateToolNameError) as exc_info:
            registry.register(ToolDefinition(name="web_search", description="Local search"))
        assert exc_info.value.existing_origin == "remote:search"

    def test_unregister(self, weather_definition):
        """Test unregistering removes the tool and reports whether it existed."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)

        assert registry.unregister("get_weather") is True
        assert registry.unregister("get_weather") is False
        assert "get_weather" not in registry.snapshot()


class TestSnapshot:
    """Test snapshot construction and collision handling."""

    def test_local_tools_come_first(self, weather_definition):
        """Test snapshot ordering: local tools, then servers in configuration order."""
        manager = StubServerManager({
            "search": [remote_tool("web_search", "search")],
            "files": [remote_tool("read_file", "files")],
        })
        registry = UnifiedToolRegistry(manager)
        registry.register(weather_definition)

        assert registry.snapshot().names() == ["get_weather", "web_search", "read_file"]

    def test_local_tool_wins_collision(self, weather_definition):
        """Test a remote tool with a local tool's name is hidden."""
        manager = StubServerManager()
        registry = UnifiedToolRegistry(manager)
        registry.register(weather_definition)
        manager.tools_by_server["weather"] = [remote_tool("get_weather", "weather")]

        snapshot = registry.snapshot()
        assert snapshot["get_weather"].is_local
        assert len(snapshot) == 1

    def test_earliest_server_wins_collision(self):
        """Test the first configured server keeps a contested name."""
        manager = StubServerManager({
            "alpha": [remote_tool("lookup", "alpha")],
            "beta": [remote_tool("lookup", "beta"), remote_tool("other", "beta")],
        })
        registry = UnifiedToolRegistry(manager)

        snapshot = registry.snapshot()
        assert snapshot["lookup"].origin == "remote:alpha"
        assert snapshot["other"].origin == "remote:beta"

    def test_collision_logged_once(self, caplog):
        """Test a collision is warned about once, not on every snapshot."""
        manager = StubServerManager({
            "alpha": [remote_tool("lookup", "alpha")],
            "beta": [remote_tool("lookup", "beta")],
        })
        registry = UnifiedToolRegistry(manager)

        with caplog.at_level(logging.WARNING, logger="toolhub.services.tool_registry"):
            registry.snapshot()
            registry.snapshot()

        collisions = [r for r in caplog.records if "collision" in r.getMessage()]
        assert len(collisions) == 1

    def test_snapshot_is_isolated_from_later_changes(self, weather_definition):
        """Test a snapshot does not see registrations made after it was built."""
        registry = UnifiedToolRegistry()
        before = registry.snapshot()
        registry.register(weather_definition)

        assert "get_weather" not in before
        assert "get_weather" in registry.snapshot()

    def test_unhealthy_server_tools_absent(self):
        """Test only servers the manager reports as Healthy contribute tools."""
        manager = StubServerManager({"search": [remote_tool("web_search", "search")]})
        registry = UnifiedToolRegistry(manager)
        assert "web_search" in registry.snapshot()

        del manager.tools_by_server["search"]
        assert "web_search" not in registry.snapshot()


class TestLookup:
    """Test name lookup and introspection."""

    def test_lookup_reports_every_missing_name(self, weather_definition):
        """Test UnknownToolError lists all unresolved names."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)

        with pytest.raises(UnknownToolError) as exc_info:
            registry.lookup(["get_weather", "missing_a", "missing_b"])
        assert exc_info.value.names == ["missing_a", "missing_b"]

    def test_lookup_preserves_order_and_dedupes(self, weather_definition):
        """Test lookup returns definitions in request order without duplicates."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)
        registry.register(ToolDefinition(name="get_time", description="Current time"))

        result = registry.lookup(["get_time", "get_weather", "get_time"])
        assert [d.name for d in result] == ["get_time", "get_weather"]

    def test_search(self, weather_definition):
        """Test search matches name or description, case-insensitively."""
        registry = UnifiedToolRegistry()
        registry.register(weather_definition)
        registry.register(ToolDefinition(name="get_time", description="Current time"))

        assert [d.name for d in registry.search("WEATHER")] == ["get_weather"]
        assert [d.name for d in registry.search("current")] == ["get_time"]

    def test_get_stats(self, weather_definition):
        """Test stats count tools by origin, mode and category."""
        manager = StubServerManager({"search": [remote_tool("web_search", "search")]})
        registry = UnifiedToolRegistry(manager)
        registry.register(weather_definition)
        registry.register(ToolDefinition(name="report", description="Build a report", execution_mode=ExecutionMode.QUEUED))

        stats = registry.get_stats()
        assert stats["total_tools"] == 3
        assert stats["local_tools"] == 2
        assert stats["remote_tools"] == 1
        assert stats["by_origin"] == {"local": 2, "remote:search": 1}
        assert stats["by_execution_mode"] == {"sync": 2, "queued": 1}

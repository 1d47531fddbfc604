"""Unit tests for the tool server configuration service."""

import json

import pytest

from toolhub.models.server import TransportType
from toolhub.services.server_config_service import (
    ServerConfigService,
    ConfigurationError,
    resolve_placeholders,
)


@pytest.fixture
def service(tmp_path):
    return ServerConfigService(str(tmp_path / ".mcp.json"), str(tmp_path / ".mcp.tools.json"))


def write_config(service, document):
    service.config_path.write_text(json.dumps(document), encoding="utf-8")


class TestLoad:
    """Test reading the servers document."""

    def test_missing_file_is_empty(self, service):
        """Test a missing file means no servers."""
        document = service.load()
        assert document.servers == {}
        assert document.global_config.max_concurrent == 3
        assert document.global_config.retry_attempts == 2

    def test_load_servers_in_order(self, service):
        """Test servers keep document order and transports are parsed."""
        write_config(service, {
            "servers": {
                "files": {"command": "npx", "args": ["-y", "files-server"], "enabled": True, "timeout": 20},
                "search": {"type": "http", "url": "https://search.example.com/mcp", "enabled": True},
                "live": {"endpoint": "wss://live.example.com/ws"},
            },
            "global_config": {"timeout": 45, "max_concurrent": 5, "discovery_cache_ttl": 120},
        })

        document = service.load()

        assert list(document.servers) == ["files", "search", "live"]
        assert document.servers["files"].transport == TransportType.STDIO
        assert document.servers["files"].timeout_ms == 20000
        assert document.servers["search"].transport == TransportType.HTTP
        assert document.servers["search"].timeout_ms == 45000
        assert document.servers["live"].transport == TransportType.WEBSOCKET
        assert not document.servers["live"].enabled
        assert document.global_config.max_concurrent == 5
        assert document.global_config.discovery_cache_ttl_seconds == 120
        assert [s.server_id for s in document.enabled_servers()] == ["files", "search"]

    def test_invalid_server_skipped(self, service):
        """Test an invalid entry is left out while valid ones load."""
        write_config(service, {"servers": {
            "good": {"command": "server-bin", "enabled": True},
            "broken": {"transport": "stdio", "enabled": True},
        }})

        assert list(service.load().servers) == ["good"]

    def test_unreadable_file(self, service):
        """Test invalid JSON is a configuration error."""
        service.config_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            service.load()


class TestValidate:
    """Test validation errors and warnings."""

    def test_validation_errors(self, service):
        """Test bad names, missing commands and unknown transports are errors."""
        result = service.validate({"servers": {
            "Bad Name": {"command": "x"},
            "no-command": {"transport": "stdio"},
            "odd": {"transport": "carrier-pigeon"},
        }})

        assert result["valid"] is False
        assert len(result["errors"]) == 3
        assert any("lowercase letters" in e for e in result["errors"])
        assert any("unknown transport" in e for e in result["errors"])

    def test_validation_warnings(self, service, monkeypatch):
        """Test unset placeholders and very high timeouts are warnings."""
        monkeypatch.delenv("TOOLHUB_TEST_MISSING_TOKEN", raising=False)
        result = service.validate({"servers": {
            "slow": {
                "command": "server-bin",
                "env": {"API_TOKEN": "${TOOLHUB_TEST_MISSING_TOKEN}"},
                "timeout": 120,
            },
        }})

        assert result["valid"] is True
        assert any("TOOLHUB_TEST_MISSING_TOKEN" in w for w in result["warnings"])
        assert any("quite high" in w for w in result["warnings"])

    def test_global_config_bounds(self, service):
        """Test max_concurrent and retry_attempts are range checked."""
        result = service.validate({"servers": {}, "global_config": {"max_concurrent": 50, "retry_attempts": 9}})
        assert result["valid"] is False
        assert len(result["errors"]) == 2


class TestEditing:
    """Test adding, updating and removing servers."""

    def test_add_update_remove(self, service):
        """Test server edits round through the file."""
        service.add_server("files", {"command": "files-server", "enabled": True})
        assert service.load().servers["files"].enabled

        service.update_server("files", {"enabled": False})
        assert not service.load().servers["files"].enabled

        service.save_cached_tools("files", [{"name": "read", "description": "Read", "inputSchema": {}}])
        assert service.remove_server("files") is True
        assert "files" not in service.load().servers
        assert "files" not in service.load_tools_cache()
        assert service.remove_server("files") is False

    def test_add_duplicate(self, service):
        """Test adding an existing server fails."""
        service.add_server("files", {"command": "files-server"})
        with pytest.raises(ConfigurationError):
            service.add_server("files", {"command": "other"})

    def test_invalid_save_rejected(self, service):
        """Test invalid documents are never written."""
        with pytest.raises(ConfigurationError) as exc_info:
            service.add_server("no-command", {"transport": "stdio"})
        assert exc_info.value.errors
        assert not service.config_path.exists()


class TestToolsCache:
    """Test the persisted discovery cache document."""

    def test_corrupt_cache_ignored(self, service):
        """Test an unreadable tools cache is treated as empty."""
        service.tools_path.write_text("][", encoding="utf-8")
        assert service.load_tools_cache() == {}

    def test_save_cached_tools(self, service):
        """Test discovered tools are stored per server with a timestamp."""
        service.save_cached_tools("files", [{"name": "read", "description": "Read"}])
        cached = service.load_tools_cache()["files"]
        assert cached["tools"][0]["name"] == "read"
        assert "discovered_at" in cached


class TestPlaceholders:
    """Test ${VAR} resolution."""

    def test_resolve(self, monkeypatch):
        """Test set variables are substituted and unset ones reported."""
        monkeypatch.setenv("TOOLHUB_TEST_TOKEN", "secret")
        monkeypatch.delenv("TOOLHUB_TEST_UNSET", raising=False)

        resolved, missing = resolve_placeholders({
            "Authorization": "Bearer ${TOOLHUB_TEST_TOKEN}",
            "X-Other": "${TOOLHUB_TEST_UNSET}",
            "Plain": "value",
        })

        assert resolved == {"Authorization": "Bearer secret", "X-Other": "", "Plain": "value"}
        assert missing == ["TOOLHUB_TEST_UNSET"]

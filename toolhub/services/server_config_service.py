"""Tool server configuration: the servers document and the discovery cache document."""

import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

from pydantic import ValidationError

from toolhub.infra.config import config
from toolhub.models.server import (
    ToolServerConfig,
    ServersDocument,
    GlobalServerSettings,
    TransportType,
    SERVER_ID_PATTERN,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
HIGH_TIMEOUT_WARNING_SECONDS = 60

# Accepted spellings of the transport field
_TRANSPORT_ALIASES = {
    "stdio": TransportType.STDIO,
    "external": TransportType.STDIO,
    "http": TransportType.HTTP,
    "https": TransportType.HTTP,
    "websocket": TransportType.WEBSOCKET,
    "ws": TransportType.WEBSOCKET,
}


class ConfigurationError(ValueError):
    """The configuration document cannot be read or fails validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(message)


def resolve_placeholders(values: Dict[str, str]) -> Tuple[Dict[str, str], List[str]]:
    """
    Replace ${VAR} placeholders with host environment values.

    Unset variables resolve to an empty string.

    Args:
        values: Mapping whose values may contain placeholders

    Returns:
        Tuple of (resolved mapping, names of unset variables)
    """
    missing: List[str] = []

    def _substitute(match: "re.Match") -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            missing.append(name)
            return ""
        return value

    resolved = {key: PLACEHOLDER_PATTERN.sub(_substitute, str(value)) for key, value in values.items()}
    return resolved, sorted(set(missing))


def _parse_transport(raw: Dict[str, Any]) -> str:
    value = raw.get("transport") or raw.get("type")
    if value is None:
        # Infer from the endpoint scheme; no endpoint means a launched subprocess
        endpoint = str(raw.get("endpoint") or raw.get("url") or "").lower()
        if endpoint.startswith(("ws://", "wss://")):
            return TransportType.WEBSOCKET.value
        if endpoint:
            return TransportType.HTTP.value
        return TransportType.STDIO.value
    transport = _TRANSPORT_ALIASES.get(str(value).lower())
    return transport.value if transport else str(value)


def _timeout_ms(raw: Dict[str, Any], default_ms: int) -> int:
    if raw.get("timeout_ms") is not None:
        return int(raw["timeout_ms"])
    if raw.get("timeout") is not None:
        # The servers document expresses "timeout" in seconds
        return int(float(raw["timeout"]) * 1000)
    return default_ms


def parse_global_settings(raw: Dict[str, Any]) -> GlobalServerSettings:
    defaults = GlobalServerSettings()
    return GlobalServerSettings(
        timeout_ms=_timeout_ms(raw, defaults.timeout_ms),
        max_concurrent=raw.get("max_concurrent", defaults.max_concurrent),
        retry_attempts=raw.get("retry_attempts", defaults.retry_attempts),
        discovery_cache_ttl_seconds=raw.get("discovery_cache_ttl", config.DISCOVERY_CACHE_TTL),
    )


def parse_server(server_id: str, raw: Dict[str, Any], settings: GlobalServerSettings) -> ToolServerConfig:
    """
    Build a ToolServerConfig from one entry of the servers document.

    Raises:
        pydantic.ValidationError: If the entry is invalid
    """
    return ToolServerConfig(
        server_id=server_id,
        transport=_parse_transport(raw),
        command=raw.get("command"),
        args=raw.get("args") or [],
        endpoint=raw.get("endpoint") or raw.get("url"),
        env=raw.get("env") or {},
        headers=raw.get("headers") or {},
        timeout_ms=_timeout_ms(raw, settings.timeout_ms),
        enabled=bool(raw.get("enabled", False)),
        display_name=raw.get("display_name") or raw.get("name"),
        description=raw.get("description"),
    )


def _format_validation_error(server_id: str, error: ValidationError) -> List[str]:
    return [f"Server '{server_id}': {item['msg']}" for item in error.errors()]


class ServerConfigService:
    """Reads, validates and writes the servers document (.mcp.json) and the tools cache (.mcp.tools.json)."""

    def __init__(self, config_path: Optional[str] = None, tools_path: Optional[str] = None):
        self.config_path = Path(config_path or config.MCP_CONFIG_PATH)
        self.tools_path = Path(tools_path or config.MCP_TOOLS_PATH)
        # Serializes read-modify-write of the tools cache across worker threads
        self._cache_lock = threading.Lock()

    # Servers document

    def load_raw(self) -> Dict[str, Any]:
        """Load the raw servers document; a missing file is an empty configuration."""
        if not self.config_path.exists():
            return {"servers": {}, "global_config": {}}
        try:
            data = json.loads(self.config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load tool server configuration from {self.config_path}: {e}")
            raise ConfigurationError(f"Cannot read {self.config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} must contain a JSON object")
        data.setdefault("servers", {})
        data.setdefault("global_config", {})
        return data

    def load(self) -> ServersDocument:
        """
        Load and parse the servers document.

        Invalid server entries are logged and left out; validate() reports them.

        Returns:
            ServersDocument with servers in document order
        """
        raw = self.load_raw()
        return self.parse(raw)

    def parse(self, raw: Dict[str, Any]) -> ServersDocument:
        try:
            settings = parse_global_settings(raw.get("global_config") or {})
        except ValidationError as e:
            raise ConfigurationError("Invalid global_config", [item["msg"] for item in e.errors()])

        servers: Dict[str, ToolServerConfig] = {}
        for server_id, server_raw in (raw.get("servers") or {}).items():
            if not isinstance(server_raw, dict):
                logger.error(f"Skipping tool server '{server_id}': entry must be an object")
                continue
            try:
                servers[server_id] = parse_server(server_id, server_raw, settings)
            except ValidationError as e:
                logger.error(
                    f"Skipping invalid tool server '{server_id}': "
                    f"{'; '.join(_format_validation_error(server_id, e))}"
                )
        return ServersDocument(servers=servers, global_config=settings)

    def validate(self, raw: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Validate a servers document.

        Args:
            raw: Raw document (defaults to the file on disk)

        Returns:
            Dict with valid, errors, warnings
        """
        raw = raw if raw is not None else self.load_raw()
        errors: List[str] = []
        warnings: List[str] = []

        servers = raw.get("servers")
        if not isinstance(servers, dict):
            return {"valid": False, "errors": ["'servers' must be an object"], "warnings": []}

        try:
            settings = parse_global_settings(raw.get("global_config") or {})
        except ValidationError as e:
            errors.extend(f"global_config: {item['msg']}" for item in e.errors())
            settings = GlobalServerSettings()

        for server_id, server_raw in servers.items():
            if not SERVER_ID_PATTERN.match(server_id):
                errors.append(
                    f"Server name '{server_id}' must contain only lowercase letters, numbers, hyphens, and underscores"
                )
                continue
            if not isinstance(server_raw, dict):
                errors.append(f"Server '{server_id}' must be an object")
                continue

            transport = _parse_transport(server_raw)
            if transport not in {t.value for t in TransportType}:
                errors.append(f"Server '{server_id}' has unknown transport '{transport}'")
                continue

            try:
                server = parse_server(server_id, server_raw, settings)
            except ValidationError as e:
                errors.extend(_format_validation_error(server_id, e))
                continue

            _, missing_env = resolve_placeholders(server.env)
            _, missing_headers = resolve_placeholders(server.headers)
            for name in sorted(set(missing_env + missing_headers)):
                warnings.append(f"Environment variable '{name}' for server '{server_id}' is not set")

            if server.timeout_seconds > HIGH_TIMEOUT_WARNING_SECONDS:
                warnings.append(
                    f"Server '{server_id}' timeout ({server.timeout_seconds:g}s) is quite high, consider reducing it"
                )

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def save(self, raw: Dict[str, Any]) -> None:
        """Validate and write the servers document."""
        result = self.validate(raw)
        if not result["valid"]:
            raise ConfigurationError("Invalid tool server configuration", result["errors"])
        _write_json_atomic(self.config_path, raw)
        logger.info(f"Tool server configuration saved to {self.config_path}")

    def add_server(self, server_id: str, server_raw: Dict[str, Any]) -> None:
        raw = self.load_raw()
        if server_id in raw["servers"]:
            raise ConfigurationError(f"Server '{server_id}' already exists")
        raw["servers"][server_id] = server_raw
        self.save(raw)

    def update_server(self, server_id: str, changes: Dict[str, Any]) -> None:
        raw = self.load_raw()
        if server_id not in raw["servers"]:
            raise ConfigurationError(f"Server '{server_id}' does not exist")
        raw["servers"][server_id] = {**raw["servers"][server_id], **changes}
        self.save(raw)

    def remove_server(self, server_id: str) -> bool:
        raw = self.load_raw()
        if server_id not in raw["servers"]:
            return False
        del raw["servers"][server_id]
        self.save(raw)
        self.remove_cached_tools(server_id)
        return True

    # Discovery cache document

    def load_tools_cache(self) -> Dict[str, Dict[str, Any]]:
        """
        Load persisted discovery results.

        Returns:
            {server_id: {"tools": [descriptor, ...], "discovered_at": iso8601}}
        """
        if not self.tools_path.exists():
            return {}
        try:
            data = json.loads(self.tools_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            # A corrupt cache only costs a discovery round-trip
            logger.warning(f"Ignoring unreadable tools cache {self.tools_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save_cached_tools(self, server_id: str, tools: List[Dict[str, Any]], discovered_at: Optional[datetime] = None) -> None:
        discovered_at = discovered_at or datetime.now(timezone.utc)
        with self._cache_lock:
            data = self.load_tools_cache()
            data[server_id] = {"tools": tools, "discovered_at": discovered_at.isoformat()}
            _write_json_atomic(self.tools_path, data)

    def remove_cached_tools(self, server_id: str) -> None:
        with self._cache_lock:
            data = self.load_tools_cache()
            if data.pop(server_id, None) is not None:
                _write_json_atomic(self.tools_path, data)


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

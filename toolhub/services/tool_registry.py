"""Unified tool registry merging local handlers and remote tool servers into one namespace."""

import logging
import threading
from collections.abc import Mapping
from types import MappingProxyType
from typing import Dict, List, Optional, Iterable, Iterator, Set, Tuple

from toolhub.infra.error_handler import DuplicateToolNameError, UnknownToolError
from toolhub.infra.metrics import tool_name_collisions_total
from toolhub.models.tool import ToolDefinition, ExecutionMode

logger = logging.getLogger(__name__)


class ToolSnapshot(Mapping):
    """Immutable name -> ToolDefinition view of the registry at one instant."""

    def __init__(self, tools: Dict[str, ToolDefinition]):
        self._tools = MappingProxyType(dict(tools))

    def __getitem__(self, name: str) -> ToolDefinition:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def by_origin(self) -> Dict[str, List[ToolDefinition]]:
        grouped: Dict[str, List[ToolDefinition]] = {}
        for definition in self._tools.values():
            grouped.setdefault(definition.origin, []).append(definition)
        return grouped

    def __repr__(self) -> str:
        return f"ToolSnapshot({len(self)} tools)"


class UnifiedToolRegistry:
    """
    One namespace over local definitions and the cached tool lists of Healthy servers.

    Local definitions live in a dict that is copied and swapped on every change, so
    snapshot() never observes a half-applied registration. Remote tools are never stored
    here: they are read from the server manager each time a snapshot is built.
    """

    def __init__(self, server_manager=None):
        self.server_manager = server_manager
        self._local: Dict[str, ToolDefinition] = {}
        self._write_lock = threading.Lock()
        self._reported_collisions: Set[Tuple[str, str]] = set()

    def _remote_tools(self) -> List[Tuple[str, Tuple[ToolDefinition, ...]]]:
        if self.server_manager is None:
            return []
        return self.server_manager.healthy_tools()

    def register(self, definition: ToolDefinition, replace: bool = False) -> ToolDefinition:
        """
        Register a local tool definition.

        Args:
            definition: Local ToolDefinition
            replace: Allow replacing a different definition registered under the same name

        Returns:
            The registered definition

        Raises:
            DuplicateToolNameError: If a remote server exposes the name, or the name is
                taken by a different definition and replace is False
        """
        if not definition.is_local:
            raise ValueError(f"Remote tool '{definition.name}' can only be registered by discovery")

        for server_id, tools in self._remote_tools():
            for tool in tools:
                if tool.name == definition.name:
                    raise DuplicateToolNameError(definition.name, tool.origin, definition.origin)

        with self._write_lock:
            existing = self._local.get(definition.name)
            if existing is not None:
                if existing == definition:
                    return existing
                if not replace:
                    raise DuplicateToolNameError(definition.name, existing.origin, definition.origin)
                logger.info(f"Replacing local tool definition: {definition.name}")

            updated = dict(self._local)
            updated[definition.name] = definition
            self._local = updated

        logger.debug(f"Registered local tool {definition.name} ({definition.execution_mode.value})")
        return definition

    def unregister(self, name: str) -> bool:
        """Remove a local tool. Returns False if it was not registered."""
        with self._write_lock:
            if name not in self._local:
                return False
            updated = dict(self._local)
            del updated[name]
            self._local = updated
        logger.debug(f"Unregistered local tool {name}")
        return True

    def snapshot(self) -> ToolSnapshot:
        """
        Build a fresh snapshot: local tools first, then Healthy servers in configuration order.

        A remote tool whose name is already taken is dropped from the snapshot (local tools
        win, then the earliest server), and the collision is logged once.
        """
        merged = dict(self._local)
        for server_id, tools in self._remote_tools():
            for tool in tools:
                existing = merged.get(tool.name)
                if existing is not None:
                    self._report_collision(tool, existing)
                    continue
                merged[tool.name] = tool
        return ToolSnapshot(merged)

    def _report_collision(self, dropped: ToolDefinition, kept: ToolDefinition) -> None:
        key = (dropped.name, dropped.origin)
        if key in self._reported_collisions:
            return
        self._reported_collisions.add(key)
        tool_name_collisions_total.labels(server_id=dropped.server_id).inc()
        logger.warning(
            f"Tool name collision: '{dropped.name}' from {dropped.origin} is hidden by {kept.origin}",
            extra={"tool_name": dropped.name, "server_id": dropped.server_id, "kept_origin": kept.origin},
        )

    def lookup(self, names: Iterable[str], snapshot: Optional[ToolSnapshot] = None) -> List[ToolDefinition]:
        """
        Get the definitions for names, in the order given.

        Raises:
            UnknownToolError: Listing every missing name, not just the first
        """
        snapshot = snapshot if snapshot is not None else self.snapshot()
        names = list(dict.fromkeys(names))
        missing = [name for name in names if name not in snapshot]
        if missing:
            raise UnknownToolError(missing)
        return [snapshot[name] for name in names]

    def get(self, name: str, snapshot: Optional[ToolSnapshot] = None) -> Optional[ToolDefinition]:
        snapshot = snapshot if snapshot is not None else self.snapshot()
        return snapshot.get(name)

    def search(self, query: str) -> List[ToolDefinition]:
        """Case-insensitive match on tool name or description."""
        needle = query.lower()
        return [
            definition
            for definition in self.snapshot().definitions()
            if needle in definition.name.lower() or needle in definition.description.lower()
        ]

    def tools_by_execution_mode(self, mode: ExecutionMode) -> List[ToolDefinition]:
        return [d for d in self.snapshot().definitions() if d.execution_mode == mode]

    def get_stats(self) -> Dict[str, object]:
        """Totals by origin, execution mode and category."""
        snapshot = self.snapshot()
        by_origin: Dict[str, int] = {}
        by_mode: Dict[str, int] = {}
        by_category: Dict[str, int] = {}
        for definition in snapshot.definitions():
            by_origin[definition.origin] = by_origin.get(definition.origin, 0) + 1
            by_mode[definition.execution_mode.value] = by_mode.get(definition.execution_mode.value, 0) + 1
            by_category[definition.category] = by_category.get(definition.category, 0) + 1
        return {
            "total_tools": len(snapshot),
            "local_tools": sum(1 for d in snapshot.definitions() if d.is_local),
            "remote_tools": sum(1 for d in snapshot.definitions() if d.is_remote),
            "by_origin": by_origin,
            "by_execution_mode": by_mode,
            "by_category": by_category,
        }

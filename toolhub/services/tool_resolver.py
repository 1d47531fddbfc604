"""Resolves requested tool names to definitions and formats them for a provider."""

import logging
from typing import List, Dict, Any, Optional, Sequence, Union

from toolhub.infra.error_handler import SchemaValidationError
from toolhub.infra.validation import find_argument_problems
from toolhub.models.tool import ToolDefinition
from toolhub.services.provider_registry import get_adapter
from toolhub.services.tool_registry import UnifiedToolRegistry, ToolSnapshot

logger = logging.getLogger(__name__)

ALL_TOOLS = "all"


class ToolResolver:
    """Turns a tool request ("all" or explicit names) into the concrete definition set."""

    def __init__(self, registry: UnifiedToolRegistry):
        self.registry = registry

    def resolve_tools(
        self,
        names: Union[str, Sequence[str]],
        snapshot: Optional[ToolSnapshot] = None,
    ) -> List[ToolDefinition]:
        """
        Resolve a tool request against a registry snapshot.

        "all" returns every tool in the snapshot; tools of servers that are not Healthy
        are simply absent, so this never fails. An explicit list fails fast with
        UnknownToolError naming every unresolved name.

        Args:
            names: "all" or a list of tool names
            snapshot: Snapshot to resolve against (a fresh one is built if omitted)

        Returns:
            List of ToolDefinition
        """
        snapshot = snapshot if snapshot is not None else self.registry.snapshot()
        if isinstance(names, str):
            if names != ALL_TOOLS:
                names = [names]
            else:
                return snapshot.definitions()
        return self.registry.lookup(names, snapshot)

    def validate_arguments(self, definition: ToolDefinition, arguments: Dict[str, Any]) -> None:
        """
        Validate call arguments against a tool's parameter schema.

        Raises:
            SchemaValidationError: Listing every problem found
        """
        problems = find_argument_problems(definition.parameters_schema, arguments)
        if problems:
            raise SchemaValidationError(
                f"Invalid arguments for tool '{definition.name}': {'; '.join(problems)}",
                problems=problems,
            )

    def format_for_provider(self, provider_id: str, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        """Serialize definitions into a provider's tools payload."""
        return get_adapter(provider_id).format_tools_for_wire(definitions)

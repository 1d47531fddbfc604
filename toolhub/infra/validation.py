"""Tool argument validation against a tool's parameter schema."""

from typing import Any, Dict, List


# JSON Schema primitive type -> accepted Python types
_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def _matches_type(value: Any, expected: str) -> bool:
    accepted = _JSON_TYPES.get(expected)
    if accepted is None:
        # Unknown type keyword: do not reject what we cannot check
        return True
    # bool is a subclass of int, but JSON keeps them apart
    if isinstance(value, bool) and expected in ("integer", "number"):
        return False
    if expected == "integer" and isinstance(value, float):
        return value.is_integer()
    return isinstance(value, accepted)


def find_argument_problems(schema: Dict[str, Any], arguments: Dict[str, Any]) -> List[str]:
    """
    Check arguments against an object schema.

    Only the top level is checked: required fields present, declared property types
    match, and enum membership. Unknown extra properties are allowed unless the schema
    sets additionalProperties to false.

    Args:
        schema: Tool parameters schema (type: object)
        arguments: Parsed call arguments

    Returns:
        Every problem found (empty if the arguments are valid)
    """
    if not isinstance(arguments, dict):
        return [f"arguments must be an object, got {type(arguments).__name__}"]

    problems = []
    properties = schema.get("properties") or {}

    for field in schema.get("required") or []:
        if field not in arguments:
            problems.append(f"missing required parameter '{field}'")

    for name, value in arguments.items():
        prop_schema = properties.get(name)
        if prop_schema is None:
            if schema.get("additionalProperties") is False:
                problems.append(f"unexpected parameter '{name}'")
            continue
        if not isinstance(prop_schema, dict):
            continue

        expected = prop_schema.get("type")
        if expected:
            expected_types = expected if isinstance(expected, list) else [expected]
            if not any(_matches_type(value, t) for t in expected_types):
                problems.append(
                    f"parameter '{name}' must be of type {' or '.join(expected_types)}, "
                    f"got {type(value).__name__}"
                )
                continue

        enum = prop_schema.get("enum")
        if isinstance(enum, list) and value not in enum:
            problems.append(f"parameter '{name}' must be one of {enum}, got {value!r}")

    return problems

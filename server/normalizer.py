"""Flatten tool arguments delivered by permissive MCP adapters.

Some clients wrap the real arguments in one or more ``inputSchema`` keys,
occasionally alongside a duplicate of the same fields, or send a bare string
instead of an object. The helpers here are purely syntactic; they never
validate values.
"""

from typing import Any

ENVELOPE_KEY = "inputSchema"

# Keys under which a raw request may carry the argument record
RAW_ENVELOPE_KEYS = ("arguments", "input", ENVELOPE_KEY)


def unwrap_envelope(value: Any) -> dict:
    """Descend through single-key ``inputSchema`` wrappers."""
    current = value
    while isinstance(current, dict) and len(current) == 1 and ENVELOPE_KEY in current:
        current = current[ENVELOPE_KEY]
    return current if isinstance(current, dict) else {}


def normalize_payload(arguments: Any) -> dict:
    """
    Turn a loosely-typed argument bag into a flat record.

    A plain string becomes ``{"command": <string>}``. When the unwrapped record
    still carries a nested ``inputSchema`` record next to other fields, the two
    are merged shallowly and the outer fields win.
    """
    if isinstance(arguments, str):
        return {"command": arguments}
    if arguments is None:
        return {}

    unwrapped = unwrap_envelope(arguments)
    nested = unwrapped.get(ENVELOPE_KEY)
    if isinstance(nested, dict):
        return {**nested, **unwrapped}
    return dict(unwrapped)


def find_field(value: Any, name: str, _depth: int = 0) -> str | None:
    """
    Best-effort lookup of a non-empty string field in a raw argument value.

    Looks at the top level first, then inside the known envelope keys.
    Used only as a fallback when normalization did not surface the field.
    """
    if _depth > 8 or not isinstance(value, dict):
        return None

    found = value.get(name)
    if isinstance(found, str) and found:
        return found

    for key in RAW_ENVELOPE_KEYS:
        found = find_field(value.get(key), name, _depth + 1)
        if found:
            return found
    return None

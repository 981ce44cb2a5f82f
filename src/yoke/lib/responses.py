"""Tool result content formatting.

Tool results travel back to the model as text. Successful results are
plain text or JSON; failures are always the JSON object::

    {"error": {"code": "...", "message": "..."}}

so the model can branch on ``code`` (``path_escape``, ``permission_denied``,
``timeout``...) rather than parsing prose.

Examples:
    Return a successful JSON-encoded result::

        >>> tool_success({"applied": 2})
        '{"applied": 2}'

    Return an error result::

        >>> tool_error("not_found", "No such file: a.txt")
        '{"error": {"code": "not_found", "message": "No such file: a.txt"}}'

    Recover the error code from a result::

        >>> error_code('{"error": {"code": "timeout", "message": "..."}}')
        'timeout'
"""

import json
from typing import Any


def tool_success(result: object) -> str:
    """JSON-encode a successful result; strings pass through unchanged."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def tool_error(code: str, message: str) -> str:
    """Encode a failure as the ``{"error": {...}}`` object."""
    return json.dumps({"error": {"code": code, "message": message}})


def error_code(content: str) -> str | None:
    """Extract ``error.code`` from result content, or None if it isn't an error object."""
    try:
        parsed: Any = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None
    match parsed:
        case {"error": {"code": str() as code}}:
            return code
        case _:
            return None


def truncation_notice(omitted_bytes: int) -> str:
    """Marker appended to output cut off at the byte cap."""
    return f"\n[output truncated: {omitted_bytes} bytes omitted]"

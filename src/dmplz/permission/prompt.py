"""Operator-facing text for permission prompts."""

import json
from typing import Any, Dict

from .models import PermissionRequest

TOOL_DESCRIPTIONS = {
    "Bash": "Run a terminal command",
    "Write": "Create/overwrite a file",
    "Edit": "Edit a file",
    "Read": "Read a file",
    "Glob": "Search files",
    "Grep": "Search contents",
    "Task": "Run a subtask",
    "WebFetch": "Fetch a web page",
    "WebSearch": "Search the web",
}

MAX_GENERIC_INPUT_CHARS = 500
EDIT_PREVIEW_CHARS = 50


def format_tool_input(tool_name: str, tool_input: Dict[str, Any]) -> str:
    """Render tool input in a human-readable form."""
    if tool_name == "Bash":
        return f"```\n{tool_input.get('command') or '(no command)'}\n```"

    if tool_name == "Write":
        content = str(tool_input.get("content") or "")
        return f"File: `{tool_input.get('file_path')}`\nContent length: {len(content)} chars"

    if tool_name == "Edit":
        old = str(tool_input.get("old_string") or "")[:EDIT_PREVIEW_CHARS]
        new = str(tool_input.get("new_string") or "")[:EDIT_PREVIEW_CHARS]
        return f'File: `{tool_input.get("file_path")}`\nChange: "{old}..." → "{new}..."'

    if tool_name == "Read":
        return f"File: `{tool_input.get('file_path')}`"

    return json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)[
        :MAX_GENERIC_INPUT_CHARS
    ]


def get_tool_description(tool_name: str, tool_input: Dict[str, Any]) -> str:
    """Use the tool's own description field when present, else a default per tool."""
    description = tool_input.get("description")
    if isinstance(description, str) and description:
        return description
    return TOOL_DESCRIPTIONS.get(tool_name, f"Use tool: {tool_name}")


def create_permission_message(request: PermissionRequest) -> str:
    """
    Build the decision prompt shown to the operator.

    Args:
        request: Permission request being negotiated

    Returns:
        Prompt text including the request id for cross-referencing
    """
    lines = [
        "🔐 *Claude Code Permission Request*",
        "",
        f"*Reason:* {get_tool_description(request.tool_name, request.tool_input)}",
        f"*Tool:* `{request.tool_name}`",
        f"*Working directory:* `{request.cwd}`",
        f"*Request:* `{request.request_id}`",
        "",
        format_tool_input(request.tool_name, request.tool_input),
        "",
        "Approve?",
    ]
    return "\n".join(lines)

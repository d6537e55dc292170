"""Export chat sessions to Markdown and JSON formats."""

import json

from .core import ChatMessage, ChatSession, ToolInteraction


def session_to_markdown(session: ChatSession, messages: list[ChatMessage]) -> str:
    """Export a session and its messages as clean Markdown."""
    lines = [f"# {session.title}", ""]

    if session.working_directory:
        lines.append(f"**Working directory:** {session.working_directory}")
    lines.append(f"**Created:** {session.created_at.isoformat()}")
    lines.append(f"**Updated:** {session.updated_at.isoformat()}")
    lines.append(f"**Messages:** {session.message_count}")
    lines.extend(["", "---", ""])

    for msg in messages:
        role_label = msg.role.capitalize()
        if msg.model:
            role_label += f" · {msg.model}"
        ts = f" ({msg.timestamp.strftime('%Y-%m-%d %H:%M')})"
        lines.append(f"## {role_label}{ts}")
        lines.append("")
        lines.append(msg.content)
        for ti in msg.tool_interactions:
            lines.append("")
            lines.extend(_tool_to_markdown(ti))
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def _tool_to_markdown(ti: ToolInteraction) -> list[str]:
    lines = [f"> **Tool:** `{ti.tool_name}` ({ti.status})"]
    if ti.tool_input:
        lines.append(f"> Input: `{json.dumps(ti.tool_input, ensure_ascii=False)}`")
    if ti.result is not None:
        label = "Error" if ti.is_error else "Result"
        lines.append(f"> {label}: {ti.result}")
    return lines


def session_to_json(session: ChatSession, messages: list[ChatMessage]) -> str:
    """Export a session and its messages as structured JSON."""
    data = {
        "session": {
            "id": session.id,
            "title": session.title,
            "working_directory": session.working_directory,
            "message_count": session.message_count,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
        },
        "messages": [
            {
                "id": msg.id,
                "role": msg.role,
                "content": msg.content,
                "timestamp": msg.timestamp.isoformat(),
                "model": msg.model,
                "tool_interactions": [
                    {
                        "tool_use_id": ti.id,
                        "tool_name": ti.tool_name,
                        "tool_input": ti.tool_input,
                        "result": ti.result,
                        "is_error": ti.is_error,
                        "status": ti.status,
                    }
                    for ti in msg.tool_interactions
                ],
            }
            for msg in messages
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)

"""Export chat sessions to Markdown and JSON formats."""

import json
from typing import Iterable

from .core import Message, Session


def session_to_markdown(session: Session, messages: Iterable[Message]) -> str:
    """Export a session and its messages as clean Markdown."""
    lines = [f"# {session.title}", ""]

    lines.append(f"**Project:** {session.project}")
    if session.model:
        lines.append(f"**Model:** {session.model}")
    if session.created_at:
        lines.append(f"**Created:** {session.created_at.isoformat()}")
    if session.updated_at:
        lines.append(f"**Updated:** {session.updated_at.isoformat()}")
    lines.append(f"**Messages:** {session.message_count}")
    lines.extend(["", "---", ""])

    for msg in messages:
        role_label = msg.role.capitalize()
        ts = ""
        if msg.timestamp:
            ts = f" ({msg.timestamp.strftime('%Y-%m-%d %H:%M')})"
        lines.append(f"## {role_label}{ts}")
        lines.append("")
        lines.append(msg.text)
        if msg.usage:
            lines.append("")
            lines.append(f"*Tokens: {msg.usage.input_tokens} in / {msg.usage.output_tokens} out*")
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def session_to_json(session: Session, messages: Iterable[Message]) -> str:
    """Export a session and its messages as structured JSON."""
    data = {
        "session": session.to_dict(),
        "messages": [msg.to_dict() for msg in messages],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)

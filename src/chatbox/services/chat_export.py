from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Optional, Sequence

from ..domain.chat_models import ChatMessage, ChatSession, DEFAULT_SESSION_TITLE, format_token_usage


def export_messages_to_markdown(messages: Sequence[ChatMessage], exported_at: Optional[datetime] = None) -> str:
    """Render a conversation transcript as Markdown; system turns are omitted."""
    exported_at = exported_at or datetime.now(UTC)
    lines: List[str] = ["# AI Conversation", "", f"Exported: {exported_at.isoformat()}", ""]
    for msg in messages:
        if msg.role == "system":
            continue
        label = "User" if msg.role == "user" else "Assistant"
        lines.extend([f"## {label}", "", msg.content, ""])
        if msg.reasoning_content:
            lines.extend(["### Reasoning", "", msg.reasoning_content, ""])
        if msg.usage:
            lines.extend([f"*{format_token_usage(msg.usage)}*", ""])
        lines.extend(["---", ""])
    return "\n".join(lines)


def export_filename(session: ChatSession, exported_at: Optional[datetime] = None) -> str:
    exported_at = exported_at or datetime.now(UTC)
    title = (session.title or DEFAULT_SESSION_TITLE).replace("/", "-").replace("\\", "-")
    return f"{title}-{exported_at.date().isoformat()}.md"

"""Ready-made filters for common questions about message logs."""

from dataclasses import dataclass

from ..errors import ValidationFailed


@dataclass(frozen=True)
class Pattern:
    name: str
    category: str
    filter: str
    description: str
    slurp: bool = False

    def to_dict(self) -> dict:
        return {
            "filter": self.filter,
            "category": self.category,
            "description": self.description,
            "slurp": self.slurp,
        }


PATTERNS = (
    Pattern("user_messages", "messages", 'select(.role == "user")', "Messages sent by the user"),
    Pattern("assistant_messages", "messages", 'select(.role == "assistant")', "Replies from the assistant"),
    Pattern("system_messages", "messages", 'select(.role == "system")', "System prompts"),
    Pattern(
        "last_reply", "messages", 'map(select(.role == "assistant")) | last',
        "The most recent assistant reply", slurp=True,
    ),
    Pattern(
        "message_text", "content",
        '.content | if type == "string" then . else map(select(.type == "text") | .text) | join("\\n") end',
        "Plain text of each message, with content blocks joined",
    ),
    Pattern(
        "tool_uses", "content",
        '.content | if type == "array" then .[] | select(.type == "tool_use") else empty end',
        "Tool invocations inside content blocks",
    ),
    Pattern(
        "message_count", "statistics", "group_by(.role) | map({role: .[0].role, count: length})",
        "Number of messages per role", slurp=True,
    ),
    Pattern(
        "token_usage", "statistics",
        "select(.usage) | {index, input: .usage.input_tokens, output: .usage.output_tokens}",
        "Token counts of each reply that reported them",
    ),
    Pattern(
        "session_summary", "statistics",
        "{total: length, roles: (group_by(.role) | map({role: .[0].role, count: length})),"
        " output_tokens: (map(.usage.output_tokens // 0) | add)}",
        "Message total, per-role counts and output tokens", slurp=True,
    ),
    Pattern(
        "content_search", "search", 'select(.content | tostring | ascii_downcase | contains("refactor"))',
        "Messages mentioning a term; replace \"refactor\" with your own",
    ),
)

CATEGORIES = ("messages", "content", "statistics", "search")


def list_patterns(category: str | None = None) -> list[Pattern]:
    if category is None:
        return list(PATTERNS)
    if category not in CATEGORIES:
        raise ValidationFailed(f"Unknown category {category!r}; expected {', '.join(CATEGORIES)}")
    return [p for p in PATTERNS if p.category == category]

"""Core data models for aichat-gateway."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

ROLES = ("user", "assistant", "system")


@dataclass
class Usage:
    """Token accounting reported by the CLI at the end of a turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: Optional[float] = None

    def to_dict(self) -> dict:
        data = {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}
        if self.cost_usd is not None:
            data["cost_usd"] = self.cost_usd
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Usage":
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            cost_usd=data.get("cost_usd"),
        )


@dataclass
class Project:
    """A directory grouping related sessions."""

    id: str
    path: str
    session_count: int = 0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "session_count": self.session_count,
            "created": self.created.isoformat() if self.created else None,
            "updated": self.updated.isoformat() if self.updated else None,
        }


@dataclass
class ProjectStats:
    """Totals over every session of a project."""

    project: str
    session_count: int = 0
    message_count: int = 0
    messages_by_role: dict = field(default_factory=lambda: dict.fromkeys(ROLES, 0))
    usage: Usage = field(default_factory=Usage)
    log_bytes: int = 0
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "session_count": self.session_count,
            "message_count": self.message_count,
            "messages_by_role": dict(self.messages_by_role),
            "usage": self.usage.to_dict(),
            "log_bytes": self.log_bytes,
            "first_activity": self.first_activity.isoformat() if self.first_activity else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


@dataclass
class Session:
    """Metadata of a single conversation transcript."""

    id: str
    project: str
    title: str = "Untitled"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model: Optional[str] = None
    parameters: dict = field(default_factory=dict)
    cwd: Optional[str] = None
    message_count: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project": self.project,
            "title": self.title,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "model": self.model,
            "parameters": self.parameters,
            "cwd": self.cwd,
            "message_count": self.message_count,
        }


@dataclass
class Message:
    """A single entry of a session's append-only log."""

    index: int
    role: str  # "user" | "assistant" | "system"
    content: Any  # str or list of {"type": ...} blocks
    timestamp: Optional[datetime] = None
    usage: Optional[Usage] = None

    @property
    def text(self) -> str:
        """Plain-text view of the content (text blocks joined)."""
        if isinstance(self.content, str):
            return self.content
        parts = []
        for block in self.content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "\n".join(parts)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "usage": self.usage.to_dict() if self.usage else None,
        }


@dataclass(frozen=True)
class QueryBudget:
    """Resource ceiling for one query execution."""

    max_steps: int = 1_000_000
    timeout: float = 2.0  # seconds
    max_results: int = 10_000

    def narrowed(
        self,
        max_steps: int | None = None,
        timeout: float | None = None,
        max_results: int | None = None,
    ) -> "QueryBudget":
        """Return a budget no larger than this one, lowered where requested."""
        return QueryBudget(
            max_steps=min(self.max_steps, max_steps) if max_steps else self.max_steps,
            timeout=min(self.timeout, timeout) if timeout else self.timeout,
            max_results=min(self.max_results, max_results) if max_results else self.max_results,
        )


@dataclass(frozen=True)
class ChatLimits:
    """Supervision limits for one chat turn's subprocess."""

    timeout: float = 180.0  # seconds
    max_output_bytes: int = 2_000_000
    cancel_grace: float = 3.0  # seconds between SIGTERM and SIGKILL

"""Tests for export functionality."""

import json
from datetime import datetime, timezone

import pytest

from aichat_gateway.core import Message, Session, Usage
from aichat_gateway.export import session_to_json, session_to_markdown


@pytest.fixture
def sample_session():
    return Session(
        id="abc123",
        project="-Users-test-dev-myapp",
        title="Fix authentication bug",
        created_at=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 1, 15, 11, 0, 0, tzinfo=timezone.utc),
        model="sonnet",
        message_count=3,
    )


@pytest.fixture
def sample_messages():
    return [
        Message(
            index=0,
            role="user",
            content="Fix the login bug in auth.ts",
            timestamp=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
        ),
        Message(
            index=1,
            role="assistant",
            content="I'll fix the authentication bug. Here's the change:\n\n```typescript\nconst token = await validateToken(input);\n```",
            timestamp=datetime(2025, 1, 15, 10, 0, 30, tzinfo=timezone.utc),
            usage=Usage(input_tokens=150, output_tokens=42, cost_usd=0.003),
        ),
        Message(
            index=2,
            role="user",
            content=[{"type": "text", "text": "Looks good, thanks!"}],
            timestamp=datetime(2025, 1, 15, 10, 1, 0, tzinfo=timezone.utc),
        ),
    ]


class TestMarkdownExport:
    def test_includes_session_title(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert result.startswith("# Fix authentication bug")

    def test_includes_metadata(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert "**Project:** -Users-test-dev-myapp" in result
        assert "**Model:** sonnet" in result
        assert "**Messages:** 3" in result

    def test_includes_messages_with_roles(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert "## User" in result
        assert "## Assistant" in result
        assert "Fix the login bug" in result
        assert "validateToken" in result

    def test_block_content_is_rendered_as_text(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert "Looks good, thanks!" in result
        assert "'type'" not in result

    def test_includes_usage(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert "*Tokens: 150 in / 42 out*" in result

    def test_includes_timestamps(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert "2025-01-15 10:00" in result

    def test_preserves_code_fences(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, sample_messages)
        assert "```typescript" in result

    def test_accepts_an_iterator(self, sample_session, sample_messages):
        result = session_to_markdown(sample_session, iter(sample_messages))
        assert "Looks good, thanks!" in result

    def test_empty_messages(self, sample_session):
        sample_session.model = None
        result = session_to_markdown(sample_session, [])
        assert "# Fix authentication bug" in result
        assert "**Model:**" not in result
        assert "## User" not in result


class TestJsonExport:
    def test_includes_session_metadata(self, sample_session, sample_messages):
        data = json.loads(session_to_json(sample_session, sample_messages))
        assert data["session"]["id"] == "abc123"
        assert data["session"]["project"] == "-Users-test-dev-myapp"
        assert data["session"]["title"] == "Fix authentication bug"
        assert data["session"]["model"] == "sonnet"
        assert data["session"]["message_count"] == 3

    def test_includes_messages(self, sample_session, sample_messages):
        data = json.loads(session_to_json(sample_session, sample_messages))
        assert [m["index"] for m in data["messages"]] == [0, 1, 2]
        assert data["messages"][0]["role"] == "user"
        assert data["messages"][2]["content"] == [{"type": "text", "text": "Looks good, thanks!"}]

    def test_usage(self, sample_session, sample_messages):
        data = json.loads(session_to_json(sample_session, sample_messages))
        assert data["messages"][0]["usage"] is None
        assert data["messages"][1]["usage"] == {"input_tokens": 150, "output_tokens": 42, "cost_usd": 0.003}

    def test_timestamps_are_iso(self, sample_session, sample_messages):
        data = json.loads(session_to_json(sample_session, sample_messages))
        assert data["session"]["created_at"] == "2025-01-15T10:00:00+00:00"
        assert data["messages"][0]["timestamp"] == "2025-01-15T10:00:00+00:00"

    def test_empty_messages(self, sample_session):
        data = json.loads(session_to_json(sample_session, []))
        assert data["messages"] == []
        assert data["session"]["title"] == "Fix authentication bug"

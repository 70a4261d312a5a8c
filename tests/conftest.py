"""Shared test fixtures for aichat-gateway."""

import json
import sys
import textwrap

import pytest

from aichat_gateway.core import Usage
from aichat_gateway.store import SessionStore

FAKE_CLAUDE = textwrap.dedent('''
    """Stand-in for the claude CLI speaking --output-format stream-json."""
    import json
    import signal
    import sys
    import time

    mode = sys.argv[1]
    args = sys.argv[2:]
    if mode == "deaf":
        time.sleep(60)
    prompt = sys.stdin.read()


    def emit(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()


    def assistant(text):
        return {"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": text}]}}


    emit({"type": "system", "subtype": "init", "session_id": "cli-session", "args": args})

    if mode == "fail":
        sys.stderr.write("boom: model unavailable\\n")
        sys.exit(3)
    if mode == "hang":
        time.sleep(60)
    if mode == "slow":
        emit(assistant("Thinking..."))
        time.sleep(60)
    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit(assistant("You cannot stop me"))
        time.sleep(60)
    if mode == "flood":
        for _ in range(10000):
            emit(assistant("x" * 1000))
    if mode == "error_result":
        emit({"type": "result", "subtype": "error_max_turns", "is_error": True, "result": "Reached max turns"})
        sys.exit(0)
    if mode == "noise":
        sys.stdout.write("this line is not json\\n")
        emit({"type": "user", "message": {"content": []}})

    if mode == "echo":
        answer = prompt
    elif mode == "args":
        answer = " ".join(args)
    elif "2+2" in prompt:
        answer = "2 + 2 = 4"
    else:
        answer = "Hello!"

    emit(assistant(answer))
    emit({
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": answer,
        "session_id": "cli-session",
        "total_cost_usd": 0.0012,
        "usage": {"input_tokens": 12, "output_tokens": 7},
    })
''')


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "projects"
    root.mkdir()
    return root


@pytest.fixture
def store(storage_root):
    return SessionStore(storage_root)


@pytest.fixture
def populated_store(store):
    """A store with two projects and three sessions.

    - "-Users-testuser-dev-myapp": "auth" (4 messages), "tests" (2 messages)
    - "scratch": "notes" (1 system message)
    """
    project = "-Users-testuser-dev-myapp"
    store.create_session(project, {"title": "Refactor auth", "model": "sonnet"}, session_id="auth")
    store.append_message(project, "auth", "user", "Help me refactor the auth module")
    store.append_message(
        project, "auth", "assistant", "Split token validation into its own function.",
        Usage(input_tokens=120, output_tokens=40),
    )
    store.append_message(project, "auth", "user", [{"type": "text", "text": "Now add tests"}])
    store.append_message(
        project, "auth", "assistant", "Added tests for expired tokens.",
        Usage(input_tokens=200, output_tokens=25),
    )

    store.create_session(project, {"title": "API tests"}, session_id="tests")
    store.append_message(project, "tests", "user", "Write tests for the API")
    store.append_message(
        project, "tests", "assistant", "Here is a pytest suite.",
        Usage(input_tokens=80, output_tokens=300),
    )

    store.create_session("scratch", {"title": "Notes"}, session_id="notes")
    store.append_message("scratch", "notes", "system", "You are a note taker.")
    return store


def write_bulk_session(store, project, session_id, count):
    """Create a session and write ``count`` messages straight into its log."""
    store.create_session(project, {"title": f"Bulk {session_id}"}, session_id=session_id)
    log_path = store.root / project / f"{session_id}.jsonl"
    with log_path.open("w", encoding="utf-8") as f:
        for i in range(count):
            role = "user" if i % 2 == 0 else "assistant"
            f.write(json.dumps({
                "index": i,
                "role": role,
                "content": f"message {i}",
                "timestamp": "2025-01-20T10:00:00+00:00",
                "usage": None,
            }) + "\n")
    meta_path = store.root / project / f"{session_id}.json"
    meta = json.loads(meta_path.read_text(encoding="utf-8"))
    meta["message_count"] = count
    meta_path.write_text(json.dumps(meta), encoding="utf-8")


@pytest.fixture
def fake_claude(tmp_path):
    """Return a factory for commands running the fake CLI in a given mode."""
    script = tmp_path / "fake_claude.py"
    script.write_text(FAKE_CLAUDE, encoding="utf-8")

    def command(mode: str = "ok") -> list[str]:
        return [sys.executable, str(script), mode]

    return command

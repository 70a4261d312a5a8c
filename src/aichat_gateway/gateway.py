"""Chat turns: persist the user message, run the CLI, relay and persist the answer.

A turn moves through::

    created -> message_persisted -> process_spawned -> streaming
            -> finalizing -> completed
                                         (any stage) -> failed

The user message is written before the CLI is started and is never rolled
back, so every failed turn still records what was asked.
"""

import asyncio
import logging
from collections import deque
from contextlib import aclosing, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional

from .core import Message, Session, Usage
from .errors import Disconnected, GatewayError, ProcessFailed, ProcessNotFound
from .process import STREAM_ARGS, ProcessAdapter, ProcessHandle, TextChunk, UsageChunk
from .store import SessionStore

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    CREATED = "created"
    MESSAGE_PERSISTED = "message_persisted"
    PROCESS_SPAWNED = "process_spawned"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChatTurn:
    """One in-flight request/response cycle."""

    session: Session
    user_message: Message
    history: list = field(default_factory=list)
    state: TurnState = TurnState.CREATED
    parts: list = field(default_factory=list)
    usage: Optional[Usage] = None
    assistant_message: Optional[Message] = None
    error: Optional[GatewayError] = None

    def advance(self, state: TurnState) -> None:
        logger.debug("Turn %s/%s: %s -> %s", self.session.project, self.session.id, self.state.value, state.value)
        self.state = state

    def fail(self, error: GatewayError) -> None:
        self.error = error
        self.advance(TurnState.FAILED)


@dataclass
class ChatResult:
    session: Session
    user_message: Message
    assistant_message: Message
    usage: Usage

    def to_dict(self) -> dict:
        return {
            "session_id": self.session.id,
            "project": self.session.project,
            "content": self.assistant_message.text,
            "usage": self.usage.to_dict(),
            "user_message": self.user_message.to_dict(),
            "assistant_message": self.assistant_message.to_dict(),
        }


@dataclass
class ActiveProcess:
    """A CLI process serving a turn that has not finished yet."""

    handle: ProcessHandle
    turn: ChatTurn
    started_at: datetime

    def to_dict(self) -> dict:
        return {
            "process_id": self.handle.pid,
            "project": self.turn.session.project,
            "session_id": self.turn.session.id,
            "state": self.turn.state.value,
            "started_at": self.started_at.isoformat(),
            "bytes_read": self.handle.bytes_read,
        }


class ChatGateway:
    """Orchestrates chat turns against the store and the CLI adapter."""

    def __init__(
        self,
        store: SessionStore,
        adapter: ProcessAdapter,
        context_messages: int = 20,
        extra_args: list[str] | None = None,
        default_cwd: Path | None = None,
    ):
        self.store = store
        self.adapter = adapter
        self.context_messages = max(context_messages, 0)
        self.extra_args = list(extra_args or [])
        self.default_cwd = default_cwd
        # pid -> running turn
        self._active: dict[int, ActiveProcess] = {}

    async def open_turn(self, project: str, session_id: str, text: str) -> ChatTurn:
        """Persist the user message. Errors here are raised, not streamed."""
        history = await asyncio.to_thread(self._recent_messages, project, session_id)
        session, message = await asyncio.to_thread(
            self.store.append_message, project, session_id, "user", text
        )
        turn = ChatTurn(session=session, user_message=message, history=history)
        turn.advance(TurnState.MESSAGE_PERSISTED)
        return turn

    async def run_turn(self, turn: ChatTurn) -> AsyncIterator[dict]:
        """Drive a persisted turn to completion, yielding NDJSON events.

        The next chunk is read from the CLI only when the caller asks for the
        next event. Closing or cancelling this generator cancels the process.
        """
        try:
            handle = await self.adapter.start(self._build_args(turn.session), self._workdir(turn.session))
            turn.advance(TurnState.PROCESS_SPAWNED)
            with self._track(turn, handle):
                async with handle:
                    await handle.write(self._build_prompt(turn))
                    yield {
                        "type": "start",
                        "session_id": turn.session.id,
                        "message_index": turn.user_message.index,
                    }
                    turn.advance(TurnState.STREAMING)

                    async for chunk in handle.stream_output():
                        if isinstance(chunk, TextChunk):
                            turn.parts.append(chunk.text)
                            yield {"type": "data", "content": chunk.text}
                        elif isinstance(chunk, UsageChunk):
                            if chunk.is_error:
                                raise ProcessFailed(chunk.result or "claude CLI reported an error")
                            turn.usage = chunk.usage
                            if not turn.parts and chunk.result:
                                turn.parts.append(chunk.result)
                                yield {"type": "data", "content": chunk.result}

            turn.advance(TurnState.FINALIZING)
            if not turn.parts:
                raise ProcessFailed("claude CLI finished without producing a response")
            usage = turn.usage or Usage()
            _, message = await asyncio.to_thread(
                self.store.append_message,
                turn.session.project,
                turn.session.id,
                "assistant",
                "\n\n".join(turn.parts),
                usage,
            )
            turn.assistant_message = message
            turn.advance(TurnState.COMPLETED)
            yield {"type": "end", "usage": usage.to_dict(), "message_index": message.index}

        except GatewayError as e:
            logger.warning("Chat turn in session %s failed: %s", turn.session.id, e)
            turn.fail(e)
            yield {"type": "error", **e.to_dict()}
        except (GeneratorExit, asyncio.CancelledError):
            logger.info("Client disconnected from session %s during %s", turn.session.id, turn.state.value)
            turn.fail(Disconnected("Client disconnected"))
            raise
        except Exception as e:
            logger.exception("Unexpected error in chat turn for session %s", turn.session.id)
            error = GatewayError(f"Internal error: {e}")
            turn.fail(error)
            yield {"type": "error", **error.to_dict()}

    def active_processes(self) -> list[ActiveProcess]:
        return sorted(self._active.values(), key=lambda a: a.started_at)

    async def kill(self, process_id: int) -> ActiveProcess:
        """Terminate the CLI behind a running turn; the turn fails with PROCESS_KILLED."""
        active = self._active.get(process_id)
        if active is None or active.handle.returncode is not None:
            raise ProcessNotFound(process_id)
        logger.info("Killing process %d serving session %s", process_id, active.turn.session.id)
        await active.handle.cancel()
        return active

    async def stream_turn(self, project: str, session_id: str, text: str) -> AsyncIterator[dict]:
        """Open and run a turn as one event stream.

        Failures to persist the user message surface as exceptions on the
        first iteration rather than as error events.
        """
        turn = await self.open_turn(project, session_id, text)
        async with aclosing(self.run_turn(turn)) as events:
            async for event in events:
                yield event

    async def complete_turn(self, project: str, session_id: str, text: str) -> ChatResult:
        """Run a whole turn without streaming; raise the failure if there is one."""
        turn = await self.open_turn(project, session_id, text)
        async for _ in self.run_turn(turn):
            pass
        if turn.error is not None:
            raise turn.error
        return ChatResult(
            session=turn.session,
            user_message=turn.user_message,
            assistant_message=turn.assistant_message,
            usage=turn.assistant_message.usage or Usage(),
        )

    # ── Private helpers ──────────────────────────────────────────────

    @contextmanager
    def _track(self, turn: ChatTurn, handle: ProcessHandle):
        self._active[handle.pid] = ActiveProcess(handle, turn, datetime.now(timezone.utc))
        try:
            yield
        finally:
            self._active.pop(handle.pid, None)

    def _recent_messages(self, project: str, session_id: str) -> list[Message]:
        return list(deque(self.store.iter_messages(project, session_id), maxlen=self.context_messages))

    def _build_args(self, session: Session) -> list[str]:
        args = list(STREAM_ARGS)
        if session.model:
            args.extend(["--model", session.model])
        for key, value in session.parameters.items():
            flag = "--" + key.replace("_", "-")
            if value is True:
                args.append(flag)
            elif value is False or value is None:
                continue
            else:
                args.extend([flag, str(value)])
        args.extend(self.extra_args)
        return args

    def _workdir(self, session: Session) -> Path | None:
        if session.cwd and Path(session.cwd).is_dir():
            return Path(session.cwd)
        return self.default_cwd

    def _build_prompt(self, turn: ChatTurn) -> str:
        if not turn.history:
            return turn.user_message.text

        lines = ["Previous conversation:"]
        for message in turn.history:
            lines.append(f"{message.role.capitalize()}: {message.text}")
        lines.extend(["", "Current message:", turn.user_message.text])
        return "\n".join(lines)

"""File-backed session store.

Each project is a directory under the storage root. A session is a pair of
files inside it:

- ``<session_id>.json``: metadata, rewritten atomically (temp file + rename).
- ``<session_id>.jsonl``: the message log, one JSON object per line, only
  ever appended to. An append that fails, or was torn by a crash, is cut
  back off before the next one.

Writes are fsynced before returning. Writers to the same session are
serialized through a per-session lock; unrelated sessions never contend.
"""

import json
import logging
import os
import re
import shutil
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Hashable, Iterator

from .core import ROLES, Message, Project, ProjectStats, Session, Usage
from .errors import (
    ProjectNotFound,
    SessionExists,
    SessionNotFound,
    StoreWriteFailure,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled"

_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Metadata fields a caller may set; everything else is owned by the store.
_MUTABLE_FIELDS = {
    "title": (str,),
    "model": (str, type(None)),
    "parameters": (dict,),
    "cwd": (str, type(None)),
}


class KeyedLock:
    """Mutual exclusion per key, with locks created on demand.

    A key's lock lives only while someone holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class SessionStore:
    """Reads and writes projects, sessions and message logs under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._locks = KeyedLock()

    # ── Projects ─────────────────────────────────────────────────────

    def list_projects(self) -> list[Project]:
        if not self.root.is_dir():
            return []
        return [
            self._project_info(d)
            for d in sorted(self.root.iterdir())
            if d.is_dir() and _is_valid_id(d.name)
        ]

    def get_project(self, project: str) -> Project:
        project_dir = self._project_dir(project)
        if not project_dir.is_dir():
            raise ProjectNotFound(project)
        return self._project_info(project_dir)

    def create_project(self, project: str) -> Project:
        project_dir = self._project_dir(project)
        try:
            project_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreWriteFailure(f"Failed to create project {project}: {e}") from e
        return self._project_info(project_dir)

    def delete_project(self, project: str) -> bool:
        """Remove a project and all its sessions. Returns False if absent."""
        project_dir = self._project_dir(project)
        if not project_dir.is_dir():
            return False
        try:
            shutil.rmtree(project_dir)
        except OSError as e:
            raise StoreWriteFailure(f"Failed to delete project {project}: {e}") from e
        logger.info("Deleted project %s", project)
        return True

    # ── Sessions ─────────────────────────────────────────────────────

    def list_sessions(self, project: str) -> list[Session]:
        """Return the project's sessions ordered by creation time."""
        project_dir = self._project_dir(project)
        if not project_dir.is_dir():
            raise ProjectNotFound(project)

        sessions = []
        for meta_path in project_dir.glob("*.json"):
            try:
                sessions.append(self._read_meta(project, meta_path))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Skipping unreadable session metadata %s: %s", meta_path, e)

        sessions.sort(key=lambda s: (s.created_at or _EPOCH, s.id))
        return sessions

    def get_session(self, project: str, session_id: str) -> Session:
        meta_path, _ = self._session_paths(project, session_id)
        if not meta_path.exists():
            raise SessionNotFound(session_id, project)
        return self._read_meta(project, meta_path)

    def locate_session(self, session_id: str) -> str:
        """Return the id of the first project (by name) holding ``session_id``."""
        _check_id(session_id, "session")
        for project in self.list_projects():
            if (self.root / project.id / f"{session_id}.json").exists():
                return project.id
        raise SessionNotFound(session_id)

    def create_session(
        self,
        project: str,
        metadata: dict | None = None,
        session_id: str | None = None,
    ) -> Session:
        fields = _validate_patch(metadata or {})
        if session_id is None:
            session_id = str(uuid.uuid4())
        meta_path, log_path = self._session_paths(project, session_id)

        with self._locks.hold((project, session_id)):
            if meta_path.exists():
                raise SessionExists(f"Session {session_id} already exists in project {project}")

            now = _now()
            session = Session(id=session_id, project=project, created_at=now, updated_at=now)
            for key, value in fields.items():
                setattr(session, key, value)

            try:
                meta_path.parent.mkdir(parents=True, exist_ok=True)
                with log_path.open("ab") as f:
                    os.fsync(f.fileno())
            except OSError as e:
                raise StoreWriteFailure(f"Failed to create session {session_id}: {e}") from e
            self._write_meta(session)

        logger.info("Created session %s in project %s", session_id, project)
        return session

    def update_metadata(self, project: str, session_id: str, patch: dict) -> Session:
        """Apply a metadata patch. Message content is never touched."""
        fields = _validate_patch(patch)
        with self._locks.hold((project, session_id)):
            session = self.get_session(project, session_id)
            for key, value in fields.items():
                setattr(session, key, value)
            session.updated_at = _now()
            self._write_meta(session)
        return session

    def delete_session(self, project: str, session_id: str) -> bool:
        """Delete a session. Returns False (a no-op) if it did not exist."""
        meta_path, log_path = self._session_paths(project, session_id)
        with self._locks.hold((project, session_id)):
            existed = meta_path.exists()
            try:
                meta_path.unlink(missing_ok=True)
                log_path.unlink(missing_ok=True)
            except OSError as e:
                raise StoreWriteFailure(f"Failed to delete session {session_id}: {e}") from e

        if existed:
            logger.info("Deleted session %s in project %s", session_id, project)
        return existed

    # ── Messages ─────────────────────────────────────────────────────

    def append_message(
        self,
        project: str,
        session_id: str,
        role: str,
        content,
        usage: Usage | None = None,
    ) -> tuple[Session, Message]:
        """Durably append one message and return the updated session with it."""
        _validate_message(role, content, usage)
        _, log_path = self._session_paths(project, session_id)

        with self._locks.hold((project, session_id)):
            session = self.get_session(project, session_id)
            message = Message(
                index=session.message_count,
                role=role,
                content=content,
                timestamp=_now(),
                usage=usage,
            )
            line = json.dumps(message.to_dict(), ensure_ascii=False) + "\n"
            offset = _log_end(log_path)
            try:
                _append_line(log_path, line)
                session.message_count += 1
                session.updated_at = message.timestamp
                if role == "user" and session.title == DEFAULT_TITLE:
                    title = message.text.strip()
                    if title:
                        session.title = title[:80]
                self._write_meta(session)
            except (OSError, StoreWriteFailure) as e:
                # A failed append leaves the log exactly as it was.
                _truncate(log_path, offset)
                if isinstance(e, StoreWriteFailure):
                    raise
                raise StoreWriteFailure(f"Failed to append to session {session_id}: {e}") from e

        return session, message

    def iter_messages(self, project: str, session_id: str) -> Iterator[Message]:
        """Return a lazy iterator over the session's log.

        Existence is checked immediately; the log itself is opened on first
        iteration. Each call starts again from the first message.
        """
        meta_path, log_path = self._session_paths(project, session_id)
        if not meta_path.exists():
            raise SessionNotFound(session_id, project)
        return self._read_log(log_path)

    def get_messages(self, project: str, session_id: str) -> list[Message]:
        return list(self.iter_messages(project, session_id))

    def project_stats(self, project: str) -> ProjectStats:
        """Count sessions, messages and reported token usage across a project."""
        stats = ProjectStats(project=project)
        for session in self.list_sessions(project):
            stats.session_count += 1
            _, log_path = self._session_paths(project, session.id)
            try:
                stats.log_bytes += log_path.stat().st_size
            except FileNotFoundError:
                pass
            for message in self._read_log(log_path):
                stats.message_count += 1
                stats.messages_by_role[message.role] = stats.messages_by_role.get(message.role, 0) + 1
                if message.usage is not None:
                    stats.usage.input_tokens += message.usage.input_tokens
                    stats.usage.output_tokens += message.usage.output_tokens
                    if message.usage.cost_usd is not None:
                        stats.usage.cost_usd = (stats.usage.cost_usd or 0.0) + message.usage.cost_usd
            for moment in (session.created_at, session.updated_at):
                if moment is None:
                    continue
                if stats.first_activity is None or moment < stats.first_activity:
                    stats.first_activity = moment
                if stats.last_activity is None or moment > stats.last_activity:
                    stats.last_activity = moment
        return stats

    # ── Private helpers ──────────────────────────────────────────────

    def _project_dir(self, project: str) -> Path:
        _check_id(project, "project")
        return self.root / project

    def _session_paths(self, project: str, session_id: str) -> tuple[Path, Path]:
        _check_id(session_id, "session")
        project_dir = self._project_dir(project)
        return project_dir / f"{session_id}.json", project_dir / f"{session_id}.jsonl"

    def _project_info(self, project_dir: Path) -> Project:
        stat = project_dir.stat()
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        updated = stat.st_mtime
        count = 0
        for meta_path in project_dir.glob("*.json"):
            count += 1
            try:
                updated = max(updated, meta_path.stat().st_mtime)
            except OSError:
                continue
        return Project(
            id=project_dir.name,
            path=str(project_dir),
            session_count=count,
            created=datetime.fromtimestamp(created, tz=timezone.utc),
            updated=datetime.fromtimestamp(updated, tz=timezone.utc),
        )

    def _read_meta(self, project: str, meta_path: Path) -> Session:
        data = json.loads(meta_path.read_text(encoding="utf-8"))
        return Session(
            id=data.get("id") or meta_path.stem,
            project=project,
            title=data.get("title") or DEFAULT_TITLE,
            created_at=_parse_iso(data.get("created_at")),
            updated_at=_parse_iso(data.get("updated_at")),
            model=data.get("model"),
            parameters=data.get("parameters") or {},
            cwd=data.get("cwd"),
            message_count=data.get("message_count", 0),
        )

    def _write_meta(self, session: Session) -> None:
        meta_path, _ = self._session_paths(session.project, session.id)
        tmp_path = meta_path.with_name(f".{meta_path.name}.tmp")
        data = json.dumps(session.to_dict(), indent=2, ensure_ascii=False)
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StoreWriteFailure(f"Failed to write metadata for session {session.id}: {e}") from e

    def _read_log(self, path: Path) -> Iterator[Message]:
        try:
            f = path.open("rb")
        except FileNotFoundError:
            return

        with f:
            for line_num, line in enumerate(f, 1):
                # A line without its newline is still being written.
                if not line.endswith(b"\n"):
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("Bad JSON at %s:%d: %s", path, line_num, e)
                    continue
                yield _message_from_dict(entry)


def _message_from_dict(entry: dict) -> Message:
    usage = entry.get("usage")
    return Message(
        index=entry.get("index", 0),
        role=entry.get("role", "user"),
        content=entry.get("content", ""),
        timestamp=_parse_iso(entry.get("timestamp")),
        usage=Usage.from_dict(usage) if usage else None,
    )


def _append_line(log_path: Path, line: str) -> None:
    with log_path.open("ab") as f:
        f.write(line.encode("utf-8"))
        f.flush()
        os.fsync(f.fileno())


def _log_end(log_path: Path) -> int:
    """Offset just past the last complete line, cutting off a torn tail.

    A trailing fragment without its newline is a write that never finished;
    appending after it would corrupt the next line too.
    """
    try:
        with log_path.open("rb+") as f:
            size = f.seek(0, os.SEEK_END)
            end = size
            while end > 0:
                start = max(end - 4096, 0)
                f.seek(start)
                newline = f.read(end - start).rfind(b"\n")
                if newline != -1:
                    end = start + newline + 1
                    break
                end = start
            if end != size:
                logger.warning("Dropping %d-byte torn tail of %s", size - end, log_path)
                f.truncate(end)
            return end
    except FileNotFoundError:
        return 0
    except OSError as e:
        raise StoreWriteFailure(f"Failed to prepare {log_path.name} for append: {e}") from e


def _truncate(log_path: Path, offset: int) -> None:
    try:
        os.truncate(log_path, offset)
    except OSError:
        logger.exception("Failed to roll back %s to %d bytes", log_path, offset)


def _is_valid_id(value) -> bool:
    return isinstance(value, str) and bool(_ID_RE.match(value)) and value not in (".", "..")


def _check_id(value, kind: str) -> None:
    if not _is_valid_id(value):
        raise ValidationFailed(f"Invalid {kind} id: {value!r}")


def _validate_patch(patch) -> dict:
    if not isinstance(patch, dict):
        raise ValidationFailed("Metadata patch must be an object")

    unknown = sorted(set(patch) - set(_MUTABLE_FIELDS))
    if unknown:
        raise ValidationFailed(f"Immutable or unknown metadata fields: {', '.join(unknown)}")

    fields = {}
    for key, value in patch.items():
        if not isinstance(value, _MUTABLE_FIELDS[key]):
            raise ValidationFailed(f"Invalid type for metadata field {key!r}")
        if key == "title" and not value.strip():
            raise ValidationFailed("Title must not be empty")
        fields[key] = value
    return fields


def _validate_message(role: str, content, usage: Usage | None) -> None:
    if role not in ROLES:
        raise ValidationFailed(f"Invalid role {role!r}; expected one of {', '.join(ROLES)}")

    if isinstance(content, str):
        if not content.strip():
            raise ValidationFailed("Message content must not be empty")
    elif isinstance(content, list):
        if not content:
            raise ValidationFailed("Message content must not be empty")
        for block in content:
            if not isinstance(block, dict) or not isinstance(block.get("type"), str):
                raise ValidationFailed("Content blocks must be objects with a string 'type'")
    else:
        raise ValidationFailed("Message content must be a string or a list of blocks")

    if usage is not None and role != "assistant":
        raise ValidationFailed("Only assistant messages carry usage")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string."""
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None

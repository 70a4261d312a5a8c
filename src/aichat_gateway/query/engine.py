"""Run filter expressions over the message logs of scoped sessions."""

import logging
from dataclasses import dataclass
from typing import Any, Iterator

from ..core import QueryBudget
from ..errors import BudgetExceeded, SessionNotFound
from ..store import SessionStore
from .interpreter import Interpreter, compile_filter, finite_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scope:
    """Which sessions a query reads. Both empty means every session."""

    projects: tuple[str, ...] = ()
    sessions: tuple[tuple[str, str], ...] = ()  # (project, session_id)

    @property
    def is_all(self) -> bool:
        return not self.projects and not self.sessions


@dataclass
class QueryResult:
    results: list
    steps: int = 0
    elapsed: float = 0.0
    sessions_scanned: int = 0
    messages_scanned: int = 0

    def stats(self) -> dict:
        return {
            "steps": self.steps,
            "elapsed_ms": round(self.elapsed * 1000, 3),
            "sessions_scanned": self.sessions_scanned,
            "messages_scanned": self.messages_scanned,
            "result_count": len(self.results),
        }


@dataclass
class _Progress:
    sessions: int = 0
    messages: int = 0


class QueryEngine:
    """Compiles a filter once, then streams scoped messages through it.

    In the default mode the filter runs once per message, whose dict form
    gains ``project`` and ``session_id`` keys. With ``slurp`` the filter runs
    once over an array of all scoped messages, which is what grouping and
    aggregation need.
    """

    def __init__(self, store: SessionStore, budget: QueryBudget | None = None):
        self.store = store
        self.budget = budget or QueryBudget()

    def execute(
        self,
        expression: str,
        scope: Scope | None = None,
        budget: QueryBudget | None = None,
        slurp: bool = False,
    ) -> QueryResult:
        program = compile_filter(expression)
        budget = budget or self.budget
        refs = self._resolve(scope or Scope())

        interp = Interpreter(budget)
        progress = _Progress()
        messages = self._messages(refs, interp, progress)
        results: list[Any] = []

        def collect(outputs):
            for out in outputs:
                results.append(finite_value(interp.charge(out)))
                if len(results) > budget.max_results:
                    raise BudgetExceeded(f"Query produced more than {budget.max_results} results")

        try:
            if slurp:
                collect(interp.eval(program, list(messages)))
            else:
                for message in messages:
                    interp.release()
                    collect(interp.eval(program, message))
        except RecursionError:
            raise BudgetExceeded("Query exceeded the evaluation depth limit") from None

        logger.debug(
            "Query %r: %d results, %d steps over %d messages in %.3fs",
            expression, len(results), interp.steps, progress.messages, interp.elapsed,
        )
        return QueryResult(
            results=results,
            steps=interp.steps,
            elapsed=interp.elapsed,
            sessions_scanned=progress.sessions,
            messages_scanned=progress.messages,
        )

    def _resolve(self, scope: Scope) -> list[tuple[str, str]]:
        """Expand a scope into an ordered, de-duplicated list of session refs."""
        if scope.is_all:
            projects = [p.id for p in self.store.list_projects()]
        else:
            projects = sorted(scope.projects)

        refs = []
        for project in projects:
            refs.extend((project, s.id) for s in self.store.list_sessions(project))
        for project, session_id in scope.sessions:
            self.store.get_session(project, session_id)
            refs.append((project, session_id))
        return list(dict.fromkeys(refs))

    def _messages(self, refs, interp: Interpreter, progress: _Progress) -> Iterator[dict]:
        for project, session_id in refs:
            try:
                messages = self.store.iter_messages(project, session_id)
            except SessionNotFound:
                logger.debug("Session %s/%s vanished during query", project, session_id)
                continue
            progress.sessions += 1
            for message in messages:
                interp.tick()
                progress.messages += 1
                data = message.to_dict()
                data["project"] = project
                data["session_id"] = session_id
                yield data

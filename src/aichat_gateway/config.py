"""Environment-driven settings for storage, query budgets and the claude CLI."""

import logging
import os
import shlex
from pathlib import Path

from .core import ChatLimits, QueryBudget

logger = logging.getLogger(__name__)


def get_storage_path() -> Path:
    """Return the root directory holding one subdirectory per project."""
    env = os.environ.get("AICHAT_GATEWAY_ROOT")
    if env:
        return Path(env).expanduser()

    return Path.home() / ".aichat-gateway" / "projects"


def get_default_project() -> str:
    """Return the project used when a caller does not name one."""
    return os.environ.get("AICHAT_DEFAULT_PROJECT") or "default"


def get_query_budget() -> QueryBudget:
    """Return the ceiling every query runs under."""
    return QueryBudget(
        max_steps=_env_int("AICHAT_QUERY_MAX_STEPS", 1_000_000),
        timeout=_env_float("AICHAT_QUERY_TIMEOUT", 2.0),
        max_results=_env_int("AICHAT_QUERY_MAX_RESULTS", 10_000),
    )


def get_chat_limits() -> ChatLimits:
    """Return the timeout, output ceiling and kill grace for chat turns."""
    return ChatLimits(
        timeout=_env_float("AICHAT_CHAT_TIMEOUT", 180.0),
        max_output_bytes=_env_int("AICHAT_CHAT_MAX_OUTPUT", 2_000_000),
        cancel_grace=_env_float("AICHAT_CANCEL_GRACE", 3.0),
    )


def get_claude_command() -> list[str]:
    """Return the argv prefix used to launch the claude CLI."""
    return shlex.split(os.environ.get("AICHAT_CLAUDE_COMMAND") or "claude")


def get_claude_extra_args() -> list[str]:
    """Return additional CLI flags, e.g. ``--dangerously-skip-permissions``."""
    return shlex.split(os.environ.get("AICHAT_CLAUDE_ARGS", ""))


def get_context_messages() -> int:
    """Return how many prior messages are replayed into a new turn."""
    return _env_int("AICHAT_CONTEXT_MESSAGES", 20)


def get_default_workdir() -> Path:
    """Return the working directory for sessions without their own ``cwd``."""
    env = os.environ.get("AICHAT_WORKDIR")
    if env:
        return Path(env).expanduser()

    return Path.cwd()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default

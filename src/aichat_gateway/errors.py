"""Exception taxonomy shared by the store, query engine, process adapter and API.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API surface renders it with.
"""


class GatewayError(Exception):
    """Base class for all errors surfaced to API callers."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ProjectNotFound(GatewayError):
    code = "PROJECT_NOT_FOUND"
    status = 404

    def __init__(self, project: str):
        super().__init__(f"Project not found: {project}")
        self.project = project


class SessionNotFound(GatewayError):
    code = "SESSION_NOT_FOUND"
    status = 404

    def __init__(self, session_id: str, project: str | None = None):
        where = f" in project {project}" if project else ""
        super().__init__(f"Session not found: {session_id}{where}")
        self.session_id = session_id
        self.project = project


class ValidationFailed(GatewayError):
    """Malformed input, message or metadata patch."""

    code = "VALIDATION_ERROR"
    status = 400


class SessionExists(GatewayError):
    code = "SESSION_EXISTS"
    status = 409


class InvalidQuery(GatewayError):
    """A filter expression failed to compile."""

    code = "INVALID_JQ_QUERY"
    status = 400

    def __init__(self, reason: str, position: int | None = None):
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"{reason}{where}")
        self.reason = reason
        self.position = position

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.position is not None:
            data["position"] = self.position
        return data


class QueryRuntimeError(InvalidQuery):
    """A compiled filter hit a type error while evaluating."""

    def __init__(self, reason: str):
        super().__init__(reason)


class BudgetExceeded(GatewayError):
    code = "BUDGET_EXCEEDED"
    status = 422


class SpawnError(GatewayError):
    code = "SPAWN_ERROR"
    status = 502


class ProcessTimeout(GatewayError):
    code = "TIMEOUT"
    status = 504


class OutputTooLarge(GatewayError):
    code = "OUTPUT_TOO_LARGE"
    status = 502


class ProcessFailed(GatewayError):
    """The CLI exited non-zero without producing a result."""

    code = "PROCESS_FAILED"
    status = 502


class StoreWriteFailure(GatewayError):
    code = "STORE_WRITE_FAILURE"
    status = 500


class Disconnected(GatewayError):
    code = "CLIENT_DISCONNECTED"
    status = 499


class ProcessKilled(GatewayError):
    """The CLI was terminated on request before it finished."""

    code = "PROCESS_KILLED"
    status = 409


class ProcessNotFound(GatewayError):
    code = "PROCESS_NOT_FOUND"
    status = 404

    def __init__(self, process_id: int):
        super().__init__(f"Process {process_id} not found or already terminated")
        self.process_id = process_id

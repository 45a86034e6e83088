"""
Domain error taxonomy.

Every error carries a stable machine-readable ``kind`` and the HTTP status the
API layer renders it with. Services raise these; routers never translate them
by hand, the handlers registered in ``examprep.main`` do.
"""


class ExamPrepError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"type": self.kind, "message": self.message, "status_code": self.status_code}


class NotFound(ExamPrepError):
    kind = "not_found"
    status_code = 404


class Forbidden(ExamPrepError):
    kind = "forbidden"
    status_code = 403


class Conflict(ExamPrepError):
    kind = "conflict"
    status_code = 409


class AttemptAlreadyCompleted(Conflict):
    """Raised when an attempt that has already been finalized is submitted again."""
    kind = "attempt_already_completed"

    def __init__(self, attempt_id: str):
        super().__init__(f"Attempt {attempt_id} is already finalized")
        self.attempt_id = attempt_id


class ValidationFailed(ExamPrepError):
    kind = "validation_failed"
    status_code = 400


class UpstreamUnavailable(ExamPrepError):
    kind = "upstream_unavailable"
    status_code = 502


def ensure_owner(entity, user_id: str, label: str):
    """Return ``entity`` when it exists and belongs to ``user_id``."""
    if entity is None:
        raise NotFound(f"{label} not found")
    if entity.user_id != user_id:
        raise Forbidden(f"{label} belongs to another user")
    return entity

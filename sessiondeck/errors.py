"""Error taxonomy shared by the store, recorder, broadcaster and reconciler.

Entity-level errors (everything except ``StoreUnavailable``) are scoped to a
single session or viewer and never abort unrelated work.
"""


class SessionDeckError(Exception):
    """Base class. ``code`` doubles as the HTTP status for the query surface."""

    code = 500

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(SessionDeckError):
    """Malformed input to a mutating call. Nothing was written."""

    code = 400


class NotFound(SessionDeckError):
    code = 404


class ConcurrencyConflict(SessionDeckError):
    """A per-session write lost its compare-and-swap more times than allowed."""

    code = 409


class DeliveryFailure(SessionDeckError):
    """A single viewer could not keep up or timed out; only that viewer is dropped."""

    def __init__(self, viewer_id: str, reason: str):
        super().__init__(f"Delivery to {viewer_id} failed: {reason}")
        self.viewer_id = viewer_id
        self.reason = reason


class ReconciliationFailure(SessionDeckError):
    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Failed to reconcile session {session_id}: {reason}")
        self.session_id = session_id
        self.reason = reason


class StoreUnavailable(SessionDeckError):
    """The backing database failed. The only error class treated as fatal."""

    code = 503

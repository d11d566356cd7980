"""Error taxonomy shared by the store, the arena and the assessment flows."""
from typing import List, Optional


class ArenaError(Exception):
    """Base error. `message` is safe to show to the user as-is."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StoreUnavailable(ArenaError):
    def __init__(self, message: str = "Session backend is unreachable. Check your connection and try again."):
        super().__init__(message)


class TransactionAborted(StoreUnavailable):
    def __init__(self, code: str, attempts: int):
        super().__init__(f"Session {code} is busy ({attempts} conflicting writes). Please retry.")
        self.code = code
        self.attempts = attempts


class SessionNotFound(ArenaError):
    def __init__(self, code: str):
        super().__init__("Session not found")
        self.code = code


class SessionConflict(ArenaError):
    pass


class NotSessionHost(SessionConflict):
    def __init__(self, code: str, user_id: str):
        super().__init__("Only the host can do this")
        self.code = code
        self.user_id = user_id


class ScenarioNotReady(ArenaError):
    def __init__(self, code: str):
        super().__init__("Please wait for the challenge generation to complete.")
        self.code = code


class IntegrityViolation(ArenaError):
    def __init__(self, reasons: List[str]):
        super().__init__(f"VERIFICATION REJECTED: {' '.join(reasons)}")
        self.reasons = list(reasons)


class AIAdapterFailure(ArenaError):
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"AI service failed during {operation}")
        self.operation = operation
        self.cause = cause

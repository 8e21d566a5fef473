"""Custom exception types for the inbox triage engine.

Error messages follow one standard:
- What failed (specific operation or component)
- Where it failed (account, email, run)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, when there is any)
"""


class TriageError(Exception):
    """Base exception for all inbox triage errors."""

    pass


class ConfigValidationError(TriageError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(TriageError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(TriageError):
    """Raised when SQLite operations fail."""

    pass


class LLMResponseError(TriageError):
    """Raised when a model response cannot be parsed or fails schema validation.

    Always retryable: the classification engine treats it as a failed
    attempt, never as a hard error.
    """

    pass


class ClassificationError(TriageError):
    """Raised when a classification batch fails after all attempts.

    Attributes:
        email_ids: Store ids of the emails in the failed batch
        attempts: Number of attempts made
    """

    def __init__(self, message: str, email_ids: list[str] | None = None, attempts: int = 0):
        super().__init__(message)
        self.email_ids = email_ids or []
        self.attempts = attempts


class MailSourceError(TriageError):
    """Raised when a mail source cannot deliver messages for an account.

    Attributes:
        account_id: The account being synced
    """

    def __init__(self, message: str, account_id: str | None = None):
        super().__init__(message)
        self.account_id = account_id


class InvalidCursorError(MailSourceError):
    """Raised when a mail source rejects a stored sync cursor.

    The orchestrator reacts by retrying the account without a cursor
    (bounded-window full sync).
    """

    pass


class SyncError(TriageError):
    """Raised when no account of a user could be synced.

    This is the catastrophic case that marks a run as failed.
    """

    pass


class RunNotFoundError(TriageError):
    """Raised when an agent run id is unknown."""

    pass


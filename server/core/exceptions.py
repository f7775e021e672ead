"""State core exception hierarchy."""


class StateCoreError(Exception):
    """Base exception for all state and scheduling errors."""


class ValidationError(StateCoreError):
    """Input rejected before anything was persisted."""


class InvalidCronError(ValidationError):
    """Cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        self.reason = reason
        message = f'Invalid cron expression: "{expression}"'
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class NotFoundError(StateCoreError):
    """Referenced task, run or lock does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} {identifier} not found")


class ExecutionError(StateCoreError):
    """The prompt executor failed to produce a response."""


class StorageError(StateCoreError):
    """The embedded store is unreachable or corrupted."""

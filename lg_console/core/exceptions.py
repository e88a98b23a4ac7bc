# lg_console/core/exceptions.py
from typing import Dict, Optional


class LGConsoleError(Exception):
    """Base class for every failure raised on the action path."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GateRefusal(LGConsoleError):
    """An action was blocked before any network call was made."""


class ActionNotAvailable(GateRefusal):
    """The action is not offered for the target's current lifecycle state."""


class SubmissionInProgress(GateRefusal):
    """The same action on the same target is already being submitted."""


class ValidationError(LGConsoleError):
    """The payload failed local pre-checks. Carries one message per offending field."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.field_errors = dict(field_errors or {})


class RemoteError(LGConsoleError):
    """The authority answered with a well-formed error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionExpiredError(RemoteError):
    """The authority rejected the session token (HTTP 401)."""


class MalformedResponseError(RemoteError):
    """A success response carried neither an approval request nor an updated record."""


class NetworkError(RemoteError):
    """The transport failed before a response was received."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, status_code=None)
        self.cause = cause


class SideEffectError(LGConsoleError):
    """Opening a generated document failed. The mutation itself stands."""

    def __init__(self, message: str, instruction_id: Optional[int] = None):
        super().__init__(message)
        self.instruction_id = instruction_id

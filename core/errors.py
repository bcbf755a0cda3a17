"""
Error taxonomy for browser task execution.

Automations raise tagged errors at their boundary so the runner can route
them without guessing. Untagged exceptions (Playwright timeouts, protocol
errors) are classified by message as a fallback.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """How the runner should treat a failure."""
    CREDENTIAL = "credential"
    TRANSIENT_NAVIGATION = "transient_navigation"
    OTHER = "other"


class BrowserPilotError(Exception):
    """Base class for all service errors."""


class AutomationError(BrowserPilotError):
    """Error raised by page automation logic, tagged with its kind."""

    kind: ErrorKind = ErrorKind.OTHER

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class CredentialError(AutomationError):
    """Credentials are missing or expired. Needs a human, never retried."""

    kind = ErrorKind.CREDENTIAL


class TransientNavigationError(AutomationError):
    """An in-flight navigation destroyed the context a read was running in."""

    kind = ErrorKind.TRANSIENT_NAVIGATION


class TaskStateError(BrowserPilotError):
    """Illegal task lifecycle transition."""


class PoolBusyError(BrowserPilotError):
    """The browser slot was not released within the acquire timeout."""


class TaskNotFoundError(BrowserPilotError):
    """No live or persisted task with this id."""


class TaskConflictError(BrowserPilotError):
    """The operation is not allowed in the task's current state."""


class UnknownTaskTypeError(BrowserPilotError):
    """Neither a built-in nor a custom task type matches."""


class MissingParameterError(BrowserPilotError):
    """A required task parameter was not supplied."""

    def __init__(self, name: str):
        super().__init__(f"Missing required parameter: {name}")
        self.name = name


# Message fragments used when an exception arrives untagged
CREDENTIAL_MARKERS = ("Not logged in", "refresh cookies")
TRANSIENT_NAVIGATION_MARKERS = ("Execution context was destroyed",)
FATAL_POLL_MARKERS = (
    "detached Frame",
    "Session closed",
    "Target closed",
    "Browser disconnected",
    "Target page, context or browser has been closed",
    "not defined",
)


def classify_error(error: BaseException) -> ErrorKind:
    """Return the routing kind for an exception caught at the runner boundary."""
    if isinstance(error, AutomationError):
        return error.kind

    message = str(error)
    if any(marker in message for marker in CREDENTIAL_MARKERS):
        return ErrorKind.CREDENTIAL
    if any(marker in message for marker in TRANSIENT_NAVIGATION_MARKERS):
        return ErrorKind.TRANSIENT_NAVIGATION
    return ErrorKind.OTHER


def is_fatal_poll_error(error: BaseException) -> bool:
    """True when the page, session or browser behind a poll has gone away."""
    message = str(error)
    return any(marker in message for marker in FATAL_POLL_MARKERS)

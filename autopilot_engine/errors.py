"""Session-level error taxonomy shared by the manager and executors."""

SESSION_NOT_FOUND_CODE = "AUTOPILOT_SESSION_NOT_FOUND"
CANCELLED_ERROR_CODE = "AUTOPILOT_CANCELLED"


class AutopilotError(Exception):
    """Autopilot error with an optional machine-readable code."""

    code: str | None = None

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class SessionValidationError(AutopilotError, ValueError):
    """Missing or blank required input."""

    pass


class SessionNotFoundError(AutopilotError, LookupError):
    """Unknown session id or ownership mismatch."""

    code = SESSION_NOT_FOUND_CODE

    def __init__(self, message: str = "Autopilot session not found"):
        super().__init__(message)


class AutopilotCancelledError(AutopilotError):
    """Raised by an executor that honors a cancel request."""

    code = CANCELLED_ERROR_CODE

    def __init__(self, message: str = "Autopilot cancelled"):
        super().__init__(message)

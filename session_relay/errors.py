"""Exception types for the session relay."""


class RelayError(Exception):
    """Base exception for all session relay errors."""

    pass


class SessionNotFoundError(RelayError):
    """Raised when a session is not found in the registry."""

    def __init__(self, session_id: str, message: str = None):
        self.session_id = session_id
        if message is None:
            message = f"Session {session_id} not found"
        super().__init__(message)


class ReminderNotFoundError(RelayError):
    """Raised when a reminder is not found."""

    def __init__(self, reminder_id, message: str = None):
        self.reminder_id = reminder_id
        if message is None:
            message = f"Reminder {reminder_id} not found"
        super().__init__(message)


class NotReadyError(RelayError):
    """Raised when sending through a session whose driver is not ready."""

    def __init__(self, session_id: str, state: str = None):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id} is not ready (state={state})")


class DeliveryFailedError(RelayError):
    """Raised when the driver fails to send a message."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(f"Delivery through session {session_id} failed: {message}")


class WebhookDeliveryError(RelayError):
    """Raised when a webhook POST fails or returns a non-success status."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")


class InvalidRecurrenceError(RelayError):
    """Raised when a recurrence rule cannot be parsed."""

    pass


class AuthTokenError(RelayError):
    """Raised when authentication token is missing or invalid."""

    pass

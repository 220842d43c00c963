"""
Typed failures raised by the booking engine.

Routes never see a bare exception from the engine: the app registers an error
handler for ``BookingError`` that renders ``to_dict()`` with ``status_code``.
"""


class BookingError(Exception):
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message=None, code=None, details=None):
        self.message = message or self.default_message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(BookingError):
    status_code = 400
    default_message = "Invalid input"


class ForbiddenError(BookingError):
    status_code = 403
    default_message = "You are not allowed to do that"


class NotFoundError(BookingError):
    status_code = 404
    default_message = "Not found"


class StateConflictError(BookingError):
    status_code = 409
    default_message = "This session is not in a state that allows that action"

    def __init__(self, message=None, session_id=None, action=None, current_state=None, details=None):
        details = dict(details or {})
        if session_id is not None:
            details["session_id"] = session_id
        if action is not None:
            details["action"] = action
        if current_state is not None:
            details["current_state"] = current_state
        super().__init__(message, details=details)


class GatewayError(BookingError):
    status_code = 502
    default_message = "Payment could not be started, please try again"

    def __init__(self, message=None, upstream_code=None, upstream_message=None, details=None):
        self.upstream_code = upstream_code
        self.upstream_message = upstream_message
        details = dict(details or {})
        details["upstream_code"] = upstream_code
        super().__init__(message, details=details)

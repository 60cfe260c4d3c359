class ServiceError(Exception):
    """Base class for service layer errors."""

    def __init__(self, message="An internal service error occurred.", status_code=500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Malformed or insufficient input (too few participants, empty message)."""

    def __init__(self, message="Invalid request."):
        super().__init__(message, status_code=400)


class NotFoundError(ServiceError):
    """Missing entity, or the requester is not a participant of it.

    Non-members get the same error as for a missing entity so that existence
    does not leak.
    """

    def __init__(self, message="Resource not found."):
        super().__init__(message, status_code=404)


class AuthorizationError(ServiceError):
    """Participant lacking the required role (e.g. non-admin)."""

    def __init__(self, message="User not authorized for this action."):
        super().__init__(message, status_code=403)


class DatabaseError(ServiceError):
    """For general database errors during service operations."""

    def __init__(self, message="A database error occurred."):
        super().__init__(message, status_code=500)

class LibraryError(Exception):
    """Base exception for library service errors."""

    code = "ERROR"
    status = 500

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__


class NotFoundError(LibraryError):
    """Referenced record does not exist."""

    code = "NOT_FOUND"
    status = 404


class InvalidStateError(LibraryError):
    """Record is not in a state that allows this operation."""

    code = "INVALID_STATE"
    status = 400


class ConflictError(LibraryError):
    """Operation conflicts with an existing record."""

    code = "CONFLICT"
    status = 409


class ValidationError(LibraryError):
    """Malformed or missing input."""

    code = "VALIDATION"
    status = 400


class StorageFailure(LibraryError):
    """The database could not commit the unit of work."""

    code = "STORAGE_FAILURE"
    status = 500


class AuthError(LibraryError):
    """Missing, invalid or expired credentials."""

    code = "UNAUTHORIZED"
    status = 401


class ForbiddenError(LibraryError):
    """Caller is not allowed to perform this operation."""

    code = "FORBIDDEN"
    status = 403

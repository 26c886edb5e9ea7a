class LibraryError(Exception):
    """Base exception for library operations errors."""

    kind = "error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class NotFoundError(LibraryError):
    """A book, member or transaction lookup missed."""

    kind = "not_found"


class ConflictError(LibraryError):
    """A unique key (isbn, email, member id) is already taken."""

    kind = "conflict"


class InvalidStateError(LibraryError):
    """The operation does not apply to the record in its current state."""

    kind = "invalid_state"


class InvalidInputError(LibraryError):
    """Required fields are missing or malformed."""

    kind = "invalid_input"


class UnavailableError(LibraryError):
    """No copies are left to borrow."""

    kind = "unavailable"


class InternalError(LibraryError):
    """The store failed unexpectedly."""

    kind = "internal"

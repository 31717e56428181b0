"""Error taxonomy shared by the server and the client.

Every error carries a human readable ``message`` that is shown verbatim to
the actor who attempted the action, a machine readable ``code`` and the HTTP
status the server answers with.
"""


class LibraryError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError, ValueError):
    """Malformed input, caught before any state is touched."""

    status_code = 400
    code = "validation_error"


class StateConflictError(LibraryError):
    """The requested transition is illegal from the current state."""

    status_code = 409
    code = "state_conflict"


class ExtensionStateError(StateConflictError):
    code = "extension_state"


class NotFoundError(LibraryError):
    status_code = 404
    code = "not_found"


class AuthorizationError(LibraryError):
    """The actor's role does not permit the requested action."""

    status_code = 403
    code = "forbidden"


class AuthenticationError(AuthorizationError):
    status_code = 401
    code = "unauthorized"


class TransportError(LibraryError):
    """The API could not be reached at all."""

    status_code = 503
    code = "transport_error"


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        StateConflictError,
        ExtensionStateError,
        NotFoundError,
        AuthorizationError,
        AuthenticationError,
        TransportError,
    )
}

ERRORS_BY_STATUS = {
    400: ValidationError,
    422: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: StateConflictError,
}

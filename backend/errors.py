"""Error taxonomy shared by the stores, the coordinator and the HTTP layer.

Every error carries a stable ``code`` for clients and a user-facing
``message``. ``status_code`` is the HTTP status the API answers with.
"""


class LendingError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFoundError(LendingError):
    status_code = 404
    code = "not_found"


class ConflictError(LendingError):
    status_code = 400
    code = "conflict"


class ForbiddenError(LendingError):
    status_code = 403
    code = "forbidden"


class UnauthorizedError(LendingError):
    status_code = 401
    code = "unauthorized"


class InvalidTransitionError(LendingError):
    status_code = 400
    code = "invalid_transition"


class InvalidArgumentError(LendingError):
    status_code = 400
    code = "invalid_argument"


class InternalError(LendingError):
    status_code = 500
    code = "internal"

    def to_dict(self) -> dict:
        # Storage details stay in the logs
        return {"detail": "Something went wrong!", "code": self.code}

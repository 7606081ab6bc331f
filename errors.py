"""Domain errors raised by the services.

Each error carries a machine-readable ``kind``; the web layer renders it as
``{"error": {"kind": ..., "message": ...}}`` with ``status_code``.
"""


class CardsError(ValueError):
    kind = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class NotFound(CardsError):
    kind = "not_found"
    status_code = 404


class InvalidInput(CardsError):
    kind = "invalid_input"
    status_code = 400


class Unauthorized(CardsError):
    kind = "unauthorized"
    status_code = 401


class StorageFailure(CardsError):
    kind = "storage_failure"
    status_code = 500

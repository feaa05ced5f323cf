"""
Error kinds raised by the service layer.

Each kind maps to one HTTP status and a machine-readable code so the
HTTP layer can render failures without inspecting messages.
"""
from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    OUT_OF_STOCK = "out_of_stock"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"


STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.OUT_OF_STOCK: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_STATE: 400,
}


class ShopError(Exception):
    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]


class NotFound(ShopError):
    kind = ErrorKind.NOT_FOUND


class InvalidInput(ShopError):
    kind = ErrorKind.INVALID_INPUT


class OutOfStock(ShopError):
    kind = ErrorKind.OUT_OF_STOCK


class Conflict(ShopError):
    kind = ErrorKind.CONFLICT


class InvalidState(ShopError):
    kind = ErrorKind.INVALID_STATE


def describe_validation_error(exc) -> str:
    """Flatten pydantic or request validation errors into one line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)

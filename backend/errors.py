from enum import Enum

class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    REJECTED = "rejected"
    LIMIT_EXCEEDED = "limit_exceeded"
    OVER_PAYMENT = "over_payment"
    INVENTORY_CORRUPTION = "inventory_corruption"
    INTERNAL = "internal"

class LibraryError(Exception):
    kind = ErrorKind.INTERNAL
    code = "internal"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    @property
    def is_defect(self) -> bool:
        return self.kind in (ErrorKind.INVENTORY_CORRUPTION, ErrorKind.INTERNAL)

class NotFound(LibraryError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"

class InvalidState(LibraryError):
    kind = ErrorKind.INVALID_STATE
    code = "invalid_state"

class AlreadyReturned(InvalidState):
    code = "already_returned"

class Rejected(LibraryError):
    kind = ErrorKind.REJECTED
    code = "rejected"

class LimitExceeded(Rejected):
    kind = ErrorKind.LIMIT_EXCEEDED
    code = "limit_exceeded"

class OverPayment(LibraryError):
    kind = ErrorKind.OVER_PAYMENT
    code = "over_payment"

class InventoryCorruption(LibraryError):
    kind = ErrorKind.INVENTORY_CORRUPTION
    code = "inventory_corruption"

class Internal(LibraryError):
    kind = ErrorKind.INTERNAL
    code = "internal"

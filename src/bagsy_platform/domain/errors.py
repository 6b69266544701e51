"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Invalid input (rejected before any mutation)
  2xxx: Precondition failed (already handled, wrong state, lost race)
  3xxx: Not found
  9xxx: External collaborator failure
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 1xxx: Invalid input ---

class InvalidInputError(AppError):
    def __init__(self, message: str, code: int = 1000) -> None:
        super().__init__(code, message, 422)


class InvalidAddressError(InvalidInputError):
    def __init__(self, field: str, which: str = "address") -> None:
        self.field = field
        super().__init__(f"{which} is missing required field '{field}'", 1001)


class InvalidPriceError(InvalidInputError):
    def __init__(self, price) -> None:
        super().__init__(f"Price must be greater than zero (got {price})", 1002)


class InvalidWindowError(InvalidInputError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid booking window: {detail}", 1003)


# --- 2xxx: Precondition failed ---

class PreconditionFailedError(AppError):
    def __init__(self, message: str, code: int = 2000) -> None:
        super().__init__(code, message, 409)


class NotAuthorizedForActionError(PreconditionFailedError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, 2001)


class OfferNotPendingError(PreconditionFailedError):
    def __init__(self, offer_id: str, status: str) -> None:
        super().__init__(f"Offer {offer_id} has already been {status}", 2002)


class AgreementNotExecutedError(PreconditionFailedError):
    def __init__(self, booking_id: str) -> None:
        super().__init__(
            f"Both parties must sign the agreement for booking {booking_id} before payment",
            2003,
        )


class AlreadySignedError(PreconditionFailedError):
    def __init__(self, role: str) -> None:
        super().__init__(f"The {role} has already signed this agreement", 2004)


class ConcurrentUpdateError(PreconditionFailedError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} {entity_id} was changed by another action; reload and try again",
            2005,
        )


# --- 3xxx: Not found ---

class NotFoundError(AppError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(3000, f"{entity} not found: {entity_id}", 404)


# --- 9xxx: External collaborators ---

class ExternalCollaboratorError(AppError):
    def __init__(self, collaborator: str, detail: str, code: int = 9000) -> None:
        self.collaborator = collaborator
        super().__init__(code, f"{collaborator} failed: {detail}", 502)


class PaymentDeclinedError(ExternalCollaboratorError):
    def __init__(self, detail: str) -> None:
        super().__init__("Payment processor", detail, 9001)
        self.http_status = 402

"""Domain error codes for the registration engine.

Every refusal a caller can act on is one of these. The HTTP layer maps the
``code`` to a status in ``app.main``; the engine itself never raises
``HTTPException``.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Domain error codes."""

    COHORT_NOT_FOUND = "COHORT_NOT_FOUND"
    COHORT_FULL = "COHORT_FULL"
    COHORT_NOT_FULL = "COHORT_NOT_FULL"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    REGISTRATION_WINDOW_CLOSED = "REGISTRATION_WINDOW_CLOSED"
    INVALID_PROMO_CODE = "INVALID_PROMO_CODE"
    PROMO_CODE_NOT_FOUND = "PROMO_CODE_NOT_FOUND"
    PROMO_CODE_EXISTS = "PROMO_CODE_EXISTS"
    REGISTRATION_NOT_FOUND = "REGISTRATION_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    NOT_ON_WAITLIST = "NOT_ON_WAITLIST"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_COHORT = "INVALID_COHORT"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.INVALID_TRANSITION

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def extra(self) -> dict[str, Any]:
        """Additional fields exposed in the error body."""
        return {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class CohortNotFoundError(DomainError):
    code = ErrorCode.COHORT_NOT_FOUND

    def __init__(self, cohort_id) -> None:
        super().__init__("Cohort not found")
        self.cohort_id = cohort_id


class CohortFullError(DomainError):
    """Raised when no seat is available; the learner has been waitlisted."""

    code = ErrorCode.COHORT_FULL

    def __init__(self, waitlist_position: int) -> None:
        super().__init__("Cohort is full; you have been added to the waitlist")
        self.waitlist_position = waitlist_position

    def extra(self) -> dict[str, Any]:
        return {"waitlist_position": self.waitlist_position}


class CohortNotFullError(DomainError):
    code = ErrorCode.COHORT_NOT_FULL

    def __init__(self) -> None:
        super().__init__("Cohort has open seats; register instead of joining the waitlist")


class AlreadyRegisteredError(DomainError):
    code = ErrorCode.ALREADY_REGISTERED

    def __init__(self) -> None:
        super().__init__("Learner already holds an active registration for this cohort")


class RegistrationWindowClosedError(DomainError):
    code = ErrorCode.REGISTRATION_WINDOW_CLOSED

    def __init__(self, cohort_status: str) -> None:
        super().__init__(f"Registration is not open (cohort is {cohort_status})")
        self.cohort_status = cohort_status

    def extra(self) -> dict[str, Any]:
        return {"cohort_status": self.cohort_status}


class InvalidPromoCodeError(DomainError):
    code = ErrorCode.INVALID_PROMO_CODE

    def __init__(self, reason: str) -> None:
        super().__init__(f"Promo code rejected: {reason}")
        self.reason = reason

    def extra(self) -> dict[str, Any]:
        return {"reason": self.reason}


class PromoCodeNotFoundError(DomainError):
    code = ErrorCode.PROMO_CODE_NOT_FOUND

    def __init__(self) -> None:
        super().__init__("Promo code not found")


class PromoCodeExistsError(DomainError):
    code = ErrorCode.PROMO_CODE_EXISTS

    def __init__(self, code: str) -> None:
        super().__init__(f"Promo code '{code}' already exists")


class RegistrationNotFoundError(DomainError):
    code = ErrorCode.REGISTRATION_NOT_FOUND

    def __init__(self, registration_id) -> None:
        super().__init__("Registration not found")
        self.registration_id = registration_id


class ForbiddenError(DomainError):
    code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "Not allowed to act on this registration") -> None:
        super().__init__(message)


class AlreadyTerminalError(DomainError):
    code = ErrorCode.ALREADY_TERMINAL

    def __init__(self, status: str) -> None:
        super().__init__(f"Registration is already {status}")
        self.status = status

    def extra(self) -> dict[str, Any]:
        return {"status": self.status}


class NotOnWaitlistError(DomainError):
    code = ErrorCode.NOT_ON_WAITLIST

    def __init__(self) -> None:
        super().__init__("Learner is not on the waitlist for this cohort")


class InvalidTransitionError(DomainError):
    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")
        self.from_status = from_status
        self.to_status = to_status


class InvalidCohortError(DomainError):
    code = ErrorCode.INVALID_COHORT


class StorageUnavailableError(DomainError):
    """Retryable: the database refused or dropped the write."""

    code = ErrorCode.STORAGE_UNAVAILABLE

    def __init__(self, message: str = "Storage temporarily unavailable") -> None:
        super().__init__(message)

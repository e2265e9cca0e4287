from dataclasses import dataclass
from typing import ClassVar, List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class InvalidWindow(DomainError):
    title: str = "Invalid Booking Window"
    type: str = "https://example.com/problems/invalid-window"

    status_code: ClassVar[int] = 422


@dataclass
class InvalidBookingParties(DomainError):
    title: str = "Invalid Booking Parties"
    type: str = "https://example.com/problems/invalid-parties"

    status_code: ClassVar[int] = 422


@dataclass
class BookingNotFound(DomainError):
    title: str = "Booking Not Found"
    type: str = "https://example.com/problems/booking-not-found"

    status_code: ClassVar[int] = 404


@dataclass
class IllegalTransition(DomainError):
    title: str = "Illegal Transition"
    type: str = "https://example.com/problems/illegal-transition"

    status_code: ClassVar[int] = 409


@dataclass
class NotCancelable(DomainError):
    title: str = "Booking Not Cancelable"
    type: str = "https://example.com/problems/not-cancelable"

    status_code: ClassVar[int] = 409


@dataclass
class InvalidExtension(DomainError):
    title: str = "Invalid Extension"
    type: str = "https://example.com/problems/invalid-extension"

    status_code: ClassVar[int] = 422


@dataclass
class ExtensionNotAuthorized(DomainError):
    title: str = "Extension Not Authorized"
    type: str = "https://example.com/problems/extension-not-authorized"

    status_code: ClassVar[int] = 409


@dataclass
class ApprovalWindowExpired(DomainError):
    title: str = "Approval Window Expired"
    type: str = "https://example.com/problems/approval-window-expired"

    status_code: ClassVar[int] = 409


@dataclass
class PaymentAuthorizationFailed(DomainError):
    title: str = "Payment Authorization Failed"
    type: str = "https://example.com/problems/payment-authorization-failed"

    status_code: ClassVar[int] = 402


@dataclass
class PaymentCaptureFailed(DomainError):
    title: str = "Payment Capture Failed"
    type: str = "https://example.com/problems/payment-capture-failed"

    status_code: ClassVar[int] = 402


@dataclass
class PaymentRefundFailed(DomainError):
    title: str = "Payment Refund Failed"
    type: str = "https://example.com/problems/payment-refund-failed"

    status_code: ClassVar[int] = 502


@dataclass
class ConflictError(DomainError):
    """Lost an optimistic-concurrency race; re-read before deciding to retry."""

    title: str = "Conflict"
    type: str = "https://example.com/problems/conflict"

    status_code: ClassVar[int] = 409

from enum import Enum

BOOKING_STATUS_PENDING = "pending"
BOOKING_STATUS_HELD = "held"
BOOKING_STATUS_ACTIVE = "active"
BOOKING_STATUS_COMPLETED = "completed"
BOOKING_STATUS_CANCELED = "canceled"
BOOKING_STATUS_DECLINED = "declined"

# Older call sites record an active booking as "paid".
BOOKING_STATUS_PAID_ALIAS = "paid"

CANCELLATION_REASON_DECLINED = "declined_by_host"
CANCELLATION_REASON_EXPIRED = "expired_no_response"
CANCELLATION_REASON_HOST = "canceled_by_host"


class BookingStatus(str, Enum):
    pending = BOOKING_STATUS_PENDING
    held = BOOKING_STATUS_HELD
    active = BOOKING_STATUS_ACTIVE
    completed = BOOKING_STATUS_COMPLETED
    canceled = BOOKING_STATUS_CANCELED
    declined = BOOKING_STATUS_DECLINED

    @classmethod
    def parse(cls, value: "str | BookingStatus") -> "BookingStatus":
        if isinstance(value, BookingStatus):
            return value
        normalized = value.strip().lower()
        if normalized == BOOKING_STATUS_PAID_ALIAS:
            return cls.active
        return cls(normalized)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class ActorRole(str, Enum):
    renter = "renter"
    guest = "guest"
    host = "host"
    system = "system"


class ChargeKind(str, Enum):
    booking = "booking"
    extension = "extension"
    modification = "modification"
    overstay = "overstay"


class ExtensionAttemptStatus(str, Enum):
    requires_action = "requires_action"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"


TERMINAL_STATUSES = frozenset({BookingStatus.completed, BookingStatus.canceled, BookingStatus.declined})

# "pending" collapses into "held" once authorization succeeds, so it never
# appears as a stored status; it is kept here so transitions out of it are explicit.
BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.pending: frozenset({BookingStatus.held, BookingStatus.active}),
    BookingStatus.held: frozenset({BookingStatus.active, BookingStatus.declined, BookingStatus.canceled}),
    BookingStatus.active: frozenset({BookingStatus.completed, BookingStatus.canceled}),
    BookingStatus.completed: frozenset(),
    BookingStatus.canceled: frozenset(),
    BookingStatus.declined: frozenset(),
}

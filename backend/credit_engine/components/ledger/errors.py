"""Exception hierarchy for credit ledger, reservation and billing event failures."""

from __future__ import annotations


class CreditEngineError(Exception):
    """Base class for every error raised by the credit engine."""


class InsufficientCredits(CreditEngineError):
    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"insufficient_credits: required={self.required} available={self.available}")


class ReservationNotFound(CreditEngineError):
    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"reservation {reservation_id} not found")


class ReservationAlreadyResolved(CreditEngineError):
    def __init__(self, reservation_id: str, status: str):
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(f"reservation {reservation_id} already {status}")


class InvalidWebhookSignature(CreditEngineError):
    pass


class DuplicateWebhookEvent(CreditEngineError):
    def __init__(self, external_event_id: str):
        self.external_event_id = external_event_id
        super().__init__(f"webhook event {external_event_id} already processed")


class TransactionConflict(CreditEngineError):
    """Concurrent writer won the race on an account row; safe to retry."""


class InvalidTransition(CreditEngineError):
    def __init__(self, from_state: str, event_type: str, detail: str | None = None):
        self.from_state = from_state
        self.event_type = event_type
        message = f"no transition from {from_state!r} on {event_type!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnknownAccount(CreditEngineError):
    def __init__(self, reference: str | int | None):
        self.reference = reference
        super().__init__(f"no credit account for {reference!r}")


class InvariantViolation(CreditEngineError):
    """Pool arithmetic broke the account invariant; raised before anything is flushed."""

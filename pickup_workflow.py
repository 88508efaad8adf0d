"""
Pickup lifecycle rules for Recycle-IT.

Everything here is pure: callers load the current state, ask these helpers
whether a move is legal, and then apply it with a conditional update so a
concurrent writer cannot slip in between the check and the write.

    Pending -> Scheduled -> In Transit -> Collected -> Delivered -> Verified
    (any non-terminal) -> Cancelled
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    TERMS_REQUIRED = "terms_required"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    PRECONDITION_FAILED = "precondition_failed"
    NETWORK = "network"
    SERVER = "server_error"


# ------------------ Errors ------------------
class WorkflowError(Exception):
    kind = ErrorKind.SERVER
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(WorkflowError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class Unauthorized(WorkflowError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class Forbidden(WorkflowError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class TermsRequired(WorkflowError):
    kind = ErrorKind.TERMS_REQUIRED
    status_code = 403


class NotFound(WorkflowError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class Conflict(WorkflowError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class InvalidTransition(WorkflowError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = 409


class PreconditionFailed(WorkflowError):
    kind = ErrorKind.PRECONDITION_FAILED
    status_code = 409


# ------------------ Pickup status ------------------
class PickupStatus(str, Enum):
    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    IN_TRANSIT = "In Transit"
    COLLECTED = "Collected"
    DELIVERED = "Delivered"
    VERIFIED = "Verified"
    CANCELLED = "Cancelled"


class DeviceCondition(str, Enum):
    WORKING = "Working"
    PARTIALLY_WORKING = "Partially Working"
    NOT_WORKING = "Not Working"
    SCRAP = "Scrap"


TERMINAL: FrozenSet[PickupStatus] = frozenset({PickupStatus.VERIFIED, PickupStatus.CANCELLED})

TRANSITIONS: Dict[PickupStatus, FrozenSet[PickupStatus]] = {
    PickupStatus.PENDING: frozenset({PickupStatus.SCHEDULED, PickupStatus.CANCELLED}),
    PickupStatus.SCHEDULED: frozenset({PickupStatus.IN_TRANSIT, PickupStatus.CANCELLED}),
    PickupStatus.IN_TRANSIT: frozenset({PickupStatus.COLLECTED, PickupStatus.CANCELLED}),
    PickupStatus.COLLECTED: frozenset({PickupStatus.DELIVERED, PickupStatus.CANCELLED}),
    PickupStatus.DELIVERED: frozenset({PickupStatus.VERIFIED, PickupStatus.CANCELLED}),
    PickupStatus.VERIFIED: frozenset(),
    PickupStatus.CANCELLED: frozenset(),
}

# Status in which the device is physically at the recycler and can be inspected.
RECEIVED_STATUS = PickupStatus.DELIVERED


def parse_status(value) -> PickupStatus:
    try:
        return PickupStatus(value)
    except ValueError:
        raise ValidationFailed(f"Invalid status: {value}")


def can_transition(current, target) -> bool:
    return parse_status(target) in TRANSITIONS[parse_status(current)]


def ensure_transition(current, target, assigned_recycler_id: Optional[str] = None,
                      reason: Optional[str] = None) -> PickupStatus:
    """Validate one pickup status move and return the parsed target."""
    current = parse_status(current)
    target = parse_status(target)

    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move pickup from '{current.value}' to '{target.value}'")
    if target is PickupStatus.SCHEDULED and not assigned_recycler_id:
        raise InvalidTransition("A recycler must accept the pickup before it is scheduled")
    if target is PickupStatus.CANCELLED and not (reason and reason.strip()):
        raise ValidationFailed("A reason is required to cancel a pickup")
    return target


def history_entry(from_status, to_status, actor_id: Optional[str], actor_role: Optional[str],
                  reason: Optional[str] = None) -> dict:
    return {
        "from": parse_status(from_status).value if from_status else None,
        "to": parse_status(to_status).value,
        "actor_id": actor_id,
        "actor_role": actor_role,
        "reason": reason,
        "at": datetime.now(timezone.utc).replace(tzinfo=None),
    }


# ------------------ Inspection ------------------
class InspectionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class InspectionCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


def ensure_received(pickup_status) -> None:
    if parse_status(pickup_status) is not RECEIVED_STATUS:
        raise PreconditionFailed(
            f"Pickup must be '{RECEIVED_STATUS.value}' before it can be received for inspection"
        )


def ensure_can_start_inspection(status) -> InspectionStatus:
    if InspectionStatus(status) is not InspectionStatus.PENDING:
        raise InvalidTransition(f"Inspection cannot start from '{status}'")
    return InspectionStatus.IN_PROGRESS


def ensure_can_complete_inspection(status, condition, estimated_value) -> InspectionStatus:
    if InspectionStatus(status) is InspectionStatus.COMPLETED:
        raise InvalidTransition("Inspection is already completed")
    try:
        InspectionCondition(condition)
    except ValueError:
        allowed = ", ".join(c.value for c in InspectionCondition)
        raise ValidationFailed(f"Condition must be one of: {allowed}")
    if estimated_value is None or estimated_value < 0:
        raise ValidationFailed("Estimated value must be zero or more")
    return InspectionStatus.COMPLETED


# ------------------ Payment ------------------
class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROPOSED = "proposed"
    COMPLETED = "completed"
    REJECTED = "rejected"


def ensure_can_propose(inspection_status, payment_status, amount) -> PaymentStatus:
    if InspectionStatus(inspection_status) is not InspectionStatus.COMPLETED:
        raise PreconditionFailed("Inspection must be completed before proposing payment")
    if PaymentStatus(payment_status) is not PaymentStatus.PENDING:
        raise InvalidTransition(f"Payment cannot be proposed from '{payment_status}'")
    if amount is None or amount < 0:
        raise ValidationFailed("Amount must be zero or more")
    return PaymentStatus.PROPOSED


def ensure_can_finalize(payment_status, proposed_amount) -> PaymentStatus:
    if PaymentStatus(payment_status) is not PaymentStatus.PROPOSED:
        raise InvalidTransition(f"Payment cannot be finalized from '{payment_status}'")
    if proposed_amount is None:
        raise PreconditionFailed("No proposed amount to finalize")
    return PaymentStatus.COMPLETED


def ensure_can_reject(payment_status) -> PaymentStatus:
    if PaymentStatus(payment_status) not in (PaymentStatus.PENDING, PaymentStatus.PROPOSED):
        raise InvalidTransition(f"Payment cannot be rejected from '{payment_status}'")
    return PaymentStatus.REJECTED


def ensure_verifiable(inspection_status, payment_status) -> None:
    if inspection_status is None or InspectionStatus(inspection_status) is not InspectionStatus.COMPLETED:
        raise PreconditionFailed("Inspection must be completed before verification")
    if payment_status is None or PaymentStatus(payment_status) is not PaymentStatus.COMPLETED:
        raise PreconditionFailed("Payment must be completed before verification")


# ------------------ Legal agreements ------------------
def apply_agreements(current_terms: bool, current_conduct: bool,
                     terms: bool = False, conduct: bool = False):
    """Return the new (terms, conduct) flags; acceptance never reverts."""
    new_terms = current_terms or terms
    if conduct and not new_terms:
        raise ValidationFailed("Terms & Conditions must be accepted before the Code of Conduct")
    return new_terms, current_conduct or conduct


def agreements_complete(account: dict) -> bool:
    return bool(account.get("terms_accepted")) and bool(account.get("conduct_accepted"))


def ensure_agreements(account: dict) -> None:
    if not agreements_complete(account):
        raise TermsRequired("Terms & Conditions and Code of Conduct must be accepted")

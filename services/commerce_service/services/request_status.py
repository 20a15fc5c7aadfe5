"""One status vocabulary for refund and return requests.

Two historical vocabularies map onto ``RequestStatus``: the admin refund flow
(PENDING/COMPLETED/REJECTED/FAILED) and the self-service flow
(requested/approved/rejected/completed).
"""

from typing import Optional, Union

from services.commerce_service.models import RequestStatus

LEGACY_STATUS_MAP: dict[str, RequestStatus] = {
    "PENDING": RequestStatus.PENDING,
    "PROCESSING": RequestStatus.PROCESSING,
    "COMPLETED": RequestStatus.COMPLETED,
    "REJECTED": RequestStatus.REJECTED,
    "FAILED": RequestStatus.FAILED,
    "requested": RequestStatus.PENDING,
    "approved": RequestStatus.APPROVED,
    "rejected": RequestStatus.REJECTED,
    "completed": RequestStatus.COMPLETED,
}

# Refunds: pending -> processing (gateway in flight) -> completed | failed
REFUND_TRANSITIONS: dict[RequestStatus, frozenset] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.PROCESSING, RequestStatus.REJECTED}
    ),
    RequestStatus.PROCESSING: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.FAILED}
    ),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}

# Returns: pending -> approved -> completed, or pending -> rejected
RETURN_TRANSITIONS: dict[RequestStatus, frozenset] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.PROCESSING: frozenset(),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}

# Requests whose items count as refunded units
REFUND_RESERVING_STATUSES = (
    RequestStatus.APPROVED,
    RequestStatus.PROCESSING,
    RequestStatus.COMPLETED,
)

# Requests that block a new submission for the same order
OPEN_REFUND_STATUSES = (
    RequestStatus.PENDING,
    RequestStatus.APPROVED,
    RequestStatus.PROCESSING,
)


def resolve_request_status(value: Union[RequestStatus, str, None]) -> Optional[RequestStatus]:
    if isinstance(value, RequestStatus):
        return value
    raw = str(value or "").strip()
    if raw in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[raw]
    try:
        return RequestStatus(raw.lower())
    except ValueError:
        return None


def can_transition_refund(current: RequestStatus, target: RequestStatus) -> bool:
    return target in REFUND_TRANSITIONS.get(current, frozenset())


def can_transition_return(current: RequestStatus, target: RequestStatus) -> bool:
    return target in RETURN_TRANSITIONS.get(current, frozenset())

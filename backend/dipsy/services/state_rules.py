"""Load status transition rules shared by the tool executor and the store."""
from __future__ import annotations

from typing import Any, Dict, Optional

from dipsy.core.errors import InvalidTransition
from dipsy.models.dispatch import LoadStatus, PodStatus


ALLOWED_STATUS_TRANSITIONS = {
    LoadStatus.AVAILABLE.value: {
        LoadStatus.DISPATCHED.value,
        LoadStatus.IN_TRANSIT.value,
        LoadStatus.PROBLEM.value,
    },
    LoadStatus.DISPATCHED.value: {
        LoadStatus.IN_TRANSIT.value,
        LoadStatus.DELIVERED.value,
        LoadStatus.PROBLEM.value,
        LoadStatus.AVAILABLE.value,
    },
    LoadStatus.IN_TRANSIT.value: {LoadStatus.DELIVERED.value, LoadStatus.PROBLEM.value},
    LoadStatus.DELIVERED.value: {LoadStatus.PROBLEM.value},
    LoadStatus.PROBLEM.value: {
        LoadStatus.AVAILABLE.value,
        LoadStatus.DISPATCHED.value,
        LoadStatus.IN_TRANSIT.value,
        LoadStatus.DELIVERED.value,
    },
}

ASSIGNABLE_LOAD_STATUSES = (
    LoadStatus.AVAILABLE,
    LoadStatus.DISPATCHED,
    LoadStatus.IN_TRANSIT,
    LoadStatus.PROBLEM,
)


def normalize_status(status: Any) -> str:
    if isinstance(status, LoadStatus):
        return status.value
    return str(status or "").strip().upper().replace(" ", "_").replace("-", "_")


def is_closed(load: Dict[str, Any]) -> bool:
    """Delivered with POD received: the load accepts no further status changes."""
    return (
        load.get("status") == LoadStatus.DELIVERED.value
        and load.get("pod_status") == PodStatus.RECEIVED.value
    )


def validate_status_transition(load: Dict[str, Any], next_status: str) -> bool:
    """
    Raise InvalidTransition when `next_status` is not reachable from the load's
    current status. Returns False for a same-state no-op, True otherwise.
    """
    current_status = normalize_status(load.get("status"))
    next_status = normalize_status(next_status)
    if next_status not in ALLOWED_STATUS_TRANSITIONS:
        raise InvalidTransition(
            f"Unknown status '{next_status}'. Use one of: {', '.join(sorted(ALLOWED_STATUS_TRANSITIONS))}.",
            load_reference=load.get("reference"),
        )
    if current_status == next_status:
        return False
    if is_closed(load):
        raise InvalidTransition(
            f"Load {load.get('reference')} is delivered with POD received and is closed.",
            load_reference=load.get("reference"),
            current_status=current_status,
        )
    allowed = ALLOWED_STATUS_TRANSITIONS.get(current_status)
    if allowed is None:
        raise InvalidTransition(f"Unknown current status '{current_status}'", load_reference=load.get("reference"))
    if next_status not in allowed:
        raise InvalidTransition(
            f"Cannot move {load.get('reference')} from {current_status} to {next_status}. "
            f"Allowed: {', '.join(sorted(allowed)) or 'none'}.",
            load_reference=load.get("reference"),
            current_status=current_status,
        )
    return True


def validate_assignable(load: Dict[str, Any]) -> None:
    if is_closed(load) or load.get("status") not in {status.value for status in ASSIGNABLE_LOAD_STATUSES}:
        raise InvalidTransition(
            f"Load {load.get('reference')} is {load.get('status')} and cannot take a driver.",
            load_reference=load.get("reference"),
            current_status=load.get("status"),
        )


def resolution_target(load: Dict[str, Any], requested: Optional[str] = None) -> str:
    """Status a PROBLEM load returns to when the problem is resolved."""
    if requested:
        return normalize_status(requested)
    prior = load.get("status_before_problem")
    if prior and prior != LoadStatus.PROBLEM.value:
        return normalize_status(prior)
    if load.get("delivered_at"):
        return LoadStatus.DELIVERED.value
    if load.get("assigned_driver_id"):
        return LoadStatus.DISPATCHED.value
    return LoadStatus.AVAILABLE.value

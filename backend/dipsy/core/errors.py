"""Error taxonomy for the dispatch assistant."""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class DipsyError(Exception):
    """Base class; `code` is the stable machine-readable identifier."""

    code = "dipsy_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_result(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "error_code": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class Unauthenticated(DipsyError):
    code = "unauthenticated"


class NoActiveTenant(DipsyError):
    code = "no_active_tenant"


class EntityNotFound(DipsyError):
    code = "not_found"


class LoadNotFound(EntityNotFound):
    code = "load_not_found"


class DriverNotFound(EntityNotFound):
    code = "driver_not_found"


class AmbiguousReference(DipsyError):
    code = "ambiguous_reference"

    def __init__(self, message: str, *, kind: str, fragment: str, candidates: List[Dict[str, Any]]) -> None:
        super().__init__(message, kind=kind, fragment=fragment, candidates=candidates)
        self.kind = kind
        self.fragment = fragment
        self.candidates = candidates


class ConflictingState(DipsyError):
    code = "conflicting_state"


class DriverAlreadyAssigned(ConflictingState):
    code = "driver_already_assigned"


class LoadAlreadyAssigned(ConflictingState):
    code = "load_already_assigned"


class InvalidTransition(ConflictingState):
    code = "invalid_transition"


class ReasonRequired(DipsyError):
    code = "reason_required"


class CreateFailed(DipsyError):
    code = "create_failed"


class InvalidToolArguments(DipsyError):
    code = "invalid_arguments"


class UpstreamServiceError(DipsyError):
    code = "upstream_error"

    def __init__(self, message: str, *, service: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, service=service)
        self.service = service
        self.status_code = status_code


class OrchestrationTimeout(DipsyError):
    code = "timeout"


class MalformedPayload(DipsyError):
    code = "malformed_payload"

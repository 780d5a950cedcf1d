"""Domain models for loads, drivers, and assignment history."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoadStatus(str, Enum):
    """Operational lifecycle status for a load."""

    AVAILABLE = "AVAILABLE"
    DISPATCHED = "DISPATCHED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    PROBLEM = "PROBLEM"


class PodStatus(str, Enum):
    """Proof-of-delivery lifecycle, independent from the load status."""

    NONE = "NONE"
    PENDING = "PENDING"
    RECEIVED = "RECEIVED"


class DriverStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    INACTIVE = "INACTIVE"


class HosStatus(str, Enum):
    DRIVING = "DRIVING"
    ON_DUTY = "ON_DUTY"
    RESTING = "RESTING"
    OFF_DUTY = "OFF_DUTY"
    SLEEPER_BERTH = "SLEEPER_BERTH"


class ReleaseReason(str, Enum):
    """Why an open assignment row was closed."""

    POD_RECEIVED = "pod_received"
    RELEASED_WITHOUT_POD = "released_without_pod"


class MembershipRole(str, Enum):
    DISPATCHER = "dispatcher"
    ADMIN = "admin"
    DRIVER = "driver"


class LoadRecord(BaseModel):
    """Persisted load row."""

    id: str
    reference: str
    origin: str
    destination: str
    rate: float = Field(default=0.0, ge=0)
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    shipper: str = "Unknown shipper"
    equipment_type: str = "Dry van"
    customer_reference: Optional[str] = None
    commodity: Optional[str] = None
    weight: Optional[float] = None
    miles: Optional[float] = None
    status: LoadStatus = LoadStatus.AVAILABLE
    pod_status: PodStatus = PodStatus.NONE
    assigned_driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    problem_flag: bool = False
    problem_note: Optional[str] = None
    problem_flagged_at: Optional[datetime] = None
    status_before_problem: Optional[LoadStatus] = None
    source: str = "manual"
    created_by: Optional[str] = None
    status_changed_at: datetime = Field(default_factory=_utcnow)
    delivered_at: Optional[datetime] = None
    pod_uploaded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DriverRecord(BaseModel):
    """Persisted driver row with Hours-of-Service budget."""

    id: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    status: DriverStatus = DriverStatus.AVAILABLE
    notes: Optional[str] = None
    truck_id: Optional[str] = None
    license_expiry: Optional[str] = None
    med_card_expiry: Optional[str] = None
    hos_status: HosStatus = HosStatus.OFF_DUTY
    hos_drive_remaining_min: int = Field(default=660, ge=0)
    hos_shift_remaining_min: int = Field(default=840, ge=0)
    hos_cycle_remaining_min: int = Field(default=4200, ge=0)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in [self.first_name, self.last_name] if part).strip()


class LoadBoardRow(BaseModel):
    """One row of the denormalized board snapshot."""

    load_id: str
    load_reference: str
    load_status: LoadStatus
    pod_status: PodStatus
    origin: str
    destination: str
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    rate: float = 0.0
    assigned_driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    driver_full_name: Optional[str] = None
    driver_status: Optional[str] = None
    hos_status: Optional[str] = None
    hos_drive_remaining_min: Optional[int] = None
    assignment_id: Optional[str] = None
    assignment_driver_id: Optional[str] = None
    assigned_at: Optional[str] = None
    has_assigned_driver: bool = False
    has_active_assignment_row: bool = False
    assignment_consistent: bool = True


class ParsedStop(BaseModel):
    type: str
    facility_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    appointment: Optional[str] = None


class ParsedRateConfirmation(BaseModel):
    """Already-parsed OCR output for a rate confirmation."""

    reference: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0)
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    commodity: Optional[str] = None
    equipment_type: Optional[str] = None
    shipper: Optional[str] = None
    weight: Optional[float] = None
    stops: List[ParsedStop] = Field(default_factory=list)

    def resolved_origin(self) -> Optional[str]:
        return self.origin or self._stop_label("pickup")

    def resolved_destination(self) -> Optional[str]:
        return self.destination or self._stop_label("delivery")

    def resolved_pickup_date(self) -> Optional[str]:
        return self.pickup_date or self._stop_date("pickup")

    def resolved_delivery_date(self) -> Optional[str]:
        return self.delivery_date or self._stop_date("delivery")

    def _stop(self, kind: str) -> Optional[ParsedStop]:
        return next((stop for stop in self.stops if stop.type.lower() == kind), None)

    def _stop_label(self, kind: str) -> Optional[str]:
        stop = self._stop(kind)
        if not stop:
            return None
        city_line = ", ".join(part for part in [stop.city, stop.state] if part)
        label = ", ".join(part for part in [stop.facility_name, city_line] if part)
        return label or None

    def _stop_date(self, kind: str) -> Optional[str]:
        stop = self._stop(kind)
        if not stop or not stop.appointment:
            return None
        return stop.appointment[:10]

    def missing_fields(self) -> List[str]:
        required = {
            "origin": self.resolved_origin(),
            "destination": self.resolved_destination(),
            "rate": self.rate,
            "pickup_date": self.resolved_pickup_date(),
            "delivery_date": self.resolved_delivery_date(),
        }
        return [name for name, value in required.items() if value in (None, "")]

    def to_create_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "origin": self.resolved_origin(),
            "destination": self.resolved_destination(),
            "rate": self.rate,
            "pickup_date": self.resolved_pickup_date(),
            "delivery_date": self.resolved_delivery_date(),
        }
        optional = {
            "customer_reference": self.reference,
            "commodity": self.commodity,
            "equipment_type": self.equipment_type,
            "shipper": self.shipper,
            "weight": self.weight,
        }
        args.update({key: value for key, value in optional.items() if value not in (None, "")})
        return args

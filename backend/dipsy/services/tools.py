"""Dipsy tool catalog and executor: validated, tenant-scoped, idempotent mutations."""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from dipsy.core.errors import (
    ConflictingState,
    DipsyError,
    InvalidToolArguments,
    InvalidTransition,
    ReasonRequired,
)
from dipsy.core.logging import logger
from dipsy.models.dispatch import LoadRecord, LoadStatus, PodStatus, ReleaseReason
from dipsy.services import state_rules
from dipsy.services.entity_lookup import EntityLookupService
from dipsy.services.hos_ranking import HosRankingClient
from dipsy.services.tms_store import TmsStore, tms_store


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _upper_status(value: Any) -> Any:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() == "all":
        return "all"
    return state_rules.normalize_status(text)


# --------------------------------------------------------------------- args


class SearchLoadsArgs(BaseModel):
    status: Optional[Literal["AVAILABLE", "DISPATCHED", "IN_TRANSIT", "DELIVERED", "PROBLEM", "all"]] = None
    origin: Optional[str] = Field(default=None, description="City or state fragment of the origin.")
    destination: Optional[str] = Field(default=None, description="City or state fragment of the destination.")
    limit: int = Field(default=10, ge=1, le=50)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return _upper_status(value)


class SearchDriversArgs(BaseModel):
    status: Optional[Literal["AVAILABLE", "ASSIGNED", "INACTIVE", "all"]] = None
    location: Optional[str] = Field(default=None, description="Search driver notes for location keywords.")
    limit: int = Field(default=20, ge=1, le=100)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return _upper_status(value)


class HosSearchArgs(BaseModel):
    pickup_time: Optional[str] = Field(default=None, description="ISO pickup time if known.")
    min_drive_remaining_min: int = Field(
        default=0,
        ge=0,
        description="Minimum remaining drive minutes: trip minutes plus buffer.",
    )
    origin_city: Optional[str] = None
    origin_state: Optional[str] = None


class CreateLoadArgs(BaseModel):
    origin: str = Field(min_length=1, description="Pickup city, state")
    destination: str = Field(min_length=1, description="Delivery city, state")
    rate: float = Field(ge=0, description="Total linehaul rate in USD")
    pickup_date: date
    delivery_date: date
    shipper: Optional[str] = None
    equipment_type: Optional[str] = None
    customer_reference: Optional[str] = None
    commodity: Optional[str] = None
    weight: Optional[float] = Field(default=None, ge=0)
    miles: Optional[float] = Field(default=None, ge=0)


class LoadUpdates(BaseModel):
    rate: Optional[float] = Field(default=None, ge=0)
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    shipper: Optional[str] = None
    equipment_type: Optional[str] = None
    customer_reference: Optional[str] = None
    commodity: Optional[str] = None
    status: Optional[Literal["AVAILABLE", "DISPATCHED", "IN_TRANSIT", "DELIVERED", "PROBLEM"]] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return _upper_status(value)


class UpdateLoadArgs(BaseModel):
    load_reference: str = Field(min_length=1, description="Load reference, e.g. LD-2025-0001 or just 0001")
    updates: LoadUpdates = Field(default_factory=LoadUpdates)


class LoadReferenceArgs(BaseModel):
    load_reference: str = Field(min_length=1, description="Load reference, e.g. LD-2025-0001 or just 0001")


class AssignDriverArgs(BaseModel):
    driver_name: str = Field(min_length=1, description="Driver full name, partial name, or driver id")
    load_reference: str = Field(min_length=1, description="Load reference, e.g. LD-2025-0001")


class MarkProblemArgs(BaseModel):
    load_reference: str = Field(min_length=1)
    problem_reason: Optional[str] = Field(
        default=None,
        description="What went wrong. Ask the user if they did not say.",
    )


class ResolveProblemArgs(BaseModel):
    load_reference: str = Field(min_length=1)
    resolution_note: Optional[str] = None
    return_status: Optional[Literal["AVAILABLE", "DISPATCHED", "IN_TRANSIT", "DELIVERED"]] = None

    @field_validator("return_status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return _upper_status(value)


class BoardStatusArgs(BaseModel):
    status: Optional[Literal["AVAILABLE", "DISPATCHED", "IN_TRANSIT", "DELIVERED", "PROBLEM", "all"]] = None
    assigned_only: bool = False
    unassigned_only: bool = False
    driver_name: Optional[str] = None
    reference_fragment: Optional[str] = None
    limit: int = Field(default=25, ge=1, le=200)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return _upper_status(value)


def _inline_refs(node: Any, defs: Dict[str, Any]) -> Any:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            return _inline_refs(copy.deepcopy(defs[ref.split("/")[-1]]), defs)
        return {key: _inline_refs(value, defs) for key, value in node.items() if key != "title"}
    if isinstance(node, list):
        return [_inline_refs(item, defs) for item in node]
    return node


def openai_parameters(model: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema for a function tool, with $defs inlined."""
    schema = model.model_json_schema()
    defs = schema.pop("$defs", {})
    return _inline_refs(schema, defs)


# ------------------------------------------------------------------ results


def load_summary(load: Dict[str, Any]) -> Dict[str, Any]:
    keys = [
        "id",
        "reference",
        "origin",
        "destination",
        "rate",
        "pickup_date",
        "delivery_date",
        "shipper",
        "equipment_type",
        "customer_reference",
        "status",
        "pod_status",
        "assigned_driver_id",
        "driver_name",
        "problem_flag",
        "problem_note",
    ]
    return {key: load.get(key) for key in keys}


def driver_summary(driver: Dict[str, Any]) -> Dict[str, Any]:
    keys = [
        "id",
        "full_name",
        "first_name",
        "last_name",
        "phone",
        "status",
        "truck_id",
        "hos_status",
        "hos_drive_remaining_min",
        "hos_shift_remaining_min",
        "hos_cycle_remaining_min",
    ]
    return {key: driver.get(key) for key in keys}


def _expiry_flags(driver: Dict[str, Any], today: date) -> Dict[str, Any]:
    flags: Dict[str, Any] = {}
    for field_name, label in (("license_expiry", "cdl"), ("med_card_expiry", "med_card")):
        raw = driver.get(field_name)
        if not raw:
            continue
        try:
            expiry = date.fromisoformat(str(raw)[:10])
        except ValueError:
            continue
        flags[f"{label}_expiry"] = expiry.isoformat()
        flags[f"{label}_expired"] = expiry < today
        flags[f"{label}_expiring_soon"] = today <= expiry <= today + timedelta(days=30)
    return flags


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Callable[[str, str, Any], Awaitable[Dict[str, Any]]]
    mutates: bool = False

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": openai_parameters(self.args_model),
            },
        }

    def parameter_names(self) -> List[str]:
        return list(self.args_model.model_fields)


class ToolExecutor:
    """Runs one tool call inside one tenant. Never raises; failures come back as `ok: false`."""

    def __init__(
        self,
        store: TmsStore | None = None,
        lookup: EntityLookupService | None = None,
        hos: HosRankingClient | None = None,
    ) -> None:
        self.store = store or tms_store
        self.lookup = lookup or EntityLookupService(self.store)
        self.hos = hos or HosRankingClient(self.store)
        self._tools: Dict[str, ToolDefinition] = {
            definition.name: definition
            for definition in [
                ToolDefinition(
                    "search_loads",
                    "Search loads by status, origin or destination. Read-only.",
                    SearchLoadsArgs,
                    self._tool_search_loads,
                ),
                ToolDefinition(
                    "search_drivers",
                    "Search drivers in the current organization. Use for general driver questions.",
                    SearchDriversArgs,
                    self._tool_search_drivers,
                ),
                ToolDefinition(
                    "search_drivers_by_hours_of_service",
                    "Rank available drivers by remaining drive time. Use when a trip length is known.",
                    HosSearchArgs,
                    self._tool_search_drivers_by_hours_of_service,
                ),
                ToolDefinition(
                    "create_load",
                    "Create a new AVAILABLE load. Requires origin, destination, rate, pickup and delivery dates.",
                    CreateLoadArgs,
                    self._tool_create_load,
                    mutates=True,
                ),
                ToolDefinition(
                    "update_load",
                    "Change rate, dates, shipper, equipment, customer reference or status of an existing load.",
                    UpdateLoadArgs,
                    self._tool_update_load,
                    mutates=True,
                ),
                ToolDefinition(
                    "get_load_details",
                    "Get one load with its assignment history and recent events.",
                    LoadReferenceArgs,
                    self._tool_get_load_details,
                ),
                ToolDefinition(
                    "assign_driver_to_load",
                    "Assign a driver to a load. A driver can hold only one active load.",
                    AssignDriverArgs,
                    self._tool_assign_driver_to_load,
                    mutates=True,
                ),
                ToolDefinition(
                    "mark_load_delivered",
                    "Mark a load DELIVERED. POD becomes pending; the driver stays assigned until POD.",
                    LoadReferenceArgs,
                    self._tool_mark_load_delivered,
                    mutates=True,
                ),
                ToolDefinition(
                    "confirm_pod_received",
                    "Confirm proof of delivery was received. Closes the load and frees the driver.",
                    LoadReferenceArgs,
                    self._tool_confirm_pod_received,
                    mutates=True,
                ),
                ToolDefinition(
                    "release_driver_without_pod",
                    "Free the driver from a load without confirming POD. POD status is unchanged.",
                    LoadReferenceArgs,
                    self._tool_release_driver_without_pod,
                    mutates=True,
                ),
                ToolDefinition(
                    "mark_load_problem",
                    "Flag a load as having a problem. Needs the reason.",
                    MarkProblemArgs,
                    self._tool_mark_load_problem,
                    mutates=True,
                ),
                ToolDefinition(
                    "resolve_load_problem",
                    "Clear a load's problem flag and return it to the status it had before.",
                    ResolveProblemArgs,
                    self._tool_resolve_load_problem,
                    mutates=True,
                ),
                ToolDefinition(
                    "get_board_status",
                    "Board view: loads joined with their current driver and HOS. Use for 'who is on what' questions.",
                    BoardStatusArgs,
                    self._tool_get_board_status,
                ),
            ]
        }

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [definition.schema() for definition in self._tools.values()]

    def tool_names(self) -> List[str]:
        return list(self._tools)

    def parameters_for(self, name: str) -> List[str]:
        definition = self._tools.get(name)
        return definition.parameter_names() if definition else []

    async def execute(self, name: str, args: Dict[str, Any], tenant_id: str, actor: str) -> Dict[str, Any]:
        args = args or {}
        definition = self._tools.get(name)
        if definition is None:
            return {"ok": False, "error_code": "unknown_tool", "message": f"Unknown tool '{name}'."}

        try:
            parsed = definition.args_model.model_validate(args)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'args'}: {error['msg']}" for error in exc.errors()
            )
            error = InvalidToolArguments(f"Invalid arguments for {name}: {problems}")
            if name == "mark_load_problem" and args.get("load_reference"):
                error.details["load_reference"] = args["load_reference"]
            result = error.to_result()
            logger.info("Tool arguments rejected", tenant_id=tenant_id, tool=name, error=problems)
            return result

        try:
            result = await definition.handler(tenant_id, actor, parsed)
        except DipsyError as exc:
            result = exc.to_result()
        except Exception as exc:
            logger.exception("Tool execution failed", tenant_id=tenant_id, tool=name, error=str(exc))
            result = {
                "ok": False,
                "error_code": "internal_error",
                "message": "The action failed unexpectedly. Nothing was changed that I can confirm.",
            }

        logger.info(
            "Tool executed",
            tenant_id=tenant_id,
            actor=actor,
            tool=name,
            ok=bool(result.get("ok")),
            error_code=result.get("error_code"),
            already=result.get("already", False),
        )
        return result

    async def record_check_in(self, tenant_id: str, actor: str, load_reference: str, stop: str) -> Dict[str, Any]:
        """Driver arrival at pickup or delivery. Not offered to the model."""
        try:
            load = self.lookup.require_load(tenant_id, load_reference)
        except DipsyError as exc:
            return exc.to_result()
        event = self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="driver_check_in",
            actor=actor,
            details={"stop": stop},
        )
        logger.info("Driver check-in recorded", tenant_id=tenant_id, actor=actor, load=load["reference"], stop=stop)
        return {
            "ok": True,
            "load": load_summary(load),
            "event_id": event["event_id"],
            "message": f"Checked in at {stop} for {load['reference']}.",
        }

    # ------------------------------------------------------------- reads

    async def _tool_search_loads(self, tenant_id: str, actor: str, args: SearchLoadsArgs) -> Dict[str, Any]:
        loads = self.store.list_loads(
            tenant_id,
            status=None if args.status in (None, "all") else args.status,
            origin=args.origin,
            destination=args.destination,
            limit=args.limit,
        )
        return {"ok": True, "count": len(loads), "loads": [load_summary(load) for load in loads]}

    async def _tool_search_drivers(self, tenant_id: str, actor: str, args: SearchDriversArgs) -> Dict[str, Any]:
        drivers = self.store.list_drivers(
            tenant_id,
            status=None if args.status in (None, "all") else args.status,
            location=args.location,
            limit=args.limit,
        )
        today = _utc_now().date()
        enriched = []
        for driver in drivers:
            item = {**driver_summary(driver), "notes": driver.get("notes"), **_expiry_flags(driver, today)}
            current = self.store.current_load_for_driver(tenant_id, driver["id"])
            item["current_load_reference"] = current["reference"] if current else None
            enriched.append(item)
        return {"ok": True, "count": len(enriched), "drivers": enriched}

    async def _tool_search_drivers_by_hours_of_service(
        self, tenant_id: str, actor: str, args: HosSearchArgs
    ) -> Dict[str, Any]:
        ranking = await self.hos.rank(
            tenant_id,
            pickup_time=args.pickup_time,
            min_drive_remaining_min=args.min_drive_remaining_min,
            origin_city=args.origin_city,
            origin_state=args.origin_state,
        )
        return {"ok": True, **ranking}

    async def _tool_get_load_details(self, tenant_id: str, actor: str, args: LoadReferenceArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        return {
            "ok": True,
            "load": load_summary(load),
            "delivered_at": load.get("delivered_at"),
            "pod_uploaded_at": load.get("pod_uploaded_at"),
            "problem_flagged_at": load.get("problem_flagged_at"),
            "assignment_history": self.store.assignment_history(tenant_id, load["id"]),
            "events": self.store.list_timeline(tenant_id, load["id"])[-10:],
        }

    async def _tool_get_board_status(self, tenant_id: str, actor: str, args: BoardStatusArgs) -> Dict[str, Any]:
        rows = self.store.board_rows(
            tenant_id,
            status=None if args.status in (None, "all") else args.status,
            assigned_only=args.assigned_only,
            unassigned_only=args.unassigned_only,
            driver_name=args.driver_name,
            reference_fragment=args.reference_fragment,
            limit=args.limit,
        )
        issues = [row["load_reference"] for row in rows if not row["assignment_consistent"]]
        if issues:
            logger.warning("Board assignment integrity failure", tenant_id=tenant_id, loads=issues)
        return {"ok": True, "count": len(rows), "board": rows, "integrity_issues": issues}

    # ---------------------------------------------------------- mutations

    async def _tool_create_load(self, tenant_id: str, actor: str, args: CreateLoadArgs) -> Dict[str, Any]:
        if args.delivery_date < args.pickup_date:
            raise InvalidToolArguments("Delivery date cannot be before pickup date.")
        now = _utc_now()
        reference = self.store.generate_load_reference(tenant_id, now.year)
        record = LoadRecord(
            id=uuid.uuid4().hex,
            reference=reference,
            origin=args.origin.strip(),
            destination=args.destination.strip(),
            rate=args.rate,
            pickup_date=args.pickup_date.isoformat(),
            delivery_date=args.delivery_date.isoformat(),
            shipper=args.shipper or "Unknown shipper",
            equipment_type=args.equipment_type or "Dry van",
            customer_reference=args.customer_reference or reference,
            commodity=args.commodity,
            weight=args.weight,
            miles=args.miles,
            source="dipsy",
            created_by=actor,
        )
        load = self.store.insert_load(tenant_id, record)
        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="load_created",
            actor=actor,
            details={"reference": reference, "source": "dipsy"},
        )
        return {
            "ok": True,
            "load": load_summary(load),
            "message": f"Created load {reference}: {load['origin']} -> {load['destination']} at ${load['rate']:,.0f}.",
        }

    async def _tool_update_load(self, tenant_id: str, actor: str, args: UpdateLoadArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        patch = args.updates.model_dump(exclude_none=True)
        for key in ("pickup_date", "delivery_date"):
            if key in patch:
                patch[key] = patch[key].isoformat()

        requested_status = patch.pop("status", None)
        fields = {key: value for key, value in patch.items() if load.get(key) != value}
        expected_status: Optional[str] = None

        if requested_status and requested_status != load["status"]:
            if requested_status == LoadStatus.PROBLEM.value:
                raise InvalidToolArguments("Use mark_load_problem with a reason to flag a problem.")
            state_rules.validate_status_transition(load, requested_status)
            if requested_status == LoadStatus.AVAILABLE.value and load.get("assigned_driver_id"):
                raise InvalidTransition(
                    f"{load['reference']} still has {load.get('driver_name')} assigned. Release the driver first.",
                    load_reference=load["reference"],
                )
            now = _utc_now()
            fields["status"] = requested_status
            fields["status_changed_at"] = now
            if requested_status == LoadStatus.DELIVERED.value:
                fields["delivered_at"] = now
                if load.get("pod_status") != PodStatus.RECEIVED.value:
                    fields["pod_status"] = PodStatus.PENDING.value
            if load["status"] == LoadStatus.PROBLEM.value:
                fields["problem_flag"] = False
                fields["status_before_problem"] = None
            expected_status = load["status"]

        if not fields:
            return {"ok": True, "already": True, "load": load_summary(load), "message": "Nothing to change."}

        updated = self.store.update_load(tenant_id, load["id"], fields, expected_status=expected_status)
        if updated is None:
            raise ConflictingState(
                f"{load['reference']} changed while updating. Check its current status and try again.",
                load_reference=load["reference"],
            )
        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="load_updated",
            actor=actor,
            details={key: (value.isoformat() if isinstance(value, datetime) else value) for key, value in fields.items()},
        )
        return {"ok": True, "load": load_summary(updated), "changed": sorted(fields)}

    async def _tool_assign_driver_to_load(self, tenant_id: str, actor: str, args: AssignDriverArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        driver = self.lookup.require_driver(tenant_id, args.driver_name)

        current = self.store.current_assignment(tenant_id, load["id"])
        if current is None or current["driver_id"] != driver["id"]:
            state_rules.validate_assignable(load)

        outcome = self.store.open_assignment(tenant_id, load["id"], driver["id"])
        if outcome["already"]:
            return {
                "ok": True,
                "already": True,
                "load": load_summary(outcome["load"]),
                "driver": driver_summary(outcome["driver"]),
                "message": f"{driver['full_name']} is already on {load['reference']}.",
            }

        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="driver_assigned",
            actor=actor,
            details={"driver_id": driver["id"], "driver_name": driver["full_name"]},
        )
        return {
            "ok": True,
            "load": load_summary(outcome["load"]),
            "driver": driver_summary(outcome["driver"]),
            "message": f"Assigned {driver['full_name']} to {load['reference']}.",
        }

    async def _tool_mark_load_delivered(self, tenant_id: str, actor: str, args: LoadReferenceArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        if load["status"] == LoadStatus.DELIVERED.value:
            return {
                "ok": True,
                "already": True,
                "load": load_summary(load),
                "message": f"{load['reference']} is already delivered.",
            }

        state_rules.validate_status_transition(load, LoadStatus.DELIVERED.value)
        now = _utc_now()
        fields: Dict[str, Any] = {
            "status": LoadStatus.DELIVERED.value,
            "status_changed_at": now,
            "delivered_at": now,
        }
        if load.get("pod_status") != PodStatus.RECEIVED.value:
            fields["pod_status"] = PodStatus.PENDING.value
        if load["status"] == LoadStatus.PROBLEM.value:
            fields["problem_flag"] = False
            fields["status_before_problem"] = None

        updated = self.store.update_load(tenant_id, load["id"], fields, expected_status=load["status"])
        if updated is None:
            refreshed = self.store.get_load(tenant_id, load["id"]) or load
            if refreshed["status"] == LoadStatus.DELIVERED.value:
                return {"ok": True, "already": True, "load": load_summary(refreshed)}
            raise ConflictingState(f"{load['reference']} changed while updating.", load_reference=load["reference"])

        self.store.record_timeline_event(tenant_id, load["id"], event_type="load_delivered", actor=actor)
        return {
            "ok": True,
            "load": load_summary(updated),
            "message": f"{load['reference']} marked delivered. Waiting on POD.",
        }

    async def _tool_confirm_pod_received(self, tenant_id: str, actor: str, args: LoadReferenceArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        has_assignment = bool(load.get("assigned_driver_id")) or self.store.current_assignment(tenant_id, load["id"])
        if load.get("pod_status") == PodStatus.RECEIVED.value and not has_assignment:
            return {
                "ok": True,
                "already": True,
                "load": load_summary(load),
                "message": f"POD for {load['reference']} was already confirmed.",
            }
        fields: Dict[str, Any] = {}
        if load.get("pod_status") != PodStatus.RECEIVED.value:
            fields = {"pod_status": PodStatus.RECEIVED.value, "pod_uploaded_at": _utc_now()}
        outcome = self.store.release_assignment(
            tenant_id,
            load["id"],
            reason=ReleaseReason.POD_RECEIVED,
            load_fields=fields,
        )
        released = [driver["full_name"] for driver in outcome["released_drivers"]]
        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="pod_confirmed",
            actor=actor,
            details={"released_drivers": released},
        )
        message = f"POD confirmed for {load['reference']}."
        if released:
            message += f" {', '.join(released)} is free for the next load."
        return {"ok": True, "load": load_summary(outcome["load"]), "released_drivers": released, "message": message}

    async def _tool_release_driver_without_pod(
        self, tenant_id: str, actor: str, args: LoadReferenceArgs
    ) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        if not load.get("assigned_driver_id") and not self.store.current_assignment(tenant_id, load["id"]):
            return {
                "ok": True,
                "already": True,
                "load": load_summary(load),
                "message": f"No driver is assigned to {load['reference']}.",
            }

        outcome = self.store.release_assignment(tenant_id, load["id"], reason=ReleaseReason.RELEASED_WITHOUT_POD)
        released = [driver["full_name"] for driver in outcome["released_drivers"]]
        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="driver_released",
            actor=actor,
            details={"released_drivers": released, "pod_status": load.get("pod_status")},
        )
        return {
            "ok": True,
            "load": load_summary(outcome["load"]),
            "released_drivers": released,
            "message": f"Released {', '.join(released) or 'the driver'} from {load['reference']}. POD is still {load.get('pod_status')}.",
        }

    async def _tool_mark_load_problem(self, tenant_id: str, actor: str, args: MarkProblemArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        reason = (args.problem_reason or "").strip()
        if not reason:
            raise ReasonRequired(
                f"What's the problem with {load['reference']}?",
                load_reference=load["reference"],
            )
        if load["status"] == LoadStatus.PROBLEM.value and (load.get("problem_note") or "") == reason:
            return {"ok": True, "already": True, "load": load_summary(load)}

        now = _utc_now()
        fields: Dict[str, Any] = {
            "problem_flag": True,
            "problem_note": reason,
            "problem_flagged_at": now,
        }
        if load["status"] != LoadStatus.PROBLEM.value:
            state_rules.validate_status_transition(load, LoadStatus.PROBLEM.value)
            fields.update(
                {
                    "status": LoadStatus.PROBLEM.value,
                    "status_changed_at": now,
                    "status_before_problem": load["status"],
                }
            )

        updated = self.store.update_load(tenant_id, load["id"], fields, expected_status=load["status"])
        if updated is None:
            raise ConflictingState(f"{load['reference']} changed while updating.", load_reference=load["reference"])
        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="problem_flagged",
            actor=actor,
            details={"reason": reason, "previous_status": load["status"]},
        )
        return {
            "ok": True,
            "load": load_summary(updated),
            "message": f"Flagged {load['reference']} as a problem: {reason}.",
        }

    async def _tool_resolve_load_problem(self, tenant_id: str, actor: str, args: ResolveProblemArgs) -> Dict[str, Any]:
        load = self.lookup.require_load(tenant_id, args.load_reference)
        if load["status"] != LoadStatus.PROBLEM.value and not load.get("problem_flag"):
            return {
                "ok": True,
                "already": True,
                "load": load_summary(load),
                "message": f"{load['reference']} has no open problem.",
            }

        fields: Dict[str, Any] = {"problem_flag": False, "status_before_problem": None}
        target = load["status"]
        if load["status"] == LoadStatus.PROBLEM.value:
            target = state_rules.resolution_target(load, args.return_status)
            state_rules.validate_status_transition(load, target)
            if target == LoadStatus.AVAILABLE.value and load.get("assigned_driver_id"):
                raise InvalidTransition(
                    f"{load['reference']} still has {load.get('driver_name')} assigned. Release the driver first.",
                    load_reference=load["reference"],
                )
            fields.update({"status": target, "status_changed_at": _utc_now()})

        updated = self.store.update_load(tenant_id, load["id"], fields, expected_status=load["status"])
        if updated is None:
            raise ConflictingState(f"{load['reference']} changed while updating.", load_reference=load["reference"])
        self.store.record_timeline_event(
            tenant_id,
            load["id"],
            event_type="problem_resolved",
            actor=actor,
            details={"resolution_note": args.resolution_note, "returned_to": target},
        )
        return {
            "ok": True,
            "load": load_summary(updated),
            "message": f"Problem cleared on {load['reference']}; back to {target}.",
        }

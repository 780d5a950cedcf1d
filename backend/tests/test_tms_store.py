"""Unit tests for the tenant-scoped SQLite store and assignment exclusivity."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import os
import sys
import uuid
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_dipsy"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DIPSY_DB_PATH"] = str(TMP / "dipsy.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""
os.environ["HOS_RANKING_URL"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dipsy.core.errors import (  # noqa: E402
    ConflictingState,
    DriverAlreadyAssigned,
    LoadAlreadyAssigned,
)
from dipsy.models.dispatch import DriverRecord, LoadRecord, ReleaseReason  # noqa: E402
from dipsy.services.tms_store import TmsStore  # noqa: E402


DB_PATH = str(TMP / "store.db")


def _tenant(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _load(store: TmsStore, tenant: str, reference: str, **fields) -> dict:
    record = LoadRecord(
        id=uuid.uuid4().hex,
        reference=reference,
        origin=fields.pop("origin", "Sacramento, CA"),
        destination=fields.pop("destination", "Denver, CO"),
        rate=fields.pop("rate", 2200),
        **fields,
    )
    return store.insert_load(tenant, record)


def _driver(store: TmsStore, tenant: str, first: str, last: str, **fields) -> dict:
    return store.insert_driver(tenant, DriverRecord(id=uuid.uuid4().hex, first_name=first, last_name=last, **fields))


def test_generate_load_reference_skips_existing_numbers():
    store = TmsStore(DB_PATH)
    tenant = _tenant("refs")
    _load(store, tenant, "LD-2025-0001")

    assert store.generate_load_reference(tenant, 2025) == "LD-2025-0002"
    assert store.generate_load_reference(tenant, 2025) == "LD-2025-0003"
    assert store.generate_load_reference(tenant, 2026) == "LD-2026-0001"


def test_open_assignment_claims_driver_and_load_together():
    store = TmsStore(DB_PATH)
    tenant = _tenant("assign")
    load = _load(store, tenant, "LD-2025-0100")
    driver = _driver(store, tenant, "John", "Smith")

    outcome = store.open_assignment(tenant, load["id"], driver["id"])

    assert outcome["already"] is False
    assert outcome["load"]["status"] == "DISPATCHED"
    assert outcome["load"]["assigned_driver_id"] == driver["id"]
    assert outcome["load"]["driver_name"] == "John Smith"
    assert outcome["driver"]["status"] == "ASSIGNED"
    assert len(store.open_assignments_for_driver(tenant, driver["id"])) == 1

    again = store.open_assignment(tenant, load["id"], driver["id"])
    assert again["already"] is True
    assert len(store.open_assignments_for_driver(tenant, driver["id"])) == 1


def test_second_driver_on_same_load_is_rejected():
    store = TmsStore(DB_PATH)
    tenant = _tenant("second_driver")
    load = _load(store, tenant, "LD-2025-0200")
    first = _driver(store, tenant, "John", "Smith")
    second = _driver(store, tenant, "Maria", "Lopez")
    store.open_assignment(tenant, load["id"], first["id"])

    with pytest.raises(LoadAlreadyAssigned):
        store.open_assignment(tenant, load["id"], second["id"])

    assert store.get_driver(tenant, second["id"])["status"] == "AVAILABLE"
    assert store.current_assignment(tenant, load["id"])["driver_id"] == first["id"]


def test_driver_cannot_hold_two_active_loads():
    store = TmsStore(DB_PATH)
    tenant = _tenant("two_loads")
    first = _load(store, tenant, "LD-2025-0301")
    second = _load(store, tenant, "LD-2025-0302")
    driver = _driver(store, tenant, "John", "Smith")
    store.open_assignment(tenant, first["id"], driver["id"])

    with pytest.raises(DriverAlreadyAssigned) as excinfo:
        store.open_assignment(tenant, second["id"], driver["id"])

    assert excinfo.value.details["current_load_reference"] == "LD-2025-0301"
    untouched = store.get_load(tenant, second["id"])
    assert untouched["assigned_driver_id"] is None
    assert untouched["status"] == "AVAILABLE"


def test_concurrent_assignments_to_one_load_open_a_single_row():
    tenant = _tenant("race_load")
    seed = TmsStore(DB_PATH)
    load = _load(seed, tenant, "LD-2025-0400")
    drivers = [_driver(seed, tenant, f"Driver{i}", "Racer") for i in range(10)]

    def _attempt(driver_id: str) -> bool:
        store = TmsStore(DB_PATH)
        try:
            store.open_assignment(tenant, load["id"], driver_id)
            return True
        except (DriverAlreadyAssigned, LoadAlreadyAssigned):
            return False

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(_attempt, [driver["id"] for driver in drivers]))

    assert results.count(True) == 1
    assigned = [d for d in drivers if seed.get_driver(tenant, d["id"])["status"] == "ASSIGNED"]
    assert len(assigned) == 1
    assert seed.get_load(tenant, load["id"])["assigned_driver_id"] == assigned[0]["id"]


def test_concurrent_assignments_of_one_driver_claim_one_load():
    tenant = _tenant("race_driver")
    seed = TmsStore(DB_PATH)
    loads = [_load(seed, tenant, f"LD-2025-05{i:02d}") for i in range(8)]
    driver = _driver(seed, tenant, "Solo", "Driver")

    def _attempt(load_id: str) -> bool:
        try:
            TmsStore(DB_PATH).open_assignment(tenant, load_id, driver["id"])
            return True
        except (DriverAlreadyAssigned, LoadAlreadyAssigned):
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_attempt, [load["id"] for load in loads]))

    assert results.count(True) == 1
    assert len(seed.open_assignments_for_driver(tenant, driver["id"])) == 1
    assert sum(1 for load in loads if seed.get_load(tenant, load["id"])["assigned_driver_id"]) == 1


def test_release_assignment_frees_driver_and_clears_denormalized_fields():
    store = TmsStore(DB_PATH)
    tenant = _tenant("release")
    load = _load(store, tenant, "LD-2025-0600")
    driver = _driver(store, tenant, "John", "Smith")
    store.open_assignment(tenant, load["id"], driver["id"])

    outcome = store.release_assignment(
        tenant,
        load["id"],
        reason=ReleaseReason.POD_RECEIVED,
        load_fields={"pod_status": "RECEIVED"},
    )

    assert outcome["closed_assignments"] == 1
    assert outcome["released_drivers"][0]["status"] == "AVAILABLE"
    released = store.get_load(tenant, load["id"])
    assert released["assigned_driver_id"] is None
    assert released["driver_name"] is None
    assert released["pod_status"] == "RECEIVED"
    assert released["status"] == "DISPATCHED"
    history = store.assignment_history(tenant, load["id"])
    assert history[0]["release_reason"] == "pod_received"
    assert history[0]["unassigned_at"] is not None


def test_update_load_refuses_assignment_columns():
    store = TmsStore(DB_PATH)
    tenant = _tenant("guarded")
    load = _load(store, tenant, "LD-2025-0700")

    with pytest.raises(ValueError):
        store.update_load(tenant, load["id"], {"assigned_driver_id": "someone"})

    assert store.update_load(tenant, load["id"], {"rate": 2500}, expected_status="IN_TRANSIT") is None
    assert store.update_load(tenant, load["id"], {"rate": 2500}, expected_status="AVAILABLE")["rate"] == 2500


def test_board_flags_inconsistent_denormalized_assignment():
    store = TmsStore(DB_PATH)
    tenant = _tenant("board")
    healthy = _load(store, tenant, "LD-2025-0801")
    broken = _load(store, tenant, "LD-2025-0802")
    driver = _driver(store, tenant, "John", "Smith")
    ghost = _driver(store, tenant, "Ghost", "Driver")
    store.open_assignment(tenant, healthy["id"], driver["id"])
    store._conn.execute(
        "UPDATE loads SET assigned_driver_id = ?, driver_name = ? WHERE tenant_id = ? AND id = ?",
        (ghost["id"], "Ghost Driver", tenant, broken["id"]),
    )

    rows = {row["load_reference"]: row for row in store.board_rows(tenant, assigned_only=True)}

    assert set(rows) == {"LD-2025-0801", "LD-2025-0802"}
    assert rows["LD-2025-0801"]["assignment_consistent"] is True
    assert rows["LD-2025-0802"]["assignment_consistent"] is False
    assert rows["LD-2025-0802"]["has_active_assignment_row"] is False
    issues = store.assignment_integrity_issues(tenant)
    assert [issue["load_reference"] for issue in issues] == ["LD-2025-0802"]


def test_board_keeps_open_row_when_denormalized_driver_is_cleared():
    store = TmsStore(DB_PATH)
    tenant = _tenant("board_cleared")
    load = _load(store, tenant, "LD-2025-0811")
    driver = _driver(store, tenant, "John", "Smith")
    store.open_assignment(tenant, load["id"], driver["id"])
    store._conn.execute(
        "UPDATE loads SET assigned_driver_id = NULL, driver_name = NULL WHERE tenant_id = ? AND id = ?",
        (tenant, load["id"]),
    )

    assigned = store.board_rows(tenant, assigned_only=True)

    assert [row["load_reference"] for row in assigned] == ["LD-2025-0811"]
    assert assigned[0]["has_assigned_driver"] is False
    assert assigned[0]["has_active_assignment_row"] is True
    assert assigned[0]["assignment_consistent"] is False
    assert store.board_rows(tenant, unassigned_only=True) == []
    assert [issue["load_reference"] for issue in store.assignment_integrity_issues(tenant)] == ["LD-2025-0811"]


def test_reads_are_tenant_scoped():
    store = TmsStore(DB_PATH)
    tenant_a = _tenant("tenant_a")
    tenant_b = _tenant("tenant_b")
    load = _load(store, tenant_a, "LD-2025-0900")
    driver = _driver(store, tenant_a, "John", "Smith")

    assert store.get_load(tenant_b, load["id"]) is None
    assert store.get_load_by_reference(tenant_b, "LD-2025-0900") is None
    assert store.search_load_references(tenant_b, "0900") == []
    assert store.get_driver(tenant_b, driver["id"]) is None
    assert store.board_rows(tenant_b) == []
    with pytest.raises(Exception):
        store.open_assignment(tenant_b, load["id"], driver["id"])


def test_conversation_state_last_writer_wins():
    store = TmsStore(DB_PATH)
    tenant = _tenant("conversation")
    store.save_conversation_state(tenant, "web:u1:default", {"context": {"last_load_reference": "LD-2025-0001"}})
    store.save_conversation_state(tenant, "web:u1:default", {"context": {"last_load_reference": "LD-2025-0002"}})

    state = store.get_conversation_state(tenant, "web:u1:default")
    assert state["context"]["last_load_reference"] == "LD-2025-0002"
    assert store.get_conversation_state(_tenant("other"), "web:u1:default") is None


def test_contact_cannot_be_claimed_by_second_tenant():
    store = TmsStore(DB_PATH)
    external_id = str(uuid.uuid4().int % 10**9)
    contact = store.upsert_contact(_tenant("first"), channel="telegram", external_id=external_id, display_name="Al")
    assert contact["display_name"] == "Al"

    with pytest.raises(ConflictingState):
        store.upsert_contact(_tenant("second"), channel="telegram", external_id=external_id)


def test_active_membership_prefers_default():
    store = TmsStore(DB_PATH)
    user_id = f"user_{uuid.uuid4().hex[:8]}"
    store.add_membership(user_id, "tenant_first", role="dispatcher")
    store.add_membership(user_id, "tenant_default", role="admin", is_default=True)
    store.add_membership(user_id, "tenant_disabled", role="admin", status="disabled", is_default=True)

    membership = store.active_membership(user_id)
    assert membership["tenant_id"] == "tenant_default"
    assert membership["role"] == "admin"
    assert store.active_membership(f"nobody_{uuid.uuid4().hex[:6]}") is None

from __future__ import annotations

import asyncio
import os
import sys
import uuid
from pathlib import Path


TMP = Path(__file__).resolve().parent / ".tmp_dipsy"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DIPSY_DB_PATH"] = str(TMP / "dipsy.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""
os.environ["HOS_RANKING_URL"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dipsy.models.conversation import ContextMemory, ConversationState, PendingSelection  # noqa: E402
from dipsy.models.dispatch import DriverRecord, LoadRecord, ParsedRateConfirmation, ParsedStop  # noqa: E402
from dipsy.services.intercepts import MessageIntercepts  # noqa: E402
from dipsy.services.tms_store import TmsStore  # noqa: E402
from dipsy.services.tools import ToolExecutor  # noqa: E402


store = TmsStore(str(TMP / "intercepts.db"))
executor = ToolExecutor(store)
intercepts = MessageIntercepts(executor, store)


def _tenant(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _assigned(tenant: str, reference: str) -> tuple[dict, dict]:
    load = store.insert_load(
        tenant,
        LoadRecord(id=uuid.uuid4().hex, reference=reference, origin="Stockton, CA", destination="Boise, ID", rate=2600),
    )
    driver = store.insert_driver(tenant, DriverRecord(id=uuid.uuid4().hex, first_name="Luis", last_name="Ortega"))
    store.open_assignment(tenant, load["id"], driver["id"])
    return load, driver


def _handle(tenant: str, text: str, state: ConversationState, driver_id: str | None = None):
    return asyncio.run(
        intercepts.try_handle(tenant_id=tenant, actor="telegram:Luis", text=text, state=state, driver_id=driver_id)
    )


def test_driver_delivered_message_marks_current_load():
    tenant = _tenant("delivered")
    load, driver = _assigned(tenant, "LD-2025-0101")
    state = ConversationState()

    result = _handle(tenant, "Delivered!", state, driver_id=driver["id"])

    assert result.route == "intercept_driver"
    assert result.answer == "Got it, LD-2025-0101 is marked delivered. Please send the POD when you can."
    assert result.actions[0].tool == "mark_load_delivered"
    updated = store.get_load(tenant, load["id"])
    assert updated["status"] == "DELIVERED"
    assert updated["pod_status"] == "PENDING"
    assert state.context.last_load_reference == "LD-2025-0101"
    assert [turn.content for turn in state.history] == ["Delivered!", result.answer]

    again = _handle(tenant, "delivered", state, driver_id=driver["id"])
    assert "already marked delivered" in again.answer


def test_driver_pickup_and_check_in_messages():
    tenant = _tenant("rolling")
    load, driver = _assigned(tenant, "LD-2025-0102")
    state = ConversationState()

    arrived = _handle(tenant, "at the shipper now", state, driver_id=driver["id"])
    assert arrived.actions[0].tool == "record_check_in"
    assert arrived.actions[0].args == {"load_reference": "LD-2025-0102", "stop": "pickup"}
    events = store.list_timeline(tenant, load["id"])
    assert events[-1]["event_type"] == "driver_check_in"
    assert events[-1]["details"] == {"stop": "pickup"}

    rolling = _handle(tenant, "picked up, on my way", state, driver_id=driver["id"])
    assert rolling.answer == "Thanks, LD-2025-0102 is now in transit. Drive safe."
    assert store.get_load(tenant, load["id"])["status"] == "IN_TRANSIT"


def test_negated_or_questioning_driver_messages_go_to_the_model():
    tenant = _tenant("negated")
    load, driver = _assigned(tenant, "LD-2025-0104")
    state = ConversationState()

    for text in (
        "I haven't delivered yet, stuck in traffic",
        "not loaded yet, dock is backed up",
        "should I mark it delivered?",
        "running late, not at the receiver",
    ):
        assert _handle(tenant, text, state, driver_id=driver["id"]) is None

    assert store.get_load(tenant, load["id"])["status"] == "DISPATCHED"
    assert state.history == []

    just_delivered = _handle(tenant, "I just delivered", state, driver_id=driver["id"])
    assert just_delivered.actions[0].tool == "mark_load_delivered"
    assert store.get_load(tenant, load["id"])["status"] == "DELIVERED"


def test_driver_without_active_load_is_told_so():
    tenant = _tenant("idle")
    driver = store.insert_driver(tenant, DriverRecord(id=uuid.uuid4().hex, first_name="Idle", last_name="Driver"))

    result = _handle(tenant, "delivered", ConversationState(), driver_id=driver["id"])

    assert result.answer.startswith("I don't see an active load assigned to you")
    assert result.actions == []


def test_dispatcher_status_words_go_to_the_model():
    tenant = _tenant("dispatcher")
    _assigned(tenant, "LD-2025-0103")

    assert _handle(tenant, "which loads were delivered today?", ConversationState()) is None


def test_out_of_range_selection_asks_again():
    state = ConversationState(
        context=ContextMemory(
            pending_selection=PendingSelection(
                tool="get_load_details",
                args={},
                parameter="load_reference",
                candidates=[{"id": "a", "reference": "LD-2025-0001"}, {"id": "b", "reference": "LD-2025-0002"}],
            )
        )
    )

    result = _handle(_tenant("range"), "7", state)

    assert result.answer == "Pick a number between 1 and 2."
    assert state.context.pending_selection is not None


def test_pending_document_yes_creates_load_and_no_discards():
    tenant = _tenant("document")
    document = ParsedRateConfirmation(
        reference="BOL-5521",
        rate=3100,
        stops=[
            ParsedStop(type="pickup", facility_name="Acme DC", city="Ontario", state="CA", appointment="2025-10-21T08:00"),
            ParsedStop(type="delivery", city="Phoenix", state="AZ", appointment="2025-10-22T14:00"),
        ],
    )
    state = ConversationState(context=ContextMemory(pending_document=document))

    created = _handle(tenant, "yes", state)

    assert created.route == "intercept_document"
    assert created.actions[0].ok is True
    assert created.answer.endswith("Need help finding a driver?")
    loads = store.list_loads(tenant)
    assert len(loads) == 1
    assert loads[0]["origin"] == "Acme DC, Ontario, CA"
    assert loads[0]["customer_reference"] == "BOL-5521"
    assert loads[0]["pickup_date"] == "2025-10-21"
    assert state.context.pending_document is None
    assert state.context.last_load_reference == loads[0]["reference"]

    state.context.pending_document = document
    declined = _handle(tenant, "no", state)
    assert declined.answer == "OK, I won't create a load from that document."
    assert state.context.pending_document is None
    assert len(store.list_loads(tenant)) == 1


def test_incomplete_document_reports_missing_fields():
    tenant = _tenant("incomplete")
    state = ConversationState(
        context=ContextMemory(pending_document=ParsedRateConfirmation(origin="Ontario, CA", destination="Phoenix, AZ"))
    )

    result = _handle(tenant, "yes", state)

    assert "rate, pickup_date, delivery_date" in result.answer
    assert result.actions == []
    assert store.list_loads(tenant) == []

from __future__ import annotations

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

from dipsy.core.errors import AmbiguousReference, DriverNotFound, LoadNotFound  # noqa: E402
from dipsy.models.dispatch import DriverRecord, LoadRecord  # noqa: E402
from dipsy.services.entity_lookup import EntityLookupService, LookupResult  # noqa: E402
from dipsy.services.tms_store import TmsStore  # noqa: E402


store = TmsStore(str(TMP / "lookup.db"))
lookup = EntityLookupService(store)


def _tenant(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _load(tenant: str, reference: str) -> dict:
    return store.insert_load(
        tenant,
        LoadRecord(id=uuid.uuid4().hex, reference=reference, origin="Fresno, CA", destination="Reno, NV", rate=1500),
    )


def _driver(tenant: str, first: str, last: str) -> dict:
    return store.insert_driver(tenant, DriverRecord(id=uuid.uuid4().hex, first_name=first, last_name=last))


def test_digit_fragments_do_not_cross_match():
    tenant = _tenant("digits")
    _load(tenant, "LD-2025-4404")
    _load(tenant, "LD-2025-0044")

    four = lookup.find_load_by_reference(tenant, "4404")
    zero = lookup.find_load_by_reference(tenant, "0044")

    assert four.is_unique and four.entity["reference"] == "LD-2025-4404"
    assert zero.is_unique and zero.entity["reference"] == "LD-2025-0044"


def test_short_fragment_matching_several_loads_is_ambiguous():
    tenant = _tenant("ambiguous")
    _load(tenant, "LD-2025-4404")
    _load(tenant, "LD-2025-0044")

    result = lookup.find_load_by_reference(tenant, "44")

    assert result.kind == LookupResult.AMBIGUOUS
    assert {candidate["reference"] for candidate in result.candidates} == {"LD-2025-4404", "LD-2025-0044"}
    assert set(result.candidates[0]) == {"id", "reference", "origin", "destination", "status"}


def test_exact_reference_is_case_insensitive_and_hash_prefix_is_stripped():
    tenant = _tenant("exact")
    _load(tenant, "LD-2025-0007")

    assert lookup.find_load_by_reference(tenant, "ld-2025-0007").entity["reference"] == "LD-2025-0007"
    assert lookup.find_load_by_reference(tenant, "#0007").entity["reference"] == "LD-2025-0007"
    assert lookup.find_load_by_reference(tenant, "").kind == LookupResult.NOT_FOUND


def test_unique_final_segment_wins_over_substring_matches():
    tenant = _tenant("segment")
    _load(tenant, "LD-2024-0001")
    _load(tenant, "LD-2025-2024")

    result = lookup.find_load_by_reference(tenant, "2024")
    assert result.is_unique
    assert result.entity["reference"] == "LD-2025-2024"

    _load(tenant, "LD-2025-1234")
    _load(tenant, "LD-2024-1234")
    both = lookup.find_load_by_reference(tenant, "1234")
    assert both.kind == LookupResult.AMBIGUOUS
    assert {candidate["reference"] for candidate in both.candidates} == {"LD-2025-1234", "LD-2024-1234"}


def test_loads_of_other_tenants_are_invisible():
    owner = _tenant("owner")
    other = _tenant("other")
    _load(owner, "LD-2025-9001")

    assert lookup.find_load_by_reference(other, "LD-2025-9001").kind == LookupResult.NOT_FOUND
    with pytest.raises(LoadNotFound) as excinfo:
        lookup.require_load(other, "9001")
    assert excinfo.value.details["load_reference"] == "9001"


def test_initial_and_last_name_resolve_by_tokens():
    tenant = _tenant("initial")
    john = _driver(tenant, "John", "Smith")
    _driver(tenant, "Jane", "Doe")

    result = lookup.find_driver_by_name(tenant, "J. Smith")

    assert result.is_unique
    assert result.entity["id"] == john["id"]


def test_exact_full_name_is_preferred_over_partial_matches():
    tenant = _tenant("exact_name")
    john = _driver(tenant, "John", "Smith")
    _driver(tenant, "John", "Smithson")

    result = lookup.find_driver_by_name(tenant, "john smith")

    assert result.is_unique
    assert result.entity["id"] == john["id"]


def test_shared_surname_is_ambiguous_with_driver_candidates():
    tenant = _tenant("surname")
    _driver(tenant, "John", "Smith")
    _driver(tenant, "Jake", "Smithers")

    with pytest.raises(AmbiguousReference) as excinfo:
        lookup.require_driver(tenant, "Smith")

    error = excinfo.value
    assert error.kind == "driver"
    assert {candidate["full_name"] for candidate in error.candidates} == {"John Smith", "Jake Smithers"}
    assert error.to_result()["error_code"] == "ambiguous_reference"


def test_driver_lookup_by_id_and_not_found():
    tenant = _tenant("by_id")
    maria = _driver(tenant, "Maria", "Lopez")

    assert lookup.require_driver(tenant, maria["id"])["full_name"] == "Maria Lopez"
    with pytest.raises(DriverNotFound):
        lookup.require_driver(tenant, "Nobody Here")
    with pytest.raises(DriverNotFound):
        lookup.require_driver(_tenant("elsewhere"), maria["id"])
